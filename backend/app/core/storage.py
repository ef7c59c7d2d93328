import logging
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from fastapi import HTTPException
from supabase import create_client

from app.core.config import get_settings

logger = logging.getLogger(__name__)


def _file_extension(filename: Optional[str]) -> str:
    if not filename:
        return ""
    return Path(filename).suffix.lower()


def get_storage_client():
    settings = get_settings()
    key = settings.supabase_service_role_key or settings.supabase_key
    if not settings.supabase_url or not key:
        raise HTTPException(503, "Photo storage is not configured")
    return create_client(settings.supabase_url, key)


def build_object_url(bucket: str, path: str) -> str:
    settings = get_settings()
    return f"{settings.supabase_url}/storage/v1/object/public/{bucket}/{path}"


def _upload_single(client, bucket: str, path: str, content: bytes, content_type: Optional[str]) -> str:
    options = {"content-type": content_type} if content_type else None
    try:
        result = client.storage.from_(bucket).upload(path, content, options)
    except Exception as exc:  # pragma: no cover
        raise HTTPException(502, "Upload to storage failed") from exc

    if isinstance(result, dict):
        error = result.get("error")
    else:
        error = getattr(result, "error", None)

    if error:
        raise HTTPException(502, "Upload to storage failed")

    return build_object_url(bucket, path)


@dataclass
class UploadedPhoto:
    url: str
    thumbnail_url: Optional[str] = None


def upload_request_photo(
    *,
    request_id: str,
    filename: Optional[str],
    content: bytes,
    content_type: Optional[str],
    thumbnail_bytes: Optional[bytes] = None,
) -> UploadedPhoto:
    """Upload a photo and its optional WebP thumbnail.

    Path schema:
    - Original:  ``{request_id}/{uuid}{ext}``
    - Thumbnail: ``{request_id}/{uuid}_thumb.webp``
    """
    bucket = get_settings().supabase_storage_bucket
    token = uuid.uuid4().hex
    client = get_storage_client()

    url = _upload_single(client, bucket, f"{request_id}/{token}{_file_extension(filename)}", content, content_type)

    thumbnail_url = None
    if thumbnail_bytes:
        try:
            thumbnail_url = _upload_single(
                client,
                bucket,
                f"{request_id}/{token}_thumb.webp",
                thumbnail_bytes,
                "image/webp",
            )
        except HTTPException:
            logger.warning("Failed to upload thumbnail for %s", request_id, exc_info=True)

    return UploadedPhoto(url=url, thumbnail_url=thumbnail_url)
