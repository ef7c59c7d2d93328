"""Validation and resizing of service request photos.

Customers attach up to a handful of photos of the faulty unit. Uploads are
checked to be real images under the configured size limit, then a WebP
thumbnail is produced for dashboard lists.
"""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException
from PIL import Image, ImageOps, UnidentifiedImageError

logger = logging.getLogger(__name__)

# ------------------------------------------------------------------
# Constants
# ------------------------------------------------------------------

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp", "image/gif", "image/heic"}
ALLOWED_FORMATS = {"JPEG", "PNG", "WEBP", "GIF", "MPO"}

THUMBNAIL_MAX_SIZE = (400, 300)
THUMBNAIL_QUALITY = 80


@dataclass
class ProcessedPhoto:
    original_bytes: bytes
    content_type: str
    thumbnail_bytes: Optional[bytes] = None


def _is_image_content_type(content_type: Optional[str]) -> bool:
    return bool(content_type) and content_type.lower() in ALLOWED_CONTENT_TYPES


def _to_webp(img: Image.Image, max_size: tuple[int, int], quality: int) -> bytes:
    resized = img.copy()
    resized.thumbnail(max_size, Image.LANCZOS)
    buf = io.BytesIO()
    resized.save(buf, format="WEBP", quality=quality, method=4)
    return buf.getvalue()


def validate_photo(
    content: bytes,
    *,
    filename: Optional[str],
    content_type: Optional[str],
    max_bytes: int,
) -> str:
    """Reject anything that is not an image or is too large. Returns the detected format."""
    if not content:
        raise HTTPException(400, f"{filename or 'file'} is empty")
    if len(content) > max_bytes:
        limit_mb = max_bytes / (1024 * 1024)
        raise HTTPException(400, f"{filename or 'file'} exceeds the {limit_mb:g}MB limit")
    if not _is_image_content_type(content_type):
        raise HTTPException(400, f"{filename or 'file'} is not an image")
    try:
        with Image.open(io.BytesIO(content)) as img:
            fmt = img.format or ""
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise HTTPException(400, f"{filename or 'file'} is not a valid image") from exc
    if fmt.upper() not in ALLOWED_FORMATS:
        raise HTTPException(400, f"{filename or 'file'} has unsupported format {fmt}")
    return fmt


def process_photo(
    content: bytes,
    *,
    filename: Optional[str],
    content_type: Optional[str],
    max_bytes: int,
) -> ProcessedPhoto:
    validate_photo(content, filename=filename, content_type=content_type, max_bytes=max_bytes)

    # verify() leaves the image unusable, so reopen for the thumbnail.
    try:
        img = Image.open(io.BytesIO(content))
        img = ImageOps.exif_transpose(img)
        if img.mode in ("P", "PA"):
            img = img.convert("RGBA")
        thumbnail = _to_webp(img, THUMBNAIL_MAX_SIZE, THUMBNAIL_QUALITY)
    except (OSError, ValueError):
        logger.warning("Failed to build thumbnail for %s, storing original only", filename, exc_info=True)
        thumbnail = None

    return ProcessedPhoto(
        original_bytes=content,
        content_type=content_type or "application/octet-stream",
        thumbnail_bytes=thumbnail,
    )
