import io

import pytest
from fastapi import HTTPException
from PIL import Image

from app.core.image_processing import process_photo, validate_photo

MB = 1024 * 1024


def _image_bytes(fmt="PNG", size=(800, 600), mode="RGB"):
    buf = io.BytesIO()
    Image.new(mode, size, color=0).save(buf, format=fmt)
    return buf.getvalue()


def test_validate_png():
    assert validate_photo(_image_bytes(), filename="a.png", content_type="image/png", max_bytes=MB) == "PNG"


@pytest.mark.parametrize(
    "content,content_type,message",
    [
        (b"", "image/png", "is empty"),
        (b"hello", "text/plain", "is not an image"),
        (b"definitely not a png", "image/png", "is not a valid image"),
    ],
)
def test_validate_rejects(content, content_type, message):
    with pytest.raises(HTTPException) as exc:
        validate_photo(content, filename="upload", content_type=content_type, max_bytes=MB)
    assert exc.value.status_code == 400
    assert message in exc.value.detail


def test_validate_rejects_oversized_upload():
    with pytest.raises(HTTPException) as exc:
        validate_photo(_image_bytes(), filename="big.png", content_type="image/png", max_bytes=10)
    assert "limit" in exc.value.detail


def test_validate_rejects_unsupported_format():
    content = _image_bytes(fmt="BMP")
    with pytest.raises(HTTPException) as exc:
        validate_photo(content, filename="a.bmp", content_type="image/png", max_bytes=MB)
    assert "unsupported format" in exc.value.detail


def test_process_builds_webp_thumbnail():
    content = _image_bytes(fmt="JPEG")
    photo = process_photo(content, filename="a.jpg", content_type="image/jpeg", max_bytes=MB)
    assert photo.original_bytes == content
    assert photo.content_type == "image/jpeg"

    thumb = Image.open(io.BytesIO(photo.thumbnail_bytes))
    assert thumb.format == "WEBP"
    assert thumb.size[0] <= 400
    assert thumb.size[1] <= 300


def test_process_palette_image():
    content = _image_bytes(fmt="GIF", size=(50, 50), mode="P")
    photo = process_photo(content, filename="a.gif", content_type="image/gif", max_bytes=MB)
    assert photo.thumbnail_bytes
