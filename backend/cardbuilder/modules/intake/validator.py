# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Upload Validator
Validates uploaded image bytes before they enter a CardDocument.
Checks content type, byte size, magic-byte format, header pixel area
and decodability, then returns a full-resolution BGRA buffer plus a
display thumbnail.

Raises InvalidFormatError / TooLargeError (both ImageValidationError,
a ValueError) so the API error handler maps them to 422 / 413.
"""

from __future__ import annotations

from PIL import Image, UnidentifiedImageError

from cardbuilder.api.middleware.error_handler import InvalidFormatError, TooLargeError
from cardbuilder.config import Settings, get_settings
from cardbuilder.models.card import DecodedImage
from cardbuilder.utils.image_utils import decode_oriented_bgra, make_thumbnail, open_image
from cardbuilder.utils.logger import get_logger

log = get_logger(__name__)

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/png", "image/webp"}

# Supported formats by magic bytes (first few bytes of file)
_MAGIC_BYTES: dict[str, bytes] = {
    "jpeg": b"\xff\xd8\xff",
    "png":  b"\x89PNG",
    "webp": b"RIFF",          # RIFF....WEBP, checked further below
}

# Pillow's format names for the same three containers
_PIL_FORMATS = {"jpeg": "JPEG", "png": "PNG", "webp": "WEBP"}


def detect_format(data: bytes) -> str | None:
    """
    Detect image format from magic bytes.
    Returns format string ('jpeg', 'png', 'webp') or None if unrecognised.
    """
    if data[:3] == _MAGIC_BYTES["jpeg"]:
        return "jpeg"
    if data[:4] == _MAGIC_BYTES["png"]:
        return "png"
    if data[:4] == _MAGIC_BYTES["webp"] and data[8:12] == b"WEBP":
        return "webp"
    return None


def validate_image_bytes(
    data: bytes,
    label: str = "image",
    content_type: str | None = None,
    settings: Settings | None = None,
) -> DecodedImage:
    """
    Validate raw image bytes and return the decoded image.

    Checks performed (in order):
      1. Declared content type, when given, is JPEG / PNG / WebP
      2. Non-empty bytes
      3. Byte size within the configured ceiling
      4. Magic byte format detection
      5. Header parse; header format agrees with the magic bytes
      6. Pixel area within the configured ceiling (before full decode)
      7. Full decode with EXIF orientation applied

    Args:
        data:          Raw bytes from upload, disk, or remote fetch.
        label:         Human-readable label used in error messages.
        content_type:  Declared MIME type, if the client sent one.
        settings:      Override settings (tests); defaults to get_settings().

    Returns:
        DecodedImage with BGRA pixels at natural resolution.

    Raises:
        InvalidFormatError: unsupported, unrecognised or corrupt data.
        TooLargeError:      byte size or pixel area above the ceiling.
    """
    settings = settings or get_settings()

    # 1. Declared content type
    if content_type is not None and content_type not in ALLOWED_CONTENT_TYPES:
        raise InvalidFormatError(
            f"Unsupported file type '{content_type}' for {label}. "
            f"Allowed: {', '.join(sorted(ALLOWED_CONTENT_TYPES))}"
        )

    # 2. Non-empty
    if not data:
        raise InvalidFormatError(f"The {label} file is empty.")

    # 3. File size
    size_mb = len(data) / (1024 * 1024)
    if len(data) > settings.upload_max_bytes:
        raise TooLargeError(
            f"The {label} file is {size_mb:.1f} MB, which exceeds the "
            f"maximum allowed size of {settings.upload_max_mb} MB."
        )

    # 4. Magic bytes format check
    fmt = detect_format(data)
    if fmt is None:
        raise InvalidFormatError(
            f"The {label} file format is not supported. "
            "Please upload a JPEG, PNG, or WebP image."
        )

    # 5. Header parse
    try:
        pil_img = open_image(data)
    except Image.DecompressionBombError as e:
        raise TooLargeError(f"The {label} is too large to decode safely.") from e
    except (UnidentifiedImageError, OSError) as e:
        raise InvalidFormatError(
            f"The {label} file could not be decoded. "
            "The file may be corrupted or truncated."
        ) from e
    if pil_img.format != _PIL_FORMATS[fmt]:
        raise InvalidFormatError(
            f"The {label} file looks like {fmt} but decodes as {pil_img.format}."
        )

    # 6. Pixel area guard (header only, no pixel memory committed yet)
    w, h = pil_img.size
    if w <= 0 or h <= 0:
        raise InvalidFormatError(f"The {label} has no pixels ({w}×{h}px).")
    if w * h > settings.upload_max_pixels:
        raise TooLargeError(
            f"The {label} resolution ({w}×{h}px) exceeds the maximum of "
            f"{settings.upload_max_megapixels:g} megapixels."
        )

    # 7. Full decode
    try:
        pixels = decode_oriented_bgra(pil_img)
    except Image.DecompressionBombError as e:
        raise TooLargeError(f"The {label} is too large to decode safely.") from e
    except (OSError, ValueError, SyntaxError) as e:
        raise InvalidFormatError(
            f"The {label} file could not be decoded. "
            "The file may be corrupted or truncated."
        ) from e

    # EXIF orientation may swap width and height
    height, width = pixels.shape[:2]
    thumbnail = make_thumbnail(pixels, settings.thumbnail_long_edge)

    log.debug(
        "image_validated",
        label=label,
        format=fmt,
        width=width,
        height=height,
        size_mb=round(size_mb, 2),
    )
    return DecodedImage(
        pixels=pixels,
        thumbnail=thumbnail,
        width=width,
        height=height,
        format=fmt,
        byte_size=len(data),
    )
