# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Image I/O and Conversion Utilities
Shared helpers used across intake, templates, and rendering.
All internal processing uses BGRA uint8 numpy arrays (OpenCV channel
order plus alpha). Pillow is used only at the decode boundary, where it
reads headers lazily and applies EXIF orientation.
"""

from __future__ import annotations

import io

import cv2
import numpy as np
from PIL import Image, ImageOps


# ─── Channel Normalisation ───────────────────────────────────────────────────

def to_bgra(img: np.ndarray) -> np.ndarray:
    """Promote a gray, BGR or BGRA uint8 array to BGRA."""
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGRA)
    channels = img.shape[2]
    if channels == 4:
        return img.copy()
    if channels == 3:
        return cv2.cvtColor(img, cv2.COLOR_BGR2BGRA)
    if channels == 1:
        return cv2.cvtColor(img[:, :, 0], cv2.COLOR_GRAY2BGRA)
    raise ValueError(f"Unsupported channel count: {channels}")


def solid_bgra(width: int, height: int, color: tuple[int, int, int, int]) -> np.ndarray:
    """Create a width×height BGRA buffer filled with one colour."""
    img = np.empty((height, width, 4), dtype=np.uint8)
    img[:] = color
    return img


def flatten_on_background(
    img: np.ndarray,
    bg_color: tuple[int, int, int] = (255, 255, 255),
) -> np.ndarray:
    """
    Composite a BGRA image over an opaque background, returning BGR.
    Used for formats without alpha (JPEG).
    """
    if img.ndim == 3 and img.shape[2] == 3:
        return img.copy()
    alpha = img[:, :, 3:4].astype(np.float64) / 255.0
    bg = np.array(bg_color, dtype=np.float64).reshape(1, 1, 3)
    out = img[:, :, :3].astype(np.float64) * alpha + bg * (1.0 - alpha)
    return np.rint(out).clip(0, 255).astype(np.uint8)


# ─── PIL Bridge ──────────────────────────────────────────────────────────────

def pil_to_bgra(pil_img: Image.Image) -> np.ndarray:
    """Convert any-mode PIL Image to a BGRA numpy array."""
    rgba = np.asarray(pil_img.convert("RGBA"))
    return cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGRA)


# ─── Decode / Encode ─────────────────────────────────────────────────────────

def open_image(data: bytes) -> Image.Image:
    """
    Open image bytes lazily. Only the header is parsed here, so size and
    format can be checked before committing memory to a full decode.
    Raises PIL.UnidentifiedImageError on unrecognised data.
    """
    return Image.open(io.BytesIO(data))


def decode_oriented_bgra(pil_img: Image.Image) -> np.ndarray:
    """Fully decode, apply EXIF orientation, and return BGRA."""
    pil_img.load()
    oriented = ImageOps.exif_transpose(pil_img)
    return pil_to_bgra(oriented)


_ENCODERS: dict[str, tuple[str, str]] = {
    "png": (".png", "image/png"),
    "jpeg": (".jpg", "image/jpeg"),
    "jpg": (".jpg", "image/jpeg"),
    "webp": (".webp", "image/webp"),
}


def content_type_for(fmt: str) -> str:
    try:
        return _ENCODERS[fmt.lower()][1]
    except KeyError:
        raise ValueError(f"Unsupported export format: {fmt}") from None


def encode_image(img: np.ndarray, fmt: str = "png", quality: int = 92) -> bytes:
    """
    Encode a BGRA (or BGR) array. PNG and WebP keep alpha; JPEG is
    flattened over white first. WebP is written lossless so repeated
    exports stay byte-identical.
    """
    fmt = fmt.lower()
    if fmt not in _ENCODERS:
        raise ValueError(f"Unsupported export format: {fmt}")
    ext, _ = _ENCODERS[fmt]

    params: list[int] = []
    if ext == ".jpg":
        img = flatten_on_background(img)
        params = [cv2.IMWRITE_JPEG_QUALITY, int(quality)]
    elif ext == ".webp":
        # quality > 100 selects lossless WebP
        params = [cv2.IMWRITE_WEBP_QUALITY, 101]

    success, buf = cv2.imencode(ext, img, params)
    if not success:
        raise RuntimeError(f"Failed to encode image as {fmt}.")
    return buf.tobytes()


# ─── Resize ──────────────────────────────────────────────────────────────────

def resize_long_edge(img: np.ndarray, max_long_edge: int) -> tuple[np.ndarray, float]:
    """
    Resize image so its longest edge equals max_long_edge.
    Preserves aspect ratio. Returns (resized_image, scale_factor).
    Scale factor < 1.0 means the image was downscaled.
    """
    h, w = img.shape[:2]
    long_edge = max(h, w)
    if long_edge <= max_long_edge:
        return img.copy(), 1.0
    scale = max_long_edge / long_edge
    new_w = max(1, int(round(w * scale)))
    new_h = max(1, int(round(h * scale)))
    resized = cv2.resize(img, (new_w, new_h), interpolation=cv2.INTER_AREA)
    return resized, scale


def resize_exact(img: np.ndarray, width: int, height: int) -> np.ndarray:
    """Resize to an exact size; INTER_AREA when shrinking, cubic when growing."""
    h, w = img.shape[:2]
    if (w, h) == (width, height):
        return img.copy()
    shrinking = width * height < w * h
    interp = cv2.INTER_AREA if shrinking else cv2.INTER_CUBIC
    return cv2.resize(img, (width, height), interpolation=interp)


def make_thumbnail(img: np.ndarray, long_edge: int) -> np.ndarray:
    thumb, _ = resize_long_edge(img, long_edge)
    return thumb


# ─── Cropping ────────────────────────────────────────────────────────────────

def crop_pixels(img: np.ndarray, x: float, y: float, w: float, h: float) -> np.ndarray:
    """
    Crop the integer pixel span covering a float rect, clamped to the image.
    Never raises on out-of-bounds coords.
    """
    ih, iw = img.shape[:2]
    x1 = max(0, int(np.floor(x)))
    y1 = max(0, int(np.floor(y)))
    x2 = min(iw, int(np.ceil(x + w)))
    y2 = min(ih, int(np.ceil(y + h)))
    return img[y1:y2, x1:x2].copy()
