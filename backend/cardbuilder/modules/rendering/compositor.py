# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Card Compositor
Flattens a CardDocument into one BGRA raster of exactly the base card's
canvas size.

  1. Start from the base card pixels (transparent for layered templates)
  2. Visible cutouts in z order, lowest first
  3. Each cutout: full-resolution crop from its source image, shape mask
     and opacity folded into alpha, warped into canvas space with
     cv2.warpAffine (bilinear, transparent border, clipped to the canvas),
     then composited with the "over" operator
  4. One np.rint (round-half-to-even) back to uint8

Colour is carried premultiplied in float64 between steps so bilinear
sampling never bleeds the transparent border into patch edges. Canvas
pixels no cutout touches are copied from the base card unchanged.
Never renders from thumbnails or preview buffers.
"""

from __future__ import annotations

import math

import cv2
import numpy as np

from cardbuilder.api.middleware.error_handler import NoBaseCardError
from cardbuilder.core.document import CardDocument
from cardbuilder.models.card import BaseCard, Cutout, CutoutShape, UploadedImage
from cardbuilder.utils.geometry_utils import patch_to_canvas_matrix
from cardbuilder.utils.image_utils import resize_long_edge, to_bgra
from cardbuilder.utils.logger import get_logger

log = get_logger(__name__)

# Fixed-point bits for sub-pixel mask drawing (cv2 shift argument)
_MASK_SHIFT = 4
_MASK_ONE = 1 << _MASK_SHIFT


# ─── Public API ──────────────────────────────────────────────────────────────

def render_document(document: CardDocument, include_hidden: bool = False) -> np.ndarray:
    """
    Render the document at full resolution.

    Args:
        document:        Document to flatten.
        include_hidden:  Also paint cutouts with visible=False.

    Returns:
        BGRA uint8 array of shape (base.height, base.width, 4).

    Raises:
        NoBaseCardError: no base card is selected.
    """
    base = document.base_card
    if base is None:
        raise NoBaseCardError("Select a base card before rendering or exporting.")

    base_pixels = _base_pixels(base)
    canvas = _premultiply(base_pixels)
    touched = np.zeros((base.height, base.width), dtype=bool)

    painted = 0
    for cutout in document.cutouts_in_paint_order(include_hidden=include_hidden):
        image = document.get_upload(cutout.source_image_id)
        if not image.is_ready:
            log.warning(
                "cutout_source_not_ready",
                cutout_id=cutout.cutout_id,
                image_id=image.image_id,
                status=image.status.value,
            )
            continue
        layer = _warp_cutout(cutout, image, base.size)
        if layer is None:
            continue
        _composite_over(canvas, layer)
        touched |= layer[:, :, 3] > 0.0
        painted += 1

    out = _unpremultiply(canvas)
    out[~touched] = base_pixels[~touched]

    log.debug(
        "document_rendered",
        template_id=base.template_id,
        width=base.width,
        height=base.height,
        cutouts=painted,
    )
    return out


def render_preview(document: CardDocument, max_long_edge: int | None = None) -> np.ndarray:
    """
    Downscaled render for on-screen display. Renders at full resolution
    first, so the preview matches the export; never feed this to the exporter.
    """
    long_edge = max_long_edge or document.settings.preview_long_edge
    full = render_document(document)
    preview, _ = resize_long_edge(full, long_edge)
    return preview


# ─── Layers ──────────────────────────────────────────────────────────────────

def _base_pixels(base: BaseCard) -> np.ndarray:
    if base.pixels is None:
        return np.zeros((base.height, base.width, 4), dtype=np.uint8)
    pixels = to_bgra(base.pixels)
    if pixels.shape[:2] != (base.height, base.width):
        # Catalog templates are decoded at their own size; a mismatch is a defect
        raise ValueError(
            f"Base card {base.template_id} pixels are {pixels.shape[1]}×{pixels.shape[0]}, "
            f"expected {base.width}×{base.height}."
        )
    return pixels


def _warp_cutout(
    cutout: Cutout,
    image: UploadedImage,
    canvas_size: tuple[int, int],
) -> np.ndarray | None:
    """
    Build the cutout's premultiplied float layer in canvas space, or None
    when nothing of it lands on the canvas.
    """
    crop = cutout.crop_rect
    src_h, src_w = image.pixels.shape[:2]

    # Integer pixel span covering the float crop rect
    ix0 = max(0, math.floor(crop.x))
    iy0 = max(0, math.floor(crop.y))
    ix1 = min(src_w, math.ceil(crop.right))
    iy1 = min(src_h, math.ceil(crop.bottom))
    if ix1 <= ix0 or iy1 <= iy0:
        return None

    patch = to_bgra(image.pixels[iy0:iy1, ix0:ix1]).astype(np.float64)
    # Offset of the patch origin in crop-local coordinates
    ox, oy = ix0 - crop.x, iy0 - crop.y

    mask = _shape_mask(cutout, patch.shape[1], patch.shape[0], ox, oy)
    alpha = patch[:, :, 3] / 255.0 * mask * cutout.opacity
    if not alpha.any():
        return None

    layer_src = np.empty_like(patch)
    layer_src[:, :, :3] = patch[:, :, :3] * alpha[:, :, None]
    layer_src[:, :, 3] = alpha

    # Crop-local continuous coords -> canvas continuous coords, then shift
    # to pixel-index space on both sides (pixel centres sit at +0.5).
    m = patch_to_canvas_matrix(crop, cutout.transform)
    a = m[:, :2]
    t = m[:, 2]
    m_idx = np.zeros((2, 3), dtype=np.float64)
    m_idx[:, :2] = a
    m_idx[:, 2] = a @ np.array([ox + 0.5, oy + 0.5]) + t - 0.5

    width, height = canvas_size
    warped = cv2.warpAffine(
        layer_src.astype(np.float32),
        m_idx,
        (width, height),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0.0, 0.0, 0.0, 0.0),
    )
    layer = warped.astype(np.float64)
    # Bilinear weights can leave tiny negatives / overshoots
    np.clip(layer[:, :, 3], 0.0, 1.0, out=layer[:, :, 3])
    np.clip(layer[:, :, :3], 0.0, 255.0, out=layer[:, :, :3])
    return layer


def _shape_mask(cutout: Cutout, width: int, height: int, ox: float, oy: float) -> np.ndarray:
    """
    Coverage mask in [0, 1] over the patch's pixel grid. The crop rect
    itself always bounds the mask; ellipse and polygon are drawn
    anti-aliased inside it.
    """
    cw, ch = cutout.crop_rect.width, cutout.crop_rect.height

    # Pixel centres in crop-local coordinates
    xs = ox + np.arange(width) + 0.5
    ys = oy + np.arange(height) + 0.5
    inside_x = (xs >= 0.0) & (xs <= cw)
    inside_y = (ys >= 0.0) & (ys <= ch)
    rect_mask = (inside_y[:, None] & inside_x[None, :]).astype(np.float64)

    if cutout.shape == CutoutShape.RECTANGLE:
        return rect_mask

    drawn = np.zeros((height, width), dtype=np.uint8)

    def fixed(px: float, py: float) -> tuple[int, int]:
        # crop-local -> patch pixel index, in cv2 fixed point
        return (
            int(round((px - ox - 0.5) * _MASK_ONE)),
            int(round((py - oy - 0.5) * _MASK_ONE)),
        )

    if cutout.shape == CutoutShape.ELLIPSE:
        center = fixed(cw / 2.0, ch / 2.0)
        axes = (int(round(cw / 2.0 * _MASK_ONE)), int(round(ch / 2.0 * _MASK_ONE)))
        cv2.ellipse(drawn, center, axes, 0.0, 0.0, 360.0, 255, -1, cv2.LINE_AA, _MASK_SHIFT)
    else:
        pts = np.array([fixed(px, py) for px, py in cutout.points], dtype=np.int32)
        cv2.fillPoly(drawn, [pts], 255, cv2.LINE_AA, _MASK_SHIFT)

    return rect_mask * (drawn.astype(np.float64) / 255.0)


# ─── Alpha Maths ─────────────────────────────────────────────────────────────

def _premultiply(img: np.ndarray) -> np.ndarray:
    out = img.astype(np.float64)
    alpha = out[:, :, 3] / 255.0
    out[:, :, :3] *= alpha[:, :, None]
    out[:, :, 3] = alpha
    return out


def _composite_over(canvas: np.ndarray, layer: np.ndarray) -> None:
    """Porter-Duff "over" in premultiplied space, in place on canvas."""
    keep = 1.0 - layer[:, :, 3]
    canvas *= keep[:, :, None]
    canvas += layer


def _unpremultiply(canvas: np.ndarray) -> np.ndarray:
    alpha = canvas[:, :, 3]
    color = np.zeros_like(canvas[:, :, :3])
    np.divide(canvas[:, :, :3], alpha[:, :, None], out=color, where=alpha[:, :, None] > 0.0)

    out = np.empty(canvas.shape, dtype=np.uint8)
    out[:, :, :3] = np.clip(np.rint(color), 0, 255)
    out[:, :, 3] = np.clip(np.rint(alpha * 255.0), 0, 255)
    return out
