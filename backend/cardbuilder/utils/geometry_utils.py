# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Geometry & Transform Engine
Pure functions converting between the three coordinate spaces:

  source-image space   pixels of an UploadedImage
  canvas space         pixels of the BaseCard's fixed output resolution
  display space        on-screen preview, scaled + letterboxed from canvas

All maths is float. Nothing here rounds to integer pixels; that happens
once, in the compositor.
"""

from __future__ import annotations

import math

import numpy as np

from cardbuilder.models.card import BoundingBox, Rect, Transform

Point = tuple[float, float]
Size = tuple[float, float]


# ─── Display ↔ Canvas ────────────────────────────────────────────────────────

def fit_contain(canvas_size: Size, viewport_size: Size) -> tuple[float, Point]:
    """
    Letterbox a canvas into a viewport, preserving aspect ratio.
    Returns (display_scale, display_offset) where offset centres the
    scaled canvas inside the viewport.
    """
    cw, ch = canvas_size
    vw, vh = viewport_size
    if cw <= 0 or ch <= 0:
        raise ValueError(f"fit_contain: canvas size must be positive, got {canvas_size}")
    scale = min(vw / cw, vh / ch)
    offset = ((vw - cw * scale) / 2.0, (vh - ch * scale) / 2.0)
    return scale, offset


def display_to_canvas(point: Point, display_scale: float, display_offset: Point) -> Point:
    """Inverse of the preview mapping: display = canvas * scale + offset."""
    if display_scale <= 0:
        raise ValueError(f"display_scale must be positive, got {display_scale}")
    px, py = point
    ox, oy = display_offset
    return (px - ox) / display_scale, (py - oy) / display_scale


def canvas_to_display(point: Point, display_scale: float, display_offset: Point) -> Point:
    px, py = point
    ox, oy = display_offset
    return px * display_scale + ox, py * display_scale + oy


def drag_delta_to_canvas(delta: Point, display_scale: float) -> Point:
    """Pointer drag deltas carry no offset, only the scale."""
    if display_scale <= 0:
        raise ValueError(f"display_scale must be positive, got {display_scale}")
    return delta[0] / display_scale, delta[1] / display_scale


# ─── Cutout Placement ────────────────────────────────────────────────────────

def scaled_size(crop_rect: Rect, transform: Transform) -> Size:
    return crop_rect.width * transform.sx, crop_rect.height * transform.sy


def patch_center(crop_rect: Rect, transform: Transform) -> Point:
    """Canvas-space centre of the placed cutout (its rotation pivot)."""
    w, h = scaled_size(crop_rect, transform)
    return transform.x + w / 2.0, transform.y + h / 2.0


def patch_to_canvas_matrix(crop_rect: Rect, transform: Transform) -> np.ndarray:
    """
    2×3 affine mapping crop-local coordinates (origin at the crop's
    top-left, in source pixels) into canvas space.

        q = (x, y) + c + R · (S · p - c)

    with S the scale, R the rotation (clockwise on screen since y points
    down) and c the centre of the scaled patch.
    """
    sx, sy = transform.sx, transform.sy
    theta = math.radians(transform.rotation)
    cos_t, sin_t = math.cos(theta), math.sin(theta)

    rs = np.array(
        [[cos_t * sx, -sin_t * sy],
         [sin_t * sx, cos_t * sy]],
        dtype=np.float64,
    )
    cx = crop_rect.width * sx / 2.0
    cy = crop_rect.height * sy / 2.0
    # t = (x, y) + c - R·c
    tx = transform.x + cx - (cos_t * cx - sin_t * cy)
    ty = transform.y + cy - (sin_t * cx + cos_t * cy)

    m = np.zeros((2, 3), dtype=np.float64)
    m[:, :2] = rs
    m[:, 2] = (tx, ty)
    return m


def transform_corners(crop_rect: Rect, transform: Transform) -> np.ndarray:
    """Return the 4 placed corners (TL, TR, BR, BL) as a (4, 2) float array."""
    w, h = crop_rect.width, crop_rect.height
    local = np.array(
        [[0.0, 0.0, 1.0],
         [w, 0.0, 1.0],
         [w, h, 1.0],
         [0.0, h, 1.0]],
        dtype=np.float64,
    )
    return local @ patch_to_canvas_matrix(crop_rect, transform).T


def apply_transform(crop_rect: Rect, transform: Transform) -> BoundingBox:
    """Axis-aligned canvas-space bounding box of a placed cutout."""
    corners = transform_corners(crop_rect, transform)
    x0, y0 = corners.min(axis=0)
    x1, y1 = corners.max(axis=0)
    return BoundingBox(x0=float(x0), y0=float(y0), x1=float(x1), y1=float(y1))


def _axis_shift(lo: float, hi: float, limit: float) -> float:
    """Shift needed to bring [lo, hi] inside [0, limit]; centre if too big."""
    if hi - lo > limit:
        return limit / 2.0 - (lo + hi) / 2.0
    if lo < 0:
        return -lo
    if hi > limit:
        return limit - hi
    return 0.0


def clamp_to_canvas(
    transform: Transform,
    canvas_size: Size,
    crop_rect: Rect | None = None,
) -> Transform:
    """
    Snap a transform so the cutout sits inside the canvas.
    UI guide helper only: returns a new Transform, never mutates stored data.

    With crop_rect the placed bounding box is shifted inside (centred on an
    axis where it is larger than the canvas). Without, only the anchor
    point (x, y) is clamped.
    """
    cw, ch = canvas_size
    if crop_rect is None:
        return transform.model_copy(update={
            "x": min(max(transform.x, 0.0), float(cw)),
            "y": min(max(transform.y, 0.0), float(ch)),
        })

    box = apply_transform(crop_rect, transform)
    dx = _axis_shift(box.x0, box.x1, float(cw))
    dy = _axis_shift(box.y0, box.y1, float(ch))
    if dx == 0.0 and dy == 0.0:
        return transform
    return transform.model_copy(update={"x": transform.x + dx, "y": transform.y + dy})


# ─── Crop Validation ─────────────────────────────────────────────────────────

def is_degenerate(rect: Rect) -> bool:
    values = rect.as_tuple()
    if not all(math.isfinite(v) for v in values):
        return True
    return rect.width <= 0 or rect.height <= 0


def rect_within(rect: Rect, width: float, height: float) -> bool:
    """True if rect lies inside [0, width] × [0, height]."""
    return (
        rect.x >= 0 and rect.y >= 0
        and rect.right <= width and rect.bottom <= height
    )


def points_within(points: list[Point], width: float, height: float) -> bool:
    return all(0 <= px <= width and 0 <= py <= height for px, py in points)


def polygon_area(points: list[Point]) -> float:
    """Unsigned shoelace area; 0 for fewer than 3 points."""
    if len(points) < 3:
        return 0.0
    pts = np.asarray(points, dtype=np.float64)
    x, y = pts[:, 0], pts[:, 1]
    return float(abs(np.dot(x, np.roll(y, -1)) - np.dot(y, np.roll(x, -1))) / 2.0)
