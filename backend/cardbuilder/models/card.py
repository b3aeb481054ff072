# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Card Data Models
Pydantic models for everything a CardDocument owns: uploaded source
images, the base card template, and positioned cutouts.

Models are frozen. The document replaces them with model_copy(update=...)
instead of mutating in place, which keeps undo snapshots cheap (shallow list
copies) and safe. Pixel buffers are BGRA uint8 numpy arrays and are never
written to after construction.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ImageStatus(str, Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class CutoutShape(str, Enum):
    """Mask applied to a cutout's crop rectangle."""
    RECTANGLE = "rectangle"
    ELLIPSE = "ellipse"     # inscribed in the crop rect (circle when square)
    POLYGON = "polygon"     # points in crop-local coordinates


# ─── Geometry Primitives ─────────────────────────────────────────────────────

class Rect(BaseModel):
    """Axis-aligned rectangle. Float coordinates; rounding only at render."""
    model_config = ConfigDict(frozen=True)

    x: float = 0.0
    y: float = 0.0
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def area(self) -> float:
        return self.width * self.height

    def as_tuple(self) -> tuple[float, float, float, float]:
        return self.x, self.y, self.width, self.height


def normalize_degrees(deg: float) -> float:
    """Map any angle in degrees into [0, 360)."""
    norm = float(deg) % 360.0
    # -1e-17 % 360 == 360.0 in floating point
    return 0.0 if norm >= 360.0 else norm


class Transform(BaseModel):
    """
    Destination transform of a cutout in canvas space.

    x, y      top-left of the scaled, unrotated patch
    scale     1.0 = crop's native pixel size
    scale_y   optional vertical scale; None means uniform (= scale)
    rotation  degrees clockwise on screen, about the patch centre, in [0, 360)
    """
    model_config = ConfigDict(frozen=True)

    x: float = 0.0
    y: float = 0.0
    scale: float = Field(1.0, gt=0.0)
    scale_y: Optional[float] = Field(None, gt=0.0)
    rotation: float = 0.0

    @field_validator("rotation")
    @classmethod
    def _normalize_rotation(cls, v: float) -> float:
        return normalize_degrees(v)

    @property
    def sx(self) -> float:
        return self.scale

    @property
    def sy(self) -> float:
        return self.scale if self.scale_y is None else self.scale_y


class BoundingBox(BaseModel):
    """Axis-aligned box in canvas space, as (x0, y0)-(x1, y1)."""
    model_config = ConfigDict(frozen=True)

    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def width(self) -> float:
        return self.x1 - self.x0

    @property
    def height(self) -> float:
        return self.y1 - self.y0

    def inside(self, width: float, height: float, eps: float = 1e-6) -> bool:
        """True if the box lies entirely within a width×height canvas."""
        return (
            self.x0 >= -eps and self.y0 >= -eps
            and self.x1 <= width + eps and self.y1 <= height + eps
        )


# ─── Uploaded Source Images ──────────────────────────────────────────────────

class UploadMetadata(BaseModel):
    """What the client tells us about a file alongside its bytes."""
    filename: str = "upload"
    content_type: Optional[str] = None
    storage_ref: Optional[str] = None


class UploadedImage(BaseModel):
    """
    An image the user added as source material for cutouts.
    width/height are always the natural decoded size of `pixels`.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    image_id: str
    filename: str = "upload"
    content_type: Optional[str] = None
    byte_size: int = 0
    status: ImageStatus = ImageStatus.PENDING
    width: int = 0
    height: int = 0
    # BGRA uint8 (H×W×4), full resolution. None while pending / failed.
    pixels: Any = Field(None, repr=False)
    # BGRA uint8, long edge ≤ thumbnail_long_edge
    thumbnail: Any = Field(None, repr=False)
    # Stable reference from the upload collaborator (e.g. Cloudinary URL)
    storage_ref: Optional[str] = None
    error: Optional[str] = None

    @property
    def is_ready(self) -> bool:
        return self.status == ImageStatus.READY and self.pixels is not None

    @property
    def bounds(self) -> Rect:
        return Rect(x=0, y=0, width=self.width, height=self.height)


class DecodedImage(BaseModel):
    """Output of the intake validator: a decoded buffer plus metadata."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    pixels: Any = Field(..., repr=False)
    thumbnail: Any = Field(..., repr=False)
    width: int
    height: int
    format: str
    byte_size: int


# ─── Base Card ───────────────────────────────────────────────────────────────

class SlotRegion(BaseModel):
    """Named canvas-space rectangle where a template expects a cutout."""
    model_config = ConfigDict(frozen=True)

    name: str
    rect: Rect


class BaseCardSource(BaseModel):
    """Provenance of a base card derived from one of the document's uploads."""
    model_config = ConfigDict(frozen=True)

    image_id: str
    crop_rect: Rect


class BaseCard(BaseModel):
    """
    Background template onto which cutouts are composited.
    width/height are the fixed output resolution of every export.
    pixels=None marks a layered template that renders from transparency.
    """
    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    template_id: str
    name: str = ""
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    pixels: Any = Field(None, repr=False)
    slots: list[SlotRegion] = Field(default_factory=list)
    source: Optional[BaseCardSource] = None
    storage_ref: Optional[str] = None

    @property
    def size(self) -> tuple[int, int]:
        return self.width, self.height


# ─── Cutouts ─────────────────────────────────────────────────────────────────

class Cutout(BaseModel):
    """One positioned crop of an UploadedImage, rendered above the base card."""
    model_config = ConfigDict(frozen=True)

    cutout_id: str
    # Lookup key into the document's uploads; never an owning reference
    source_image_id: str
    crop_rect: Rect
    transform: Transform = Field(default_factory=Transform)
    z_index: int = Field(0, ge=0)
    visible: bool = True
    opacity: float = Field(1.0, ge=0.0, le=1.0)
    shape: CutoutShape = CutoutShape.RECTANGLE
    # Polygon vertices in crop-local pixel coordinates (shape == POLYGON)
    points: list[tuple[float, float]] = Field(default_factory=list)


class CutoutPatch(BaseModel):
    """
    Partial update for a cutout. None means "leave unchanged".
    Transform fields are patched individually so a drag only sends x/y.
    """
    crop_rect: Optional[Rect] = None
    x: Optional[float] = None
    y: Optional[float] = None
    scale: Optional[float] = Field(None, gt=0.0)
    scale_y: Optional[float] = Field(None, gt=0.0)
    rotation: Optional[float] = None
    visible: Optional[bool] = None
    opacity: Optional[float] = Field(None, ge=0.0, le=1.0)
    shape: Optional[CutoutShape] = None
    points: Optional[list[tuple[float, float]]] = None

    def transform_updates(self) -> dict[str, float]:
        fields = ("x", "y", "scale", "scale_y", "rotation")
        return {
            name: getattr(self, name)
            for name in fields
            if getattr(self, name) is not None
        }
