# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Session API Schemas
Request bodies and JSON views returned by the builder session endpoints.
Views never carry pixel data; thumbnails and renders have their own
image endpoints.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

from cardbuilder.core.workflow import StageHint, WorkflowStage
from cardbuilder.models.card import (
    BaseCard,
    BaseCardSource,
    Cutout,
    CutoutPatch,
    CutoutShape,
    ImageStatus,
    Rect,
    SlotRegion,
    Transform,
    UploadedImage,
)

if TYPE_CHECKING:
    from cardbuilder.core.session_store import BuilderSession

# Scale slider range offered by the builder UI
MIN_SCALE = 0.1
MAX_SCALE = 3.0


# ─── Views ───────────────────────────────────────────────────────────────────

class UploadView(BaseModel):
    image_id: str
    filename: str
    status: ImageStatus
    width: int
    height: int
    byte_size: int
    storage_ref: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def of(cls, image: UploadedImage) -> "UploadView":
        return cls(
            image_id=image.image_id,
            filename=image.filename,
            status=image.status,
            width=image.width,
            height=image.height,
            byte_size=image.byte_size,
            storage_ref=image.storage_ref,
            error=image.error,
        )


class BaseCardView(BaseModel):
    template_id: str
    name: str
    width: int
    height: int
    layered: bool
    slots: list[SlotRegion] = Field(default_factory=list)
    source: Optional[BaseCardSource] = None

    @classmethod
    def of(cls, card: BaseCard) -> "BaseCardView":
        return cls(
            template_id=card.template_id,
            name=card.name,
            width=card.width,
            height=card.height,
            layered=card.pixels is None,
            slots=card.slots,
            source=card.source,
        )


class CutoutView(BaseModel):
    cutout_id: str
    source_image_id: str
    crop_rect: Rect
    transform: Transform
    z_index: int
    visible: bool
    opacity: float
    shape: CutoutShape
    points: list[tuple[float, float]] = Field(default_factory=list)
    out_of_bounds: bool = False

    @classmethod
    def of(cls, cutout: Cutout, out_of_bounds: bool = False) -> "CutoutView":
        return cls(**cutout.model_dump(), out_of_bounds=out_of_bounds)


class SessionView(BaseModel):
    """Full builder state, returned by GET /sessions/{id} and every mutation."""
    session_id: str
    kit_slug: Optional[str] = None
    stage: WorkflowStage
    hints: list[StageHint] = Field(default_factory=list)
    base_card: Optional[BaseCardView] = None
    uploads: list[UploadView] = Field(default_factory=list)
    cutouts: list[CutoutView] = Field(default_factory=list)
    selected_cutout_id: Optional[str] = None
    can_undo: bool = False
    can_redo: bool = False
    pending_loads: int = 0

    @classmethod
    def of(cls, session: "BuilderSession") -> "SessionView":
        doc = session.document
        flagged = set(doc.out_of_bounds_ids())
        return cls(
            session_id=session.session_id,
            kit_slug=doc.kit_slug,
            stage=doc.stage,
            hints=doc.stage_hints().hints,
            base_card=BaseCardView.of(doc.base_card) if doc.base_card is not None else None,
            uploads=[UploadView.of(img) for img in doc.uploads],
            cutouts=[CutoutView.of(c, c.cutout_id in flagged) for c in doc.cutouts],
            selected_cutout_id=doc.selected_cutout_id,
            can_undo=doc.can_undo,
            can_redo=doc.can_redo,
            pending_loads=session.loader.pending,
        )


class RemoveUploadResponse(BaseModel):
    removed_cutout_ids: list[str]
    session: SessionView


# ─── Requests ────────────────────────────────────────────────────────────────

class CreateSessionRequest(BaseModel):
    kit_slug: Optional[str] = None


class KitRequest(BaseModel):
    kit_slug: Optional[str] = None


class StageRequest(BaseModel):
    stage: WorkflowStage


class BaseCardRequest(BaseModel):
    template_id: str


class BaseFromUploadRequest(BaseModel):
    image_id: str
    # Defaults to the largest centred crop with the card's aspect ratio
    crop_rect: Optional[Rect] = None


class RemoteTemplateRequest(BaseModel):
    template_id: str
    url: str
    name: str = ""


class RemoteUploadRequest(BaseModel):
    url: str
    filename: Optional[str] = None


class StorageRefRequest(BaseModel):
    # Where the upload collaborator stored the original (e.g. a Cloudinary secure_url)
    storage_ref: str = Field(..., min_length=1)


class CutoutCreateRequest(BaseModel):
    source_image_id: str
    crop_rect: Rect
    x: float = 0.0
    y: float = 0.0
    scale: float = Field(1.0, ge=MIN_SCALE, le=MAX_SCALE)
    scale_y: Optional[float] = Field(None, ge=MIN_SCALE, le=MAX_SCALE)
    rotation: float = 0.0
    shape: CutoutShape = CutoutShape.RECTANGLE
    points: Optional[list[tuple[float, float]]] = None
    opacity: float = Field(1.0, ge=0.0, le=1.0)
    visible: bool = True

    def transform(self) -> Transform:
        return Transform(
            x=self.x, y=self.y, scale=self.scale, scale_y=self.scale_y, rotation=self.rotation,
        )


class CutoutPatchRequest(CutoutPatch):
    scale: Optional[float] = Field(None, ge=MIN_SCALE, le=MAX_SCALE)
    scale_y: Optional[float] = Field(None, ge=MIN_SCALE, le=MAX_SCALE)


class ZIndexRequest(BaseModel):
    z_index: int


class SelectCutoutRequest(BaseModel):
    cutout_id: Optional[str] = None


class SignatureRequest(BaseModel):
    folder: Optional[str] = None
