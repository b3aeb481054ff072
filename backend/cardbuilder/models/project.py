# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Project Description Models
The portable, persisted form of a CardDocument. camelCase on the wire,
snake_case in Python. Pixel buffers are never embedded; images travel
as stable storage references.

    {
      "schemaVersion": 1,
      "kitSlug": "rx-78-2",
      "stage": "cutouts",
      "baseCardId": "white",
      "baseCardSource": {"imageId": "img-1", "cropRect": {...}},   optional
      "canvas": {"width": 630, "height": 880},
      "cutouts": [{"id", "sourceImageRef", "cropRect", "transform",
                   "zIndex", "visible", "opacity", "shape", "points"?}],
      "images":  [{"id", "storageRef", "width", "height", "filename"?}]
    }
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from cardbuilder.core.workflow import INITIAL_STAGE, WorkflowStage
from cardbuilder.models.card import CutoutShape, Rect

PROJECT_SCHEMA_VERSION = 1


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProjectTransform(_CamelModel):
    x: float = 0.0
    y: float = 0.0
    scale: float = Field(1.0, gt=0.0)
    scale_y: Optional[float] = Field(None, gt=0.0)
    rotation: float = 0.0


class ProjectCutout(_CamelModel):
    id: str
    source_image_ref: str
    crop_rect: Rect
    transform: ProjectTransform = Field(default_factory=ProjectTransform)
    z_index: int = Field(0, ge=0)
    visible: bool = True
    opacity: float = Field(1.0, ge=0.0, le=1.0)
    shape: CutoutShape = CutoutShape.RECTANGLE
    points: Optional[list[tuple[float, float]]] = None


class ProjectImage(_CamelModel):
    id: str
    storage_ref: Optional[str] = None
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    filename: Optional[str] = None


class ProjectBaseCardSource(_CamelModel):
    image_id: str
    crop_rect: Rect


class ProjectCanvas(_CamelModel):
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)


class ProjectDescription(_CamelModel):
    schema_version: int = PROJECT_SCHEMA_VERSION
    kit_slug: Optional[str] = None
    stage: WorkflowStage = INITIAL_STAGE
    base_card_id: Optional[str] = None
    base_card_source: Optional[ProjectBaseCardSource] = None
    canvas: Optional[ProjectCanvas] = None
    cutouts: list[ProjectCutout] = Field(default_factory=list)
    images: list[ProjectImage] = Field(default_factory=list)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)
