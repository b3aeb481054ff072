# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Workflow Stages
The builder's tab selector. Any stage is reachable from any other; entry
preconditions are soft hints for the UI, never blocks. Switching stage
never touches document content.
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from cardbuilder.core.document import CardDocument


class WorkflowStage(str, Enum):
    UPLOAD = "upload"
    BASE = "base"
    CUTOUTS = "cutouts"
    PREVIEW = "preview"


INITIAL_STAGE = WorkflowStage.UPLOAD


class StageHint(BaseModel):
    """One unmet soft precondition for entering a stage."""
    code: str
    message: str


class StageChange(BaseModel):
    """Result of a stage switch: where we are now and what the UI should warn about."""
    previous: WorkflowStage
    current: WorkflowStage
    hints: list[StageHint] = Field(default_factory=list)

    @property
    def ready(self) -> bool:
        return not self.hints


def stage_hints(stage: WorkflowStage, document: "CardDocument") -> list[StageHint]:
    """
    Evaluate the soft entry preconditions of `stage` against a document.

      cutouts  needs at least one ready upload and a selected base card
      preview  needs a base card or at least one visible cutout
    """
    hints: list[StageHint] = []

    if stage == WorkflowStage.CUTOUTS:
        if not any(img.is_ready for img in document.uploads):
            hints.append(StageHint(
                code="no_uploads",
                message="Upload at least one photo to cut pieces from.",
            ))
        if document.base_card is None:
            hints.append(StageHint(
                code="no_base_card",
                message="Choose a base card before placing cutouts.",
            ))

    elif stage == WorkflowStage.PREVIEW:
        has_visible = any(c.visible for c in document.cutouts)
        if document.base_card is None and not has_visible:
            hints.append(StageHint(
                code="nothing_to_render",
                message="Pick a base card or add a cutout to see a preview.",
            ))
        elif document.base_card is None:
            hints.append(StageHint(
                code="no_base_card",
                message="Exporting requires a base card.",
            ))

    return hints
