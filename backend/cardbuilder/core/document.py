# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Card Document Store
The aggregate root of one editing session: uploaded source images, the
active base card, and z-ordered cutouts, plus the current workflow stage
and an undo/redo history.

Rules every mutating operation follows:
  - validate everything first, then commit; a raised error leaves the
    document untouched
  - synchronous, never awaits
  - deterministic: ids come from per-document counters, no clock, no RNG
  - cutouts hold only an image_id; removing an image cascades to its cutouts
  - z_index is always the cutout's position in the paint-order list, so it
    stays dense (0..n-1) and unique

Async image loads (see modules/intake/loader.py) talk to the document only
through LoadTokens, so a stale decode can never overwrite newer state.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from cardbuilder.api.middleware.error_handler import (
    ImageNotReadyError,
    InvalidCropError,
    NotFoundError,
    TooLargeError,
)
from cardbuilder.config import Settings, get_settings
from cardbuilder.core.templates import TemplateCatalog, derive_base_card
from cardbuilder.core.workflow import INITIAL_STAGE, StageChange, WorkflowStage, stage_hints
from cardbuilder.models.card import (
    BaseCard,
    Cutout,
    CutoutPatch,
    CutoutShape,
    DecodedImage,
    ImageStatus,
    Rect,
    Transform,
    UploadedImage,
    UploadMetadata,
)
from cardbuilder.modules.intake.validator import validate_image_bytes
from cardbuilder.utils.geometry_utils import (
    apply_transform,
    is_degenerate,
    points_within,
    polygon_area,
    rect_within,
)
from cardbuilder.utils.logger import get_logger

log = get_logger(__name__)

_ID_SUFFIX = re.compile(r"-(\d+)$")


class LoadToken(BaseModel):
    """Identifies one async load issued for one upload slot."""
    model_config = ConfigDict(frozen=True)

    image_id: str
    generation: int


@dataclass(frozen=True)
class _Snapshot:
    """Document content at one point in history (stage/selection excluded)."""
    uploads: tuple[UploadedImage, ...]
    base_card: Optional[BaseCard]
    cutouts: tuple[Cutout, ...]
    next_image: int
    next_cutout: int


class CardDocument:
    """
    In-memory card document. One instance belongs to exactly one editing
    session; it is not shared across sessions and takes no locks. The
    owning session serialises mutations (single writer).
    """

    def __init__(
        self,
        catalog: TemplateCatalog | None = None,
        settings: Settings | None = None,
        kit_slug: str | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._catalog = catalog
        self.kit_slug = kit_slug

        self._uploads: list[UploadedImage] = []
        self._base_card: BaseCard | None = None
        # Paint order: index == z_index
        self._cutouts: list[Cutout] = []
        self._stage = INITIAL_STAGE
        self.selected_cutout_id: str | None = None

        self._next_image = 1
        self._next_cutout = 1

        # Live load generation per pending slot
        self._generations: dict[str, int] = {}
        self._generation_counter = 0
        # Bumped on every base card change; guards remote template fetches
        self._base_generation = 0
        self._closed = False

        self._undo: list[_Snapshot] = []
        self._redo: list[_Snapshot] = []

    # ─── Read Access ─────────────────────────────────────────────────────────

    @property
    def uploads(self) -> tuple[UploadedImage, ...]:
        return tuple(self._uploads)

    @property
    def cutouts(self) -> tuple[Cutout, ...]:
        """All cutouts in paint order (z ascending)."""
        return tuple(self._cutouts)

    @property
    def base_card(self) -> BaseCard | None:
        return self._base_card

    @property
    def stage(self) -> WorkflowStage:
        return self._stage

    @property
    def catalog(self) -> TemplateCatalog | None:
        return self._catalog

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def remaining_upload_slots(self) -> int:
        return max(0, self._settings.max_uploads_per_document - len(self._uploads))

    @property
    def can_undo(self) -> bool:
        return bool(self._undo)

    @property
    def can_redo(self) -> bool:
        return bool(self._redo)

    def get_upload(self, image_id: str) -> UploadedImage:
        for img in self._uploads:
            if img.image_id == image_id:
                return img
        raise NotFoundError(f"Uploaded image not found: {image_id}")

    def get_cutout(self, cutout_id: str) -> Cutout:
        return self._cutouts[self._cutout_index(cutout_id)]

    def cutouts_in_paint_order(self, include_hidden: bool = False) -> list[Cutout]:
        return [c for c in self._cutouts if include_hidden or c.visible]

    def cutouts_for_image(self, image_id: str) -> list[Cutout]:
        return [c for c in self._cutouts if c.source_image_id == image_id]

    def is_out_of_bounds(self, cutout_id: str) -> bool:
        """
        Derived, never persisted: True when the placed cutout's bounding box
        is not fully inside the active canvas.
        """
        cutout = self.get_cutout(cutout_id)
        if self._base_card is None:
            return False
        box = apply_transform(cutout.crop_rect, cutout.transform)
        return not box.inside(self._base_card.width, self._base_card.height)

    def out_of_bounds_ids(self) -> list[str]:
        return [c.cutout_id for c in self._cutouts if self.is_out_of_bounds(c.cutout_id)]

    # ─── Uploads ─────────────────────────────────────────────────────────────

    def add_upload(self, data: bytes, metadata: UploadMetadata | None = None) -> UploadedImage:
        """
        Validate, decode and append an upload in one synchronous step.
        Raises InvalidFormatError / TooLargeError; the document is unchanged
        on failure.
        """
        metadata = metadata or UploadMetadata()
        self._check_upload_capacity()
        decoded = validate_image_bytes(
            data,
            label=metadata.filename,
            content_type=metadata.content_type,
            settings=self._settings,
        )
        return self.add_decoded_upload(decoded, metadata)

    def add_decoded_upload(self, decoded: DecodedImage, metadata: UploadMetadata | None = None) -> UploadedImage:
        """Append an image that was already validated off the event loop."""
        metadata = metadata or UploadMetadata()
        self._check_upload_capacity()

        self._push_history()
        image = self._ready_image(self._allocate_image_id(), metadata, decoded)
        self._uploads.append(image)
        log.info(
            "upload_added",
            image_id=image.image_id,
            width=image.width,
            height=image.height,
            byte_size=image.byte_size,
        )
        return image

    def reserve_upload(self, metadata: UploadMetadata | None = None) -> tuple[UploadedImage, LoadToken]:
        """
        Append a pending upload slot now, in user-action order, and return
        the token its async decode must present to resolve it.
        """
        metadata = metadata or UploadMetadata()
        self._check_upload_capacity()

        self._push_history()
        image = UploadedImage(
            image_id=self._allocate_image_id(),
            filename=metadata.filename,
            content_type=metadata.content_type,
            storage_ref=metadata.storage_ref,
            status=ImageStatus.PENDING,
        )
        self._uploads.append(image)
        token = self._issue_token(image.image_id)
        log.info("upload_reserved", image_id=image.image_id, generation=token.generation)
        return image, token

    def is_token_live(self, token: LoadToken) -> bool:
        if self._closed:
            return False
        return self._generations.get(token.image_id) == token.generation

    def resolve_upload(
        self,
        token: LoadToken,
        decoded: DecodedImage,
        storage_ref: str | None = None,
    ) -> bool:
        """
        Complete a pending slot with its decoded image. Returns False and
        changes nothing if the token is stale (slot removed, session closed,
        or superseded by a newer load).
        """
        if not self.is_token_live(token):
            log.info("stale_load_discarded", image_id=token.image_id, generation=token.generation)
            return False

        idx = self._upload_index(token.image_id)
        pending = self._uploads[idx]
        metadata = UploadMetadata(
            filename=pending.filename,
            content_type=pending.content_type,
            storage_ref=storage_ref or pending.storage_ref,
        )
        image = self._ready_image(pending.image_id, metadata, decoded)
        self._uploads[idx] = image
        self._generations.pop(token.image_id, None)
        self._patch_history_image(image)
        log.info("upload_resolved", image_id=image.image_id, width=image.width, height=image.height)
        return True

    def fail_upload(self, token: LoadToken, error: str) -> bool:
        """Mark only this slot as failed. Stale tokens are ignored."""
        if not self.is_token_live(token):
            log.info("stale_load_discarded", image_id=token.image_id, generation=token.generation)
            return False

        idx = self._upload_index(token.image_id)
        image = self._uploads[idx].model_copy(update={
            "status": ImageStatus.FAILED,
            "error": error,
        })
        self._uploads[idx] = image
        self._generations.pop(token.image_id, None)
        self._patch_history_image(image)
        log.warning("upload_failed", image_id=image.image_id, error=error)
        return True

    def set_storage_ref(self, image_id: str, storage_ref: str) -> UploadedImage:
        """Record where the upload collaborator persisted this image."""
        idx = self._upload_index(image_id)
        image = self._uploads[idx].model_copy(update={"storage_ref": storage_ref})
        self._uploads[idx] = image
        self._patch_history_image(image)
        return image

    def remove_upload(self, image_id: str) -> list[str]:
        """
        Remove an image and cascade-delete every cutout that references it.
        Any in-flight load for the slot is invalidated. Returns the ids of
        the deleted cutouts.
        """
        idx = self._upload_index(image_id)

        self._push_history()
        del self._uploads[idx]
        self._generations.pop(image_id, None)

        removed = [c.cutout_id for c in self._cutouts if c.source_image_id == image_id]
        if removed:
            self._cutouts = [c for c in self._cutouts if c.source_image_id != image_id]
            self._renumber()
            if self.selected_cutout_id in removed:
                self.selected_cutout_id = None

        log.info("upload_removed", image_id=image_id, cascaded_cutouts=len(removed))
        return removed

    # ─── Base Card ───────────────────────────────────────────────────────────

    def select_base_card(self, template_id: str) -> list[str]:
        """
        Make a catalog template the active base card. Existing cutouts are
        left exactly where they are; returns the ids that are now out of
        bounds on the new canvas (for a UI warning).
        """
        if self._catalog is None:
            raise NotFoundError(f"Base card template not found: {template_id}")
        card = self._catalog.get(template_id)

        self._push_history()
        self._install_base(card)
        flagged = self.out_of_bounds_ids()
        log.info(
            "base_card_selected",
            template_id=card.template_id,
            width=card.width,
            height=card.height,
        )
        if flagged:
            log.warning("cutouts_out_of_bounds", template_id=template_id, cutout_ids=flagged)
        return flagged

    def use_upload_as_base(
        self,
        image_id: str,
        crop_rect: Rect | None = None,
        size: tuple[int, int] | None = None,
    ) -> BaseCard:
        """Crop one of the uploads to the card canvas and make it the base card."""
        image = self.require_ready(image_id)
        card = derive_base_card(image, crop_rect, size or self._settings.card_size)

        self._push_history()
        self._install_base(card)
        log.info("base_card_from_upload", image_id=image_id, template_id=card.template_id)
        return card

    def clear_base_card(self) -> None:
        if self._base_card is None:
            return
        self._push_history()
        self._install_base(None)
        log.info("base_card_cleared")

    def issue_base_token(self, template_id: str) -> LoadToken:
        """
        Token for a remote template fetch. Any base card change made while
        the fetch is in flight (or closing the session) makes it stale.
        """
        self._base_generation += 1
        return LoadToken(image_id=template_id, generation=self._base_generation)

    def is_base_token_live(self, token: LoadToken) -> bool:
        return not self._closed and token.generation == self._base_generation

    # ─── Cutouts ─────────────────────────────────────────────────────────────

    def add_cutout(
        self,
        source_image_id: str,
        crop_rect: Rect,
        transform: Transform | None = None,
        *,
        shape: CutoutShape = CutoutShape.RECTANGLE,
        points: Sequence[tuple[float, float]] | None = None,
        opacity: float = 1.0,
        visible: bool = True,
    ) -> Cutout:
        """Place a new cutout on top of all others."""
        image = self.require_ready(source_image_id)
        point_list = list(points or [])
        self.validate_crop(image, crop_rect, shape, point_list)

        cutout = Cutout(
            cutout_id=f"cut-{self._next_cutout}",
            source_image_id=source_image_id,
            crop_rect=crop_rect,
            transform=transform or Transform(),
            z_index=len(self._cutouts),
            visible=visible,
            opacity=opacity,
            shape=shape,
            points=point_list if shape == CutoutShape.POLYGON else [],
        )

        self._push_history()
        self._next_cutout += 1
        self._cutouts.append(cutout)
        log.info(
            "cutout_added",
            cutout_id=cutout.cutout_id,
            source_image_id=source_image_id,
            z_index=cutout.z_index,
            shape=shape.value,
        )
        return cutout

    def update_cutout(self, cutout_id: str, patch: CutoutPatch) -> Cutout:
        """Partially update a cutout. The crop is re-validated against its source."""
        idx = self._cutout_index(cutout_id)
        old = self._cutouts[idx]

        crop_rect = patch.crop_rect or old.crop_rect
        shape = patch.shape or old.shape
        points = list(patch.points) if patch.points is not None else list(old.points)
        if shape != CutoutShape.POLYGON:
            points = []
        image = self.require_ready(old.source_image_id)
        self.validate_crop(image, crop_rect, shape, points)

        transform = old.transform
        updates = patch.transform_updates()
        if updates:
            transform = Transform(**{**old.transform.model_dump(), **updates})

        new = old.model_copy(update={
            "crop_rect": crop_rect,
            "transform": transform,
            "shape": shape,
            "points": points,
            "visible": old.visible if patch.visible is None else patch.visible,
            "opacity": old.opacity if patch.opacity is None else patch.opacity,
        })
        if new == old:
            return old

        self._push_history()
        self._cutouts[idx] = new
        log.debug("cutout_updated", cutout_id=cutout_id, fields=sorted(patch.model_fields_set))
        return new

    def reorder_cutout(self, cutout_id: str, new_z_index: int) -> Cutout:
        """
        Move a cutout to a new paint position; the rest shift to stay dense.
        Targets past either end are clamped.
        """
        idx = self._cutout_index(cutout_id)
        target = min(max(int(new_z_index), 0), len(self._cutouts) - 1)
        if target == idx:
            return self._cutouts[idx]

        self._push_history()
        cutout = self._cutouts.pop(idx)
        self._cutouts.insert(target, cutout)
        self._renumber()
        log.info("cutout_reordered", cutout_id=cutout_id, from_z=idx, to_z=target)
        return self._cutouts[target]

    def bring_forward(self, cutout_id: str) -> Cutout:
        return self.reorder_cutout(cutout_id, self._cutout_index(cutout_id) + 1)

    def send_backward(self, cutout_id: str) -> Cutout:
        return self.reorder_cutout(cutout_id, self._cutout_index(cutout_id) - 1)

    def remove_cutout(self, cutout_id: str) -> None:
        idx = self._cutout_index(cutout_id)

        self._push_history()
        del self._cutouts[idx]
        self._renumber()
        if self.selected_cutout_id == cutout_id:
            self.selected_cutout_id = None
        log.info("cutout_removed", cutout_id=cutout_id)

    def select_cutout(self, cutout_id: str | None) -> None:
        if cutout_id is not None:
            self._cutout_index(cutout_id)
        self.selected_cutout_id = cutout_id

    def set_kit(self, kit_slug: str | None) -> None:
        """Associate the card with a kit. Not part of undo history."""
        self.kit_slug = kit_slug or None
        log.debug("kit_set", kit_slug=self.kit_slug)

    # ─── Stage ───────────────────────────────────────────────────────────────

    def set_stage(self, stage: WorkflowStage) -> StageChange:
        """Switch tab. Never blocks; returns unmet soft preconditions."""
        stage = WorkflowStage(stage)
        change = StageChange(
            previous=self._stage,
            current=stage,
            hints=stage_hints(stage, self),
        )
        self._stage = stage
        log.debug(
            "stage_changed",
            previous=change.previous.value,
            current=stage.value,
            hints=[h.code for h in change.hints],
        )
        return change

    def stage_hints(self) -> StageChange:
        return StageChange(previous=self._stage, current=self._stage,
                           hints=stage_hints(self._stage, self))

    # ─── History ─────────────────────────────────────────────────────────────

    def undo(self) -> bool:
        if not self._undo:
            return False
        self._redo.append(self._snapshot())
        self._restore(self._undo.pop())
        log.info("undo", remaining=len(self._undo))
        return True

    def redo(self) -> bool:
        if not self._redo:
            return False
        self._undo.append(self._snapshot())
        self._restore(self._redo.pop())
        log.info("redo", remaining=len(self._redo))
        return True

    # ─── Lifecycle ───────────────────────────────────────────────────────────

    def close(self) -> None:
        """End the session: every outstanding load token becomes stale."""
        self._closed = True
        self._generations.clear()
        self._base_generation += 1
        log.info("document_closed", uploads=len(self._uploads), cutouts=len(self._cutouts))

    def check_invariants(self) -> None:
        """Assert structural invariants. A failure here is a defect."""
        z = [c.z_index for c in self._cutouts]
        assert z == list(range(len(self._cutouts))), f"z-order not dense/unique: {z}"
        image_ids = {img.image_id for img in self._uploads}
        assert len(image_ids) == len(self._uploads), "duplicate image ids"
        for c in self._cutouts:
            assert c.source_image_id in image_ids, (
                f"{c.cutout_id} references removed image {c.source_image_id}"
            )

    @classmethod
    def hydrate(
        cls,
        uploads: Iterable[UploadedImage],
        cutouts: Iterable[Cutout],
        base_card: BaseCard | None = None,
        stage: WorkflowStage = INITIAL_STAGE,
        kit_slug: str | None = None,
        catalog: TemplateCatalog | None = None,
        settings: Settings | None = None,
    ) -> "CardDocument":
        """
        Rebuild a document from already-validated parts (deserialization).
        Cutouts are placed by their z_index and renumbered densely; id
        counters continue after the highest restored id.
        """
        doc = cls(catalog=catalog, settings=settings, kit_slug=kit_slug)
        doc._uploads = list(uploads)
        doc._cutouts = sorted(cutouts, key=lambda c: c.z_index)
        doc._renumber()
        doc._base_card = base_card
        doc._stage = WorkflowStage(stage)
        doc._next_image = _next_counter(img.image_id for img in doc._uploads)
        doc._next_cutout = _next_counter(c.cutout_id for c in doc._cutouts)
        doc.check_invariants()
        return doc

    # ─── Internals ───────────────────────────────────────────────────────────

    def _upload_index(self, image_id: str) -> int:
        for i, img in enumerate(self._uploads):
            if img.image_id == image_id:
                return i
        raise NotFoundError(f"Uploaded image not found: {image_id}")

    def _cutout_index(self, cutout_id: str) -> int:
        for i, c in enumerate(self._cutouts):
            if c.cutout_id == cutout_id:
                return i
        raise NotFoundError(f"Cutout not found: {cutout_id}")

    def require_ready(self, image_id: str) -> UploadedImage:
        image = self.get_upload(image_id)
        if not image.is_ready:
            raise ImageNotReadyError(
                f"Uploaded image {image_id} is {image.status.value}, not ready for use."
            )
        return image

    def _check_upload_capacity(self) -> None:
        limit = self._settings.max_uploads_per_document
        if len(self._uploads) >= limit:
            raise TooLargeError(f"A card can use at most {limit} uploaded images.")

    def _allocate_image_id(self) -> str:
        image_id = f"img-{self._next_image}"
        self._next_image += 1
        return image_id

    def _install_base(self, card: BaseCard | None) -> None:
        self._base_card = card
        self._base_generation += 1

    def _issue_token(self, image_id: str) -> LoadToken:
        self._generation_counter += 1
        self._generations[image_id] = self._generation_counter
        return LoadToken(image_id=image_id, generation=self._generation_counter)

    @staticmethod
    def _ready_image(image_id: str, metadata: UploadMetadata, decoded: DecodedImage) -> UploadedImage:
        return UploadedImage(
            image_id=image_id,
            filename=metadata.filename,
            content_type=metadata.content_type,
            byte_size=decoded.byte_size,
            status=ImageStatus.READY,
            width=decoded.width,
            height=decoded.height,
            pixels=decoded.pixels,
            thumbnail=decoded.thumbnail,
            storage_ref=metadata.storage_ref,
        )

    @staticmethod
    def validate_crop(
        image: UploadedImage,
        crop_rect: Rect,
        shape: CutoutShape,
        points: list[tuple[float, float]],
    ) -> None:
        if is_degenerate(crop_rect):
            raise InvalidCropError(f"Crop rectangle {crop_rect.as_tuple()} is empty.")
        if not rect_within(crop_rect, image.width, image.height):
            raise InvalidCropError(
                f"Crop rectangle {crop_rect.as_tuple()} exceeds "
                f"{image.image_id} bounds ({image.width}×{image.height}px)."
            )
        if shape == CutoutShape.POLYGON:
            if len(points) < 3:
                raise InvalidCropError("A polygon cutout needs at least 3 points.")
            if not points_within(points, crop_rect.width, crop_rect.height):
                raise InvalidCropError("Polygon points must lie inside the crop rectangle.")
            if polygon_area(points) <= 0:
                raise InvalidCropError("Polygon cutout encloses no area.")

    def _renumber(self) -> None:
        self._cutouts = [
            c if c.z_index == i else c.model_copy(update={"z_index": i})
            for i, c in enumerate(self._cutouts)
        ]

    def _snapshot(self) -> _Snapshot:
        return _Snapshot(
            uploads=tuple(self._uploads),
            base_card=self._base_card,
            cutouts=tuple(self._cutouts),
            next_image=self._next_image,
            next_cutout=self._next_cutout,
        )

    def _push_history(self) -> None:
        self._undo.append(self._snapshot())
        overflow = len(self._undo) - self._settings.history_limit
        if overflow > 0:
            del self._undo[:overflow]
        self._redo.clear()

    def _restore(self, snap: _Snapshot) -> None:
        uploads = []
        for img in snap.uploads:
            # A pending slot whose load is no longer live can never resolve
            if img.status == ImageStatus.PENDING and img.image_id not in self._generations:
                img = img.model_copy(update={
                    "status": ImageStatus.FAILED,
                    "error": "Upload was cancelled.",
                })
            uploads.append(img)
        self._uploads = uploads
        if snap.base_card is not self._base_card:
            self._install_base(snap.base_card)
        self._cutouts = list(snap.cutouts)
        self._next_image = snap.next_image
        self._next_cutout = snap.next_cutout

        live_ids = {img.image_id for img in self._uploads}
        self._generations = {k: v for k, v in self._generations.items() if k in live_ids}
        if self.selected_cutout_id not in {c.cutout_id for c in self._cutouts}:
            self.selected_cutout_id = None

    def _patch_history_image(self, image: UploadedImage) -> None:
        """Async completions are not user edits: update the slot everywhere in history."""
        def patch(snap: _Snapshot) -> _Snapshot:
            if not any(img.image_id == image.image_id for img in snap.uploads):
                return snap
            uploads = tuple(image if img.image_id == image.image_id else img for img in snap.uploads)
            return _Snapshot(uploads, snap.base_card, snap.cutouts, snap.next_image, snap.next_cutout)

        self._undo = [patch(s) for s in self._undo]
        self._redo = [patch(s) for s in self._redo]


def _next_counter(ids: Iterable[str]) -> int:
    highest = 0
    for value in ids:
        m = _ID_SUFFIX.search(value)
        if m:
            highest = max(highest, int(m.group(1)))
    return highest + 1
