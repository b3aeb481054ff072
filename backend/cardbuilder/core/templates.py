# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Base Card Template Catalog
Registry of BaseCard templates shared by every builder session.

Templates come from three places:
  built-ins      blank (layered, transparent) and white, at card size
  templates dir  {templates_dir}/{template_id}.png|jpg|webp with an optional
                 {template_id}.json sidecar (name, slots, layered size)
  remote         fetched bytes registered at runtime via register_bytes()

Bases derived from a user's own upload are not registered here; they
belong to one document (see derive_base_card).
"""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Optional

import numpy as np
from pydantic import BaseModel, Field, ValidationError

from cardbuilder.api.middleware.error_handler import InvalidCropError, NotFoundError
from cardbuilder.models.card import BaseCard, BaseCardSource, Rect, SlotRegion, UploadedImage
from cardbuilder.modules.intake.validator import validate_image_bytes
from cardbuilder.utils.geometry_utils import is_degenerate, rect_within
from cardbuilder.utils.image_utils import crop_pixels, resize_exact, solid_bgra
from cardbuilder.utils.logger import get_logger

log = get_logger(__name__)

_TEMPLATE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp")

BLANK_TEMPLATE_ID = "blank"
WHITE_TEMPLATE_ID = "white"


class TemplateSidecar(BaseModel):
    """Optional JSON metadata stored next to a template image."""
    name: str = ""
    # Only used for layered templates that ship without an image
    width: Optional[int] = Field(None, gt=0)
    height: Optional[int] = Field(None, gt=0)
    slots: list[SlotRegion] = Field(default_factory=list)


class TemplateCatalog:
    """
    Thread-safe in-memory template registry (dict + RLock), shared across
    sessions. Templates are immutable once registered.
    """

    def __init__(self) -> None:
        self._templates: dict[str, BaseCard] = {}
        self._lock = threading.RLock()

    # ── Registration ─────────────────────────────────────────────────────────

    def register(self, card: BaseCard) -> BaseCard:
        with self._lock:
            self._templates[card.template_id] = card
        log.info(
            "template_registered",
            template_id=card.template_id,
            width=card.width,
            height=card.height,
            layered=card.pixels is None,
        )
        return card

    def register_builtins(self, card_size: tuple[int, int]) -> None:
        """Blank (transparent, layered) and plain white templates at card size."""
        w, h = card_size
        self.register(BaseCard(
            template_id=BLANK_TEMPLATE_ID, name="Blank", width=w, height=h,
        ))
        self.register(BaseCard(
            template_id=WHITE_TEMPLATE_ID, name="White", width=w, height=h,
            pixels=solid_bgra(w, h, (255, 255, 255, 255)),
        ))

    def register_bytes(
        self,
        template_id: str,
        data: bytes,
        name: str = "",
        slots: list[SlotRegion] | None = None,
        storage_ref: str | None = None,
    ) -> BaseCard:
        """Decode template image bytes (disk or remote fetch) and register them."""
        decoded = validate_image_bytes(data, label=f"template '{template_id}'")
        return self.register(BaseCard(
            template_id=template_id,
            name=name or template_id,
            width=decoded.width,
            height=decoded.height,
            pixels=decoded.pixels,
            slots=slots or [],
            storage_ref=storage_ref,
        ))

    def load_directory(self, directory: Path) -> int:
        """
        Register every template image in a directory. Sidecar-only entries
        (a .json with width/height and no image) register as layered
        templates. Returns the number of templates loaded.
        """
        if not directory.is_dir():
            log.warning("templates_dir_missing", path=str(directory))
            return 0

        loaded = 0
        stems = sorted({p.stem for p in directory.iterdir() if p.is_file()})
        for stem in stems:
            sidecar = self._read_sidecar(directory / f"{stem}.json")
            image_path = next(
                (directory / f"{stem}{suffix}" for suffix in _TEMPLATE_SUFFIXES
                 if (directory / f"{stem}{suffix}").is_file()),
                None,
            )
            if image_path is not None:
                self.register_bytes(
                    stem,
                    image_path.read_bytes(),
                    name=sidecar.name if sidecar else "",
                    slots=sidecar.slots if sidecar else None,
                )
                loaded += 1
            elif sidecar is not None and sidecar.width and sidecar.height:
                self.register(BaseCard(
                    template_id=stem,
                    name=sidecar.name or stem,
                    width=sidecar.width,
                    height=sidecar.height,
                    slots=sidecar.slots,
                ))
                loaded += 1

        log.info("templates_loaded", path=str(directory), count=loaded)
        return loaded

    @staticmethod
    def _read_sidecar(path: Path) -> TemplateSidecar | None:
        if not path.is_file():
            return None
        try:
            return TemplateSidecar.model_validate(json.loads(path.read_text(encoding="utf-8")))
        except (json.JSONDecodeError, ValidationError) as e:
            log.warning("template_sidecar_invalid", path=str(path), error=str(e))
            return None

    # ── Lookup ───────────────────────────────────────────────────────────────

    def get(self, template_id: str) -> BaseCard:
        with self._lock:
            card = self._templates.get(template_id)
        if card is None:
            raise NotFoundError(f"Base card template not found: {template_id}")
        return card

    def contains(self, template_id: str) -> bool:
        with self._lock:
            return template_id in self._templates

    def list_templates(self) -> list[BaseCard]:
        with self._lock:
            return sorted(self._templates.values(), key=lambda c: c.template_id)

    def count(self) -> int:
        with self._lock:
            return len(self._templates)


# ─── Upload-derived Bases ────────────────────────────────────────────────────

def derived_template_id(image_id: str) -> str:
    return f"upload:{image_id}"


def derive_base_card(
    image: UploadedImage,
    crop_rect: Rect | None,
    size: tuple[int, int],
) -> BaseCard:
    """
    Build a base card from one of the user's uploaded photos: crop it and
    resize to the fixed card canvas. The crop defaults to the largest
    centred region with the card's aspect ratio.
    """
    width, height = size
    if crop_rect is None:
        crop_rect = centered_aspect_crop(image.width, image.height, width / height)
    if is_degenerate(crop_rect) or not rect_within(crop_rect, image.width, image.height):
        raise InvalidCropError(
            f"Base crop {crop_rect.as_tuple()} is outside "
            f"{image.image_id} ({image.width}×{image.height}px)."
        )

    region = crop_pixels(image.pixels, *crop_rect.as_tuple())
    pixels = resize_exact(region, width, height)
    return BaseCard(
        template_id=derived_template_id(image.image_id),
        name=image.filename,
        width=width,
        height=height,
        pixels=np.ascontiguousarray(pixels),
        source=BaseCardSource(image_id=image.image_id, crop_rect=crop_rect),
        storage_ref=image.storage_ref,
    )


def centered_aspect_crop(img_w: int, img_h: int, aspect: float) -> Rect:
    """Largest rect of the given width/height aspect centred in the image."""
    if img_w / img_h > aspect:
        w, h = img_h * aspect, float(img_h)
    else:
        w, h = float(img_w), img_w / aspect
    return Rect(x=(img_w - w) / 2.0, y=(img_h - h) / 2.0, width=w, height=h)
