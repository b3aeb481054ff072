# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
Infrastructure tests: settings, the geometry engine, the workflow stage
hints and the template catalog. Pure numpy / pydantic, no network.
"""

import json
import tempfile
from pathlib import Path

import cv2
import numpy as np
import pytest


# ─── Config ──────────────────────────────────────────────────────────────────

def test_settings_load_defaults():
    from cardbuilder.config import Settings
    s = Settings(_env_file=None, log_level="INFO")
    assert s.card_size == (630, 880)
    assert s.export_format == "png"
    assert s.max_uploads_per_document == 30
    assert s.history_limit == 50
    assert s.cloudinary_folder == "gunpla-cards"


def test_settings_override():
    from cardbuilder.config import Settings
    s = Settings(_env_file=None, card_width=300, card_height=400, export_format="webp")
    assert s.card_size == (300, 400)
    assert s.export_format == "webp"


def test_settings_upload_limits():
    from cardbuilder.config import Settings
    s = Settings(_env_file=None, upload_max_mb=10, upload_max_megapixels=2.5)
    assert s.upload_max_bytes == 10 * 1024 * 1024
    assert s.upload_max_pixels == 2_500_000


def test_get_settings_is_cached():
    from cardbuilder.config import get_settings
    get_settings.cache_clear()
    assert get_settings() is get_settings()


# ─── Rotation / Transform Model ──────────────────────────────────────────────

def test_rotation_normalised_into_range():
    from cardbuilder.models.card import Transform, normalize_degrees
    assert normalize_degrees(-90) == 270.0
    assert normalize_degrees(720) == 0.0
    assert normalize_degrees(359.5) == 359.5
    assert Transform(rotation=-30).rotation == 330.0


def test_transform_rejects_non_positive_scale():
    from pydantic import ValidationError
    from cardbuilder.models.card import Transform
    with pytest.raises(ValidationError):
        Transform(scale=0)
    with pytest.raises(ValidationError):
        Transform(scale=1.0, scale_y=-1.0)


def test_transform_non_uniform_scale():
    from cardbuilder.models.card import Rect, Transform
    from cardbuilder.utils.geometry_utils import scaled_size
    t = Transform(scale=2.0, scale_y=0.5)
    assert (t.sx, t.sy) == (2.0, 0.5)
    assert scaled_size(Rect(width=100, height=100), t) == (200.0, 50.0)
    assert Transform(scale=1.5).sy == 1.5


# ─── Geometry Engine ─────────────────────────────────────────────────────────

def test_apply_transform_identity_translation():
    from cardbuilder.models.card import Rect, Transform
    from cardbuilder.utils.geometry_utils import apply_transform
    box = apply_transform(Rect(x=0, y=0, width=400, height=400), Transform(x=100, y=100))
    assert (box.x0, box.y0, box.x1, box.y1) == pytest.approx((100, 100, 500, 500))


def test_apply_transform_rotates_about_centre():
    from cardbuilder.models.card import Rect, Transform
    from cardbuilder.utils.geometry_utils import apply_transform, patch_center
    crop = Rect(x=10, y=20, width=200, height=100)
    t = Transform(x=0, y=0, rotation=90)
    box = apply_transform(crop, t)
    # 200×100 patch centred at (100, 50) turned on its side
    assert (box.x0, box.y0, box.x1, box.y1) == pytest.approx((50, -50, 150, 150))
    assert patch_center(crop, t) == pytest.approx((100.0, 50.0))


def test_transform_corners_clockwise_on_screen():
    from cardbuilder.models.card import Rect, Transform
    from cardbuilder.utils.geometry_utils import transform_corners
    corners = transform_corners(Rect(width=2, height=2), Transform(rotation=90))
    # Top-left corner moves to the top-right for a clockwise quarter turn
    assert corners[0] == pytest.approx([2.0, 0.0])


def test_display_canvas_round_trip():
    from cardbuilder.utils.geometry_utils import canvas_to_display, display_to_canvas, fit_contain
    scale, offset = fit_contain((600, 800), (300, 300))
    assert scale == pytest.approx(0.375)
    assert offset == pytest.approx((37.5, 0.0))

    p = display_to_canvas((150.0, 150.0), scale, offset)
    assert p == pytest.approx((300.0, 400.0))
    assert canvas_to_display(p, scale, offset) == pytest.approx((150.0, 150.0))


def test_drag_delta_ignores_offset():
    from cardbuilder.utils.geometry_utils import drag_delta_to_canvas
    assert drag_delta_to_canvas((10.0, -5.0), 0.5) == (20.0, -10.0)
    with pytest.raises(ValueError):
        drag_delta_to_canvas((1.0, 1.0), 0.0)


def test_clamp_to_canvas_shifts_box_inside():
    from cardbuilder.models.card import Rect, Transform
    from cardbuilder.utils.geometry_utils import apply_transform, clamp_to_canvas
    crop = Rect(width=100, height=50)
    t = Transform(x=550, y=-20)
    clamped = clamp_to_canvas(t, (600, 800), crop)
    box = apply_transform(crop, clamped)
    assert box.inside(600, 800)
    assert (clamped.x, clamped.y) == pytest.approx((500.0, 0.0))
    # The stored transform is never mutated
    assert (t.x, t.y) == (550, -20)


def test_crop_validation_helpers():
    from cardbuilder.models.card import Rect
    from cardbuilder.utils.geometry_utils import is_degenerate, polygon_area, rect_within
    assert is_degenerate(Rect(width=0, height=10))
    assert is_degenerate(Rect(width=float("nan"), height=10))
    assert not is_degenerate(Rect(width=1, height=1))
    assert rect_within(Rect(x=0, y=0, width=800, height=600), 800, 600)
    assert not rect_within(Rect(x=1, y=0, width=800, height=600), 800, 600)
    assert polygon_area([(0, 0), (4, 0), (4, 3)]) == pytest.approx(6.0)
    assert polygon_area([(0, 0), (1, 1), (2, 2)]) == 0.0


# ─── Workflow Stages ─────────────────────────────────────────────────────────

def test_stage_switch_never_blocks():
    from cardbuilder.config import Settings
    from cardbuilder.core.document import CardDocument
    from cardbuilder.core.workflow import WorkflowStage

    doc = CardDocument(settings=Settings(_env_file=None))
    assert doc.stage == WorkflowStage.UPLOAD

    change = doc.set_stage(WorkflowStage.CUTOUTS)
    assert change.previous == WorkflowStage.UPLOAD
    assert doc.stage == WorkflowStage.CUTOUTS
    assert not change.ready
    assert {h.code for h in change.hints} == {"no_uploads", "no_base_card"}

    change = doc.set_stage(WorkflowStage.PREVIEW)
    assert [h.code for h in change.hints] == ["nothing_to_render"]
    assert doc.set_stage(WorkflowStage.UPLOAD).ready


# ─── Template Catalog ────────────────────────────────────────────────────────

def test_catalog_builtins():
    from cardbuilder.core.templates import BLANK_TEMPLATE_ID, WHITE_TEMPLATE_ID, TemplateCatalog
    catalog = TemplateCatalog()
    catalog.register_builtins((630, 880))

    assert catalog.count() == 2
    blank = catalog.get(BLANK_TEMPLATE_ID)
    assert blank.pixels is None and blank.size == (630, 880)
    white = catalog.get(WHITE_TEMPLATE_ID)
    assert white.pixels.shape == (880, 630, 4)
    assert (white.pixels == 255).all()


def test_catalog_unknown_template():
    from cardbuilder.api.middleware.error_handler import NotFoundError
    from cardbuilder.core.templates import TemplateCatalog
    with pytest.raises(NotFoundError):
        TemplateCatalog().get("nope")


def test_catalog_load_directory_with_sidecars():
    from cardbuilder.core.templates import TemplateCatalog

    with tempfile.TemporaryDirectory() as d:
        root = Path(d)
        img = np.full((80, 60, 3), (10, 20, 30), dtype=np.uint8)
        cv2.imwrite(str(root / "holo.png"), img)
        (root / "holo.json").write_text(json.dumps({
            "name": "Holo Frame",
            "slots": [{"name": "portrait", "rect": {"x": 5, "y": 5, "width": 50, "height": 40}}],
        }))
        (root / "layered.json").write_text(json.dumps({"name": "Layered", "width": 300, "height": 420}))
        (root / "broken.json").write_text("{not json")

        catalog = TemplateCatalog()
        assert catalog.load_directory(root) == 2

    holo = catalog.get("holo")
    assert holo.name == "Holo Frame"
    assert holo.size == (60, 80)
    assert holo.slots[0].name == "portrait"
    layered = catalog.get("layered")
    assert layered.pixels is None and layered.size == (300, 420)
    assert [c.template_id for c in catalog.list_templates()] == ["holo", "layered"]


def test_catalog_missing_directory_is_empty():
    from cardbuilder.core.templates import TemplateCatalog
    assert TemplateCatalog().load_directory(Path("/nonexistent/templates")) == 0


def test_centered_aspect_crop():
    from cardbuilder.core.templates import centered_aspect_crop
    r = centered_aspect_crop(800, 600, 630 / 880)
    assert r.height == pytest.approx(600.0)
    assert r.width == pytest.approx(600 * 630 / 880)
    assert r.x == pytest.approx((800 - r.width) / 2)
    assert r.y == pytest.approx(0.0)
