# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
API tests against the full FastAPI app, lifespan included.
Uses ASGITransport + asgi_lifespan so init_services() runs before any
request. Remote fetches only ever reach a local aiohttp test server.
"""

import asyncio
import os
import tempfile
from contextlib import asynccontextmanager

import cv2
import numpy as np
import pytest
from aiohttp import test_utils, web
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient


# ─── Helpers ─────────────────────────────────────────────────────────────────

def _random_bgr(h: int, w: int, seed: int = 0) -> np.ndarray:
    return np.random.default_rng(seed).integers(0, 256, (h, w, 3), dtype=np.uint8)


def _encode_png(img: np.ndarray) -> bytes:
    _, buf = cv2.imencode(".png", img)
    return buf.tobytes()


def _decode(data: bytes) -> np.ndarray:
    return cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_UNCHANGED)


@asynccontextmanager
async def lifespan_client(**env):
    """
    Spin up the full FastAPI app including its lifespan (startup/shutdown),
    then yield an AsyncClient pointed at it.
    """
    with tempfile.TemporaryDirectory() as templates_dir:
        os.environ["TEMPLATES_DIR"] = templates_dir
        os.environ["LOG_LEVEL"] = "WARNING"
        for key in ("CLOUDINARY_CLOUD_NAME", "CLOUDINARY_API_KEY", "CLOUDINARY_API_SECRET",
                    "MAX_UPLOADS_PER_DOCUMENT"):
            os.environ.pop(key, None)
        os.environ.update(env)

        # Clear settings cache so env overrides above take effect
        from cardbuilder.config import get_settings
        get_settings.cache_clear()

        from cardbuilder.main import create_app
        test_app = create_app()

        try:
            async with LifespanManager(test_app) as manager:
                transport = ASGITransport(app=manager.app)
                async with AsyncClient(transport=transport, base_url="http://test") as client:
                    yield client
        finally:
            for key in env:
                os.environ.pop(key, None)
            get_settings.cache_clear()


async def _new_session(client) -> str:
    resp = await client.post("/sessions", json={"kit_slug": "rx-78-2"})
    assert resp.status_code == 201
    return resp.json()["session_id"]


async def _upload(client, sid: str, *images: bytes, wait: bool = True):
    files = [("files", (f"photo{i}.png", data, "image/png")) for i, data in enumerate(images)]
    return await client.post(f"/sessions/{sid}/uploads", files=files, params={"wait": wait})


# ─── Smoke ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_health():
    async with lifespan_client() as c:
        resp = await c.get("/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert data["service"] == "cardbuilder"
    assert data["templates"] == 2
    assert data["sessions"] == 0
    assert data["cloudinary"] is False


@pytest.mark.asyncio
async def test_docs_available():
    async with lifespan_client() as c:
        resp = await c.get("/docs")
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_templates_listing_and_images():
    async with lifespan_client() as c:
        listing = (await c.get("/templates")).json()
        blank = await c.get("/templates/blank/image")
        white = await c.get("/templates/white/image", params={"max_long_edge": 88})
        missing = await c.get("/templates/nope/image")

    assert {t["template_id"]: t["layered"] for t in listing} == {"blank": True, "white": False}
    assert blank.status_code == 204
    assert white.status_code == 200
    assert white.headers["content-type"] == "image/png"
    assert _decode(white.content).shape[:2] == (88, 63)
    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "NOT_FOUND"


# ─── Sessions ────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_get_and_delete_session():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        state = (await c.get(f"/sessions/{sid}")).json()
        deleted = await c.delete(f"/sessions/{sid}")
        gone = await c.get(f"/sessions/{sid}")

    assert state["kit_slug"] == "rx-78-2"
    assert state["stage"] == "upload"
    assert state["uploads"] == [] and state["cutouts"] == []
    assert state["can_undo"] is False
    assert deleted.status_code == 204
    assert gone.status_code == 404
    assert gone.json()["error"]["code"] == "SESSION_NOT_FOUND"


@pytest.mark.asyncio
async def test_stage_switch_returns_hints():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        resp = await c.put(f"/sessions/{sid}/stage", json={"stage": "cutouts"})
        bad = await c.put(f"/sessions/{sid}/stage", json={"stage": "checkout"})
        state = (await c.get(f"/sessions/{sid}")).json()

    body = resp.json()
    assert body["previous"] == "upload" and body["current"] == "cutouts"
    assert body["ready"] is False
    assert {h["code"] for h in body["hints"]} == {"no_uploads", "no_base_card"}
    assert bad.status_code == 422
    assert state["stage"] == "cutouts"


@pytest.mark.asyncio
async def test_set_kit():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        resp = await c.put(f"/sessions/{sid}/kit", json={"kit_slug": "zaku-ii"})
    assert resp.json()["kit_slug"] == "zaku-ii"


# ─── Full Builder Flow ───────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_upload_place_and_export():
    src = _random_bgr(600, 800)
    async with lifespan_client() as c:
        sid = await _new_session(c)
        up = await _upload(c, sid, _encode_png(src))
        assert up.status_code == 201
        (image,) = up.json()["uploads"]
        assert image["status"] == "ready"
        assert (image["width"], image["height"]) == (800, 600)

        await c.put(f"/sessions/{sid}/base-card", json={"template_id": "white"})
        placed = await c.post(f"/sessions/{sid}/cutouts", json={
            "source_image_id": image["image_id"],
            "crop_rect": {"x": 0, "y": 0, "width": 400, "height": 400},
            "x": 100, "y": 100, "scale": 1.0, "rotation": 0,
        })
        assert placed.status_code == 201

        first = await c.get(f"/sessions/{sid}/export", params={"fmt": "png"})
        second = await c.get(f"/sessions/{sid}/export", params={"fmt": "png"})
        thumb = await c.get(f"/sessions/{sid}/uploads/{image['image_id']}/thumbnail")
        preview = await c.get(f"/sessions/{sid}/preview", params={"max_long_edge": 176})

    assert first.status_code == 200
    assert first.headers["content-type"] == "image/png"
    assert first.headers["x-card-width"] == "630"
    assert first.headers["x-card-height"] == "880"
    assert 'filename="card.png"' in first.headers["content-disposition"]
    assert first.content == second.content

    out = _decode(first.content)
    assert out.shape == (880, 630, 4)
    assert np.array_equal(out[100:500, 100:500, :3], src[0:400, 0:400])
    assert (out[600:, :, :3] == 255).all()

    assert thumb.status_code == 200
    assert max(_decode(thumb.content).shape[:2]) == 256
    assert _decode(preview.content).shape[:2] == (176, 126)


@pytest.mark.asyncio
async def test_export_without_base_card_is_conflict():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        resp = await c.get(f"/sessions/{sid}/export")
    assert resp.status_code == 409
    assert resp.json()["error"]["code"] == "NO_BASE_CARD"


@pytest.mark.asyncio
async def test_invalid_crop_is_rejected_and_nothing_changes():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        image_id = (await _upload(c, sid, _encode_png(_random_bgr(50, 50)))).json()["uploads"][0]["image_id"]
        resp = await c.post(f"/sessions/{sid}/cutouts", json={
            "source_image_id": image_id,
            "crop_rect": {"x": 40, "y": 40, "width": 20, "height": 20},
        })
        out_of_range = await c.post(f"/sessions/{sid}/cutouts", json={
            "source_image_id": image_id,
            "crop_rect": {"x": 0, "y": 0, "width": 20, "height": 20},
            "scale": 5.0,
        })
        state = (await c.get(f"/sessions/{sid}")).json()

    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "INVALID_CROP"
    assert out_of_range.status_code == 422
    assert state["cutouts"] == []


@pytest.mark.asyncio
async def test_unknown_ids_are_not_found():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        base = await c.put(f"/sessions/{sid}/base-card", json={"template_id": "nope"})
        cut = await c.patch(f"/sessions/{sid}/cutouts/cut-9", json={"x": 1})
        img = await c.delete(f"/sessions/{sid}/uploads/img-9")
    assert base.status_code == cut.status_code == img.status_code == 404


@pytest.mark.asyncio
async def test_batch_upload_is_all_or_nothing():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        resp = await _upload(c, sid, _encode_png(_random_bgr(10, 10)), b"not an image")
        state = (await c.get(f"/sessions/{sid}")).json()
    assert resp.status_code == 422
    assert resp.json()["error"]["code"] == "INVALID_FORMAT"
    assert state["uploads"] == []


@pytest.mark.asyncio
async def test_upload_capacity_is_enforced():
    async with lifespan_client(MAX_UPLOADS_PER_DOCUMENT="1") as c:
        sid = await _new_session(c)
        png = _encode_png(_random_bgr(10, 10))
        resp = await _upload(c, sid, png, png)
    assert resp.status_code == 413
    assert resp.json()["error"]["code"] == "TOO_LARGE"


@pytest.mark.asyncio
async def test_background_uploads_resolve_per_slot():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        resp = await _upload(c, sid, _encode_png(_random_bgr(20, 20)), b"garbage", wait=False)
        assert resp.status_code == 201
        assert [u["status"] for u in resp.json()["uploads"]] == ["pending", "pending"]

        state = resp.json()
        for _ in range(100):
            state = (await c.get(f"/sessions/{sid}")).json()
            if state["pending_loads"] == 0:
                break
            await asyncio.sleep(0.02)

    assert [u["status"] for u in state["uploads"]] == ["ready", "failed"]
    assert state["uploads"][1]["error"]


@pytest.mark.asyncio
async def test_remove_upload_cascades_and_undo_restores():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        image_id = (await _upload(c, sid, _encode_png(_random_bgr(100, 100)))).json()["uploads"][0]["image_id"]
        for _ in range(2):
            await c.post(f"/sessions/{sid}/cutouts", json={
                "source_image_id": image_id,
                "crop_rect": {"x": 0, "y": 0, "width": 10, "height": 10},
            })
        removed = (await c.delete(f"/sessions/{sid}/uploads/{image_id}")).json()
        undone = (await c.post(f"/sessions/{sid}/undo")).json()
        redone = (await c.post(f"/sessions/{sid}/redo")).json()

    assert removed["removed_cutout_ids"] == ["cut-1", "cut-2"]
    assert removed["session"]["uploads"] == [] and removed["session"]["cutouts"] == []
    assert [c["cutout_id"] for c in undone["cutouts"]] == ["cut-1", "cut-2"]
    assert undone["can_redo"] is True
    assert redone["cutouts"] == []


@pytest.mark.asyncio
async def test_reorder_select_and_patch():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        image_id = (await _upload(c, sid, _encode_png(_random_bgr(100, 100)))).json()["uploads"][0]["image_id"]
        for _ in range(3):
            await c.post(f"/sessions/{sid}/cutouts", json={
                "source_image_id": image_id,
                "crop_rect": {"x": 0, "y": 0, "width": 10, "height": 10},
            })
        moved = (await c.put(f"/sessions/{sid}/cutouts/cut-1/z-index", json={"z_index": 2})).json()
        back = (await c.post(f"/sessions/{sid}/cutouts/cut-1/backward")).json()
        selected = (await c.put(f"/sessions/{sid}/selection", json={"cutout_id": "cut-3"})).json()
        patched = (await c.patch(f"/sessions/{sid}/cutouts/cut-3", json={"rotation": -90, "opacity": 0.25})).json()
        removed = (await c.delete(f"/sessions/{sid}/cutouts/cut-3")).json()

    assert [c["cutout_id"] for c in moved["cutouts"]] == ["cut-2", "cut-3", "cut-1"]
    assert [c["cutout_id"] for c in back["cutouts"]] == ["cut-2", "cut-1", "cut-3"]
    assert selected["selected_cutout_id"] == "cut-3"
    cut3 = next(c for c in patched["cutouts"] if c["cutout_id"] == "cut-3")
    assert cut3["transform"]["rotation"] == 270.0
    assert cut3["opacity"] == 0.25
    assert removed["selected_cutout_id"] is None
    assert [c["z_index"] for c in removed["cutouts"]] == [0, 1]


@pytest.mark.asyncio
async def test_base_from_upload_and_out_of_bounds_flag():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        image_id = (await _upload(c, sid, _encode_png(_random_bgr(600, 800)))).json()["uploads"][0]["image_id"]
        based = (await c.post(f"/sessions/{sid}/base-card/from-upload", json={"image_id": image_id})).json()
        placed = (await c.post(f"/sessions/{sid}/cutouts", json={
            "source_image_id": image_id,
            "crop_rect": {"x": 0, "y": 0, "width": 100, "height": 100},
            "x": 600, "y": 0,
        })).json()
        cleared = (await c.delete(f"/sessions/{sid}/base-card")).json()

    assert based["base_card"]["template_id"] == f"upload:{image_id}"
    assert (based["base_card"]["width"], based["base_card"]["height"]) == (630, 880)
    assert based["base_card"]["source"]["image_id"] == image_id
    assert placed["cutouts"][0]["out_of_bounds"] is True
    assert cleared["base_card"] is None


# ─── Project / Publishing ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_project_description_is_camel_case():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        image_id = (await _upload(c, sid, _encode_png(_random_bgr(100, 100)))).json()["uploads"][0]["image_id"]
        await c.put(f"/sessions/{sid}/base-card", json={"template_id": "white"})
        await c.post(f"/sessions/{sid}/cutouts", json={
            "source_image_id": image_id,
            "crop_rect": {"x": 0, "y": 0, "width": 10, "height": 10},
        })
        project = (await c.get(f"/sessions/{sid}/project")).json()

    assert project["schemaVersion"] == 1
    assert project["kitSlug"] == "rx-78-2"
    assert project["baseCardId"] == "white"
    assert project["cutouts"][0]["sourceImageRef"] == image_id
    assert project["images"][0]["id"] == image_id


@pytest.mark.asyncio
async def test_restore_project_with_no_images():
    async with lifespan_client() as c:
        resp = await c.post("/sessions/restore", json={
            "schemaVersion": 1,
            "kitSlug": "zaku-ii",
            "stage": "base",
            "baseCardId": "white",
        })
    assert resp.status_code == 201
    body = resp.json()
    assert body["kit_slug"] == "zaku-ii"
    assert body["stage"] == "base"
    assert body["base_card"]["template_id"] == "white"


@pytest.mark.asyncio
async def test_signature_requires_cloudinary_config():
    async with lifespan_client() as c:
        resp = await c.post("/upload/signature", json={"folder": "cards"})
    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "SIGNING_UNAVAILABLE"


@pytest.mark.asyncio
async def test_signature_with_cloudinary_config():
    env = {
        "CLOUDINARY_CLOUD_NAME": "demo",
        "CLOUDINARY_API_KEY": "1234",
        "CLOUDINARY_API_SECRET": "s3cret",
    }
    async with lifespan_client(**env) as c:
        resp = await c.post("/upload/signature")
    assert resp.status_code == 200
    body = resp.json()
    assert body["cloud_name"] == "demo"
    assert body["folder"] == "gunpla-cards"
    assert body["eager"] == "q_auto,f_auto"
    assert len(body["signature"]) == 40


def _static_app(routes: dict) -> web.Application:
    app = web.Application()
    for path, data in routes.items():
        async def handler(request, data=data):
            return web.Response(body=data, content_type="image/png")
        app.router.add_get(path, handler)
    return app


@pytest.mark.asyncio
async def test_storage_ref_lets_a_saved_project_restore():
    photo = _encode_png(_random_bgr(120, 160, seed=7))
    async with test_utils.TestServer(_static_app({"/photo.png": photo})) as server:
        async with lifespan_client() as c:
            sid = await _new_session(c)
            image_id = (await _upload(c, sid, photo)).json()["uploads"][0]["image_id"]
            await c.put(f"/sessions/{sid}/base-card", json={"template_id": "white"})
            await c.post(f"/sessions/{sid}/cutouts", json={
                "source_image_id": image_id,
                "crop_rect": {"x": 10, "y": 10, "width": 100, "height": 80},
                "x": 40, "y": 50, "rotation": 15,
            })

            ref = str(server.make_url("/photo.png"))
            resp = await c.put(f"/sessions/{sid}/uploads/{image_id}/storage-ref", json={"storage_ref": ref})
            assert resp.status_code == 200
            assert resp.json()["uploads"][0]["storage_ref"] == ref
            assert resp.json()["can_undo"] is True

            project = (await c.get(f"/sessions/{sid}/project")).json()
            assert project["images"][0]["storageRef"] == ref
            original = (await c.get(f"/sessions/{sid}/export")).content

            restored = await c.post("/sessions/restore", json=project)
            assert restored.status_code == 201
            assert restored.json()["uploads"][0]["status"] == "ready"
            again = (await c.get(f"/sessions/{restored.json()['session_id']}/export")).content

    assert np.array_equal(_decode(again), _decode(original))


@pytest.mark.asyncio
async def test_storage_ref_for_unknown_image_is_not_found():
    async with lifespan_client() as c:
        sid = await _new_session(c)
        resp = await c.put(f"/sessions/{sid}/uploads/img-9/storage-ref", json={"storage_ref": "https://x/y.png"})
    assert resp.status_code == 404


@pytest.mark.asyncio
async def test_restore_with_unreachable_image_can_be_saved_and_restored_again():
    async with test_utils.TestServer(_static_app({})) as server:
        missing = str(server.make_url("/gone.png"))
        project = {
            "schemaVersion": 1,
            "baseCardId": "white",
            "images": [{"id": "img-1", "storageRef": missing, "width": 60, "height": 60}],
            "cutouts": [{
                "id": "cut-1",
                "sourceImageRef": "img-1",
                "cropRect": {"x": 0, "y": 0, "width": 30, "height": 30},
            }],
        }
        async with lifespan_client() as c:
            first = await c.post("/sessions/restore", json=project)
            assert first.status_code == 201
            assert first.json()["uploads"][0]["status"] == "failed"

            saved = (await c.get(f"/sessions/{first.json()['session_id']}/project")).json()
            assert saved["images"][0]["storageRef"] == missing
            assert saved["cutouts"][0]["sourceImageRef"] == "img-1"

            second = await c.post("/sessions/restore", json=saved)
    assert second.status_code == 201
    body = second.json()
    assert body["uploads"][0]["status"] == "failed"
    assert [cut["cutout_id"] for cut in body["cutouts"]] == ["cut-1"]
