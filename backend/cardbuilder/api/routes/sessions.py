# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: /sessions endpoints
One builder session per editing session. Every mutation runs under the
session's lock and returns the full SessionView.
"""

from __future__ import annotations

import asyncio
from typing import Literal

from fastapi import APIRouter, Response, UploadFile, status

from cardbuilder.api.middleware.error_handler import TooLargeError
from cardbuilder.dependencies import BuilderSessionDep, SessionStoreDep, SignerDep
from cardbuilder.models.card import UploadMetadata
from cardbuilder.models.project import ProjectDescription
from cardbuilder.models.session import (
    BaseCardRequest,
    BaseFromUploadRequest,
    CreateSessionRequest,
    CutoutCreateRequest,
    CutoutPatchRequest,
    KitRequest,
    RemoteTemplateRequest,
    RemoteUploadRequest,
    RemoveUploadResponse,
    SelectCutoutRequest,
    SessionView,
    StageRequest,
    StorageRefRequest,
    ZIndexRequest,
)
from cardbuilder.modules.intake.validator import validate_image_bytes
from cardbuilder.modules.rendering.compositor import render_preview
from cardbuilder.modules.rendering.exporter import export_document_async
from cardbuilder.modules.serialization.project import restore_document, serialize_document
from cardbuilder.services.remote_images import RemoteImageFetcher
from cardbuilder.services.upload_signing import PublishedAsset
from cardbuilder.utils.image_utils import encode_image
from cardbuilder.utils.logger import get_logger

router = APIRouter(prefix="/sessions", tags=["sessions"])
log = get_logger(__name__)

ExportFormat = Literal["png", "jpeg", "webp"]


# ─── Session Lifecycle ───────────────────────────────────────────────────────

@router.post(
    "",
    response_model=SessionView,
    status_code=status.HTTP_201_CREATED,
    summary="Start a builder session",
)
async def create_session(store: SessionStoreDep, body: CreateSessionRequest | None = None) -> SessionView:
    session = store.create_session(kit_slug=body.kit_slug if body else None)
    return SessionView.of(session)


@router.post(
    "/restore",
    response_model=SessionView,
    status_code=status.HTTP_201_CREATED,
    summary="Resume a saved project",
    description=(
        "Re-fetch every image by its storageRef and rebuild the document. "
        "Images that cannot be fetched come back as failed slots."
    ),
)
async def restore_session(project: ProjectDescription, store: SessionStoreDep) -> SessionView:
    document = await restore_document(
        project,
        store.fetcher or RemoteImageFetcher(store.settings),
        catalog=store.catalog,
        settings=store.settings,
    )
    session = store.create_session(document=document)
    return SessionView.of(session)


@router.get("/{session_id}", response_model=SessionView, summary="Current builder state")
async def get_session(session: BuilderSessionDep) -> SessionView:
    return SessionView.of(session)


@router.delete(
    "/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="End a session (in-flight loads are discarded)",
)
async def delete_session(session: BuilderSessionDep, store: SessionStoreDep) -> Response:
    await store.close_session(session.session_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.put("/{session_id}/stage", summary="Switch workflow tab")
async def set_stage(body: StageRequest, session: BuilderSessionDep) -> dict:
    async with session.lock:
        change = session.document.set_stage(body.stage)
    return {
        "previous": change.previous.value,
        "current": change.current.value,
        "ready": change.ready,
        "hints": [h.model_dump() for h in change.hints],
    }


@router.put("/{session_id}/kit", response_model=SessionView, summary="Set the kit this card is for")
async def set_kit(body: KitRequest, session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.set_kit(body.kit_slug)
    return SessionView.of(session)


# ─── Uploads ─────────────────────────────────────────────────────────────────

@router.post(
    "/{session_id}/uploads",
    response_model=SessionView,
    status_code=status.HTTP_201_CREATED,
    summary="Add uploaded photos",
    description=(
        "wait=true (default) validates every file first and adds none if any "
        "is rejected. wait=false appends pending slots immediately and decodes "
        "in the background; a bad file then fails only its own slot."
    ),
)
async def add_uploads(
    files: list[UploadFile],
    session: BuilderSessionDep,
    wait: bool = True,
) -> SessionView:
    document = session.document
    if len(files) > document.remaining_upload_slots:
        raise TooLargeError(
            f"A card can use at most {document.settings.max_uploads_per_document} uploaded images."
        )

    items = [
        (await f.read(), UploadMetadata(filename=f.filename or "upload", content_type=f.content_type))
        for f in files
    ]

    if not wait:
        async with session.lock:
            for data, metadata in items:
                session.loader.submit_upload(data, metadata)
        log.info("uploads_submitted", count=len(items))
        return SessionView.of(session)

    decoded = await asyncio.gather(*(
        asyncio.to_thread(
            validate_image_bytes, data, metadata.filename, metadata.content_type, document.settings,
        )
        for data, metadata in items
    ))
    async with session.lock:
        if len(items) > document.remaining_upload_slots:
            raise TooLargeError(
                f"A card can use at most {document.settings.max_uploads_per_document} uploaded images."
            )
        for image, (_, metadata) in zip(decoded, items):
            document.add_decoded_upload(image, metadata)
    return SessionView.of(session)


@router.post(
    "/{session_id}/uploads/remote",
    response_model=SessionView,
    status_code=status.HTTP_201_CREATED,
    summary="Add a photo by URL",
)
async def add_remote_upload(body: RemoteUploadRequest, session: BuilderSessionDep) -> SessionView:
    metadata = UploadMetadata(filename=body.filename) if body.filename else None
    await session.loader.load_remote_upload(body.url, metadata)
    return SessionView.of(session)


@router.get(
    "/{session_id}/uploads/{image_id}/thumbnail",
    summary="Upload thumbnail (PNG)",
    response_class=Response,
)
async def get_thumbnail(image_id: str, session: BuilderSessionDep) -> Response:
    image = session.document.require_ready(image_id)
    data = await asyncio.to_thread(encode_image, image.thumbnail, "png")
    return Response(content=data, media_type="image/png")


@router.put(
    "/{session_id}/uploads/{image_id}/storage-ref",
    response_model=SessionView,
    summary="Record where a photo was stored",
    description=(
        "Call after a signed direct upload so the saved project can re-fetch "
        "this photo on restore. Not an undoable edit."
    ),
)
async def set_storage_ref(image_id: str, body: StorageRefRequest, session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.set_storage_ref(image_id, body.storage_ref)
    return SessionView.of(session)


@router.delete(
    "/{session_id}/uploads/{image_id}",
    response_model=RemoveUploadResponse,
    summary="Remove a photo and every cutout cut from it",
)
async def remove_upload(image_id: str, session: BuilderSessionDep) -> RemoveUploadResponse:
    async with session.lock:
        removed = session.document.remove_upload(image_id)
    return RemoveUploadResponse(removed_cutout_ids=removed, session=SessionView.of(session))


# ─── Base Card ───────────────────────────────────────────────────────────────

@router.put(
    "/{session_id}/base-card",
    response_model=SessionView,
    summary="Select a catalog template as the base card",
    description="Cutouts are never moved; those now outside the canvas are flagged out_of_bounds.",
)
async def select_base_card(body: BaseCardRequest, session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.select_base_card(body.template_id)
    return SessionView.of(session)


@router.post(
    "/{session_id}/base-card/from-upload",
    response_model=SessionView,
    summary="Use one of the uploaded photos (cropped) as the base card",
)
async def base_from_upload(body: BaseFromUploadRequest, session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.use_upload_as_base(body.image_id, body.crop_rect)
    return SessionView.of(session)


@router.post(
    "/{session_id}/base-card/remote",
    response_model=SessionView,
    summary="Fetch a remote template and select it",
)
async def base_from_remote(body: RemoteTemplateRequest, session: BuilderSessionDep) -> SessionView:
    await session.loader.load_template(body.template_id, body.url, body.name)
    return SessionView.of(session)


@router.delete("/{session_id}/base-card", response_model=SessionView, summary="Clear the base card")
async def clear_base_card(session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.clear_base_card()
    return SessionView.of(session)


# ─── Cutouts ─────────────────────────────────────────────────────────────────

@router.post(
    "/{session_id}/cutouts",
    response_model=SessionView,
    status_code=status.HTTP_201_CREATED,
    summary="Place a new cutout on top",
)
async def add_cutout(body: CutoutCreateRequest, session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.add_cutout(
            body.source_image_id,
            body.crop_rect,
            body.transform(),
            shape=body.shape,
            points=body.points,
            opacity=body.opacity,
            visible=body.visible,
        )
    return SessionView.of(session)


@router.patch("/{session_id}/cutouts/{cutout_id}", response_model=SessionView, summary="Edit a cutout")
async def update_cutout(cutout_id: str, body: CutoutPatchRequest, session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.update_cutout(cutout_id, body)
    return SessionView.of(session)


@router.put("/{session_id}/cutouts/{cutout_id}/z-index", response_model=SessionView, summary="Reorder")
async def reorder_cutout(cutout_id: str, body: ZIndexRequest, session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.reorder_cutout(cutout_id, body.z_index)
    return SessionView.of(session)


@router.post("/{session_id}/cutouts/{cutout_id}/forward", response_model=SessionView, summary="Bring forward")
async def bring_forward(cutout_id: str, session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.bring_forward(cutout_id)
    return SessionView.of(session)


@router.post("/{session_id}/cutouts/{cutout_id}/backward", response_model=SessionView, summary="Send backward")
async def send_backward(cutout_id: str, session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.send_backward(cutout_id)
    return SessionView.of(session)


@router.delete("/{session_id}/cutouts/{cutout_id}", response_model=SessionView, summary="Remove a cutout")
async def remove_cutout(cutout_id: str, session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.remove_cutout(cutout_id)
    return SessionView.of(session)


@router.put("/{session_id}/selection", response_model=SessionView, summary="Select a cutout (or none)")
async def select_cutout(body: SelectCutoutRequest, session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.select_cutout(body.cutout_id)
    return SessionView.of(session)


# ─── History ─────────────────────────────────────────────────────────────────

@router.post("/{session_id}/undo", response_model=SessionView, summary="Undo the last edit")
async def undo(session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.undo()
    return SessionView.of(session)


@router.post("/{session_id}/redo", response_model=SessionView, summary="Redo")
async def redo(session: BuilderSessionDep) -> SessionView:
    async with session.lock:
        session.document.redo()
    return SessionView.of(session)


# ─── Output ──────────────────────────────────────────────────────────────────

@router.get(
    "/{session_id}/export",
    summary="Render and download the card",
    description="Full source resolution; output size always equals the base card canvas.",
    response_class=Response,
)
async def export_card(
    session: BuilderSessionDep,
    fmt: ExportFormat | None = None,
    quality: int | None = None,
) -> Response:
    async with session.lock:
        result = await export_document_async(session.document, fmt, quality)
    return Response(
        content=result.data,
        media_type=result.content_type,
        headers={
            "Content-Disposition": f'attachment; filename="card.{result.extension}"',
            "X-Card-Width": str(result.width),
            "X-Card-Height": str(result.height),
        },
    )


@router.get("/{session_id}/preview", summary="Downscaled PNG preview", response_class=Response)
async def preview_card(session: BuilderSessionDep, max_long_edge: int | None = None) -> Response:
    async with session.lock:
        preview = await asyncio.to_thread(render_preview, session.document, max_long_edge)
    data = await asyncio.to_thread(encode_image, preview, "png")
    return Response(content=data, media_type="image/png")


@router.post(
    "/{session_id}/publish",
    response_model=PublishedAsset,
    summary="Export the card and upload it to Cloudinary",
)
async def publish_card(
    session: BuilderSessionDep,
    signer: SignerDep,
    fmt: ExportFormat | None = None,
    folder: str | None = None,
) -> PublishedAsset:
    async with session.lock:
        result = await export_document_async(session.document, fmt)
    return await signer.publish_export_async(result, folder=folder)


@router.get(
    "/{session_id}/project",
    summary="Saved project description (camelCase JSON, no pixels)",
)
async def get_project(session: BuilderSessionDep) -> dict:
    async with session.lock:
        project = serialize_document(session.document)
    return project.model_dump(mode="json", by_alias=True, exclude_none=True)
