# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Project Save / Restore
Converts a CardDocument to and from its ProjectDescription.

Round trip contract: deserialize(serialize(doc)) with the same source
images renders to the same raster. Ids, paint order, the base card and
every cutout field survive; undo history and selection do not.
"""

from __future__ import annotations

import asyncio
from typing import Mapping, Optional, Union

from pydantic import ValidationError

from cardbuilder.api.middleware.error_handler import (
    CardBuilderError,
    InvalidFormatError,
    NotFoundError,
)
from cardbuilder.config import Settings, get_settings
from cardbuilder.core.document import CardDocument
from cardbuilder.core.templates import TemplateCatalog, derive_base_card
from cardbuilder.models.card import (
    BaseCard,
    Cutout,
    CutoutShape,
    DecodedImage,
    ImageStatus,
    Transform,
    UploadedImage,
)
from cardbuilder.models.project import (
    PROJECT_SCHEMA_VERSION,
    ProjectBaseCardSource,
    ProjectCanvas,
    ProjectCutout,
    ProjectDescription,
    ProjectImage,
    ProjectTransform,
)
from cardbuilder.modules.intake.validator import validate_image_bytes
from cardbuilder.services.remote_images import RemoteImageFetcher
from cardbuilder.utils.logger import get_logger

log = get_logger(__name__)

ImageBuffer = Union[bytes, DecodedImage]


# ─── Serialize ───────────────────────────────────────────────────────────────

def serialize_document(document: CardDocument) -> ProjectDescription:
    """
    Describe the document without pixel data. Ready images are listed,
    and so are failed slots that still carry cutouts (a restore whose
    fetch failed) so the next restore can try them again. Pending slots
    and failed uploads with nothing cut from them are left out.
    """
    images = [
        ProjectImage(
            id=img.image_id,
            storage_ref=img.storage_ref,
            width=img.width,
            height=img.height,
            filename=img.filename,
        )
        for img in document.uploads
        if img.is_ready or _keeps_failed_slot(document, img)
    ]

    cutouts = [
        ProjectCutout(
            id=c.cutout_id,
            source_image_ref=c.source_image_id,
            crop_rect=c.crop_rect,
            transform=ProjectTransform(**c.transform.model_dump()),
            z_index=c.z_index,
            visible=c.visible,
            opacity=c.opacity,
            shape=c.shape,
            points=list(c.points) if c.shape == CutoutShape.POLYGON else None,
        )
        for c in document.cutouts
    ]

    base = document.base_card
    source = None
    if base is not None and base.source is not None:
        source = ProjectBaseCardSource(
            image_id=base.source.image_id,
            crop_rect=base.source.crop_rect,
        )

    project = ProjectDescription(
        schema_version=PROJECT_SCHEMA_VERSION,
        kit_slug=document.kit_slug,
        stage=document.stage,
        base_card_id=base.template_id if base is not None else None,
        base_card_source=source,
        canvas=ProjectCanvas(width=base.width, height=base.height) if base is not None else None,
        cutouts=cutouts,
        images=images,
    )
    log.debug("project_serialized", images=len(images), cutouts=len(cutouts))
    return project


def dumps_project(document: CardDocument) -> str:
    return serialize_document(document).to_json()


def loads_project(text: Union[str, bytes]) -> ProjectDescription:
    """Parse a persisted project. Raises InvalidFormatError on bad JSON or schema."""
    try:
        project = ProjectDescription.model_validate_json(text)
    except ValidationError as e:
        raise InvalidFormatError(f"Project description is invalid: {e.error_count()} error(s).") from e
    if project.schema_version > PROJECT_SCHEMA_VERSION:
        raise InvalidFormatError(
            f"Project schema version {project.schema_version} is newer than "
            f"supported version {PROJECT_SCHEMA_VERSION}."
        )
    return project


# ─── Deserialize ─────────────────────────────────────────────────────────────

def deserialize_document(
    project: ProjectDescription,
    image_buffers: Mapping[str, ImageBuffer],
    catalog: TemplateCatalog | None = None,
    settings: Settings | None = None,
    failed: Optional[Mapping[str, str]] = None,
) -> CardDocument:
    """
    Rebuild a CardDocument from a project plus the source image data.

    Args:
        project:        Parsed project description.
        image_buffers:  image id -> raw bytes or DecodedImage.
        catalog:        Template catalog for baseCardId lookups.
        settings:       Override settings (tests).
        failed:         image id -> error, for images that could not be
                        re-fetched. Those slots come back as failed and
                        their cutouts are kept but not rendered.

    Raises:
        NotFoundError:      an image has no buffer, or the template is unknown.
        InvalidFormatError: a buffer fails validation.
        InvalidCropError:   a cutout's crop no longer fits its source image.
    """
    settings = settings or get_settings()
    failed = failed or {}

    uploads: list[UploadedImage] = []
    for entry in project.images:
        if entry.id in failed:
            uploads.append(UploadedImage(
                image_id=entry.id,
                filename=entry.filename or entry.id,
                status=ImageStatus.FAILED,
                width=entry.width,
                height=entry.height,
                storage_ref=entry.storage_ref,
                error=failed[entry.id],
            ))
            continue
        if entry.id not in image_buffers:
            raise NotFoundError(f"No image data supplied for {entry.id}")
        uploads.append(_restore_image(entry, image_buffers[entry.id], settings))

    by_id = {img.image_id: img for img in uploads}
    cutouts: list[Cutout] = []
    for entry in project.cutouts:
        image = by_id.get(entry.source_image_ref)
        if image is None:
            raise NotFoundError(
                f"Cutout {entry.id} references unknown image {entry.source_image_ref}"
            )
        points = list(entry.points or [])
        if image.is_ready:
            CardDocument.validate_crop(image, entry.crop_rect, entry.shape, points)
        cutouts.append(Cutout(
            cutout_id=entry.id,
            source_image_id=entry.source_image_ref,
            crop_rect=entry.crop_rect,
            transform=Transform(**entry.transform.model_dump()),
            z_index=entry.z_index,
            visible=entry.visible,
            opacity=entry.opacity,
            shape=entry.shape,
            points=points if entry.shape == CutoutShape.POLYGON else [],
        ))

    base_card = _restore_base_card(project, by_id, catalog, settings)

    document = CardDocument.hydrate(
        uploads=uploads,
        cutouts=cutouts,
        base_card=base_card,
        stage=project.stage,
        kit_slug=project.kit_slug,
        catalog=catalog,
        settings=settings,
    )
    log.info(
        "project_restored",
        images=len(uploads),
        failed_images=len(failed),
        cutouts=len(cutouts),
        base_card=project.base_card_id,
    )
    return document


async def restore_document(
    project: ProjectDescription,
    fetcher: RemoteImageFetcher,
    catalog: TemplateCatalog | None = None,
    settings: Settings | None = None,
) -> CardDocument:
    """
    Fetch every image by its storageRef (concurrently, one attempt each),
    decode off the event loop, then deserialize. An image that cannot be
    fetched or decoded fails only its own slot.
    """
    settings = settings or get_settings()

    async def load(entry: ProjectImage) -> tuple[str, Union[DecodedImage, str]]:
        if not entry.storage_ref:
            return entry.id, "Image has no storage reference to fetch."
        try:
            fetched = await fetcher.fetch(entry.storage_ref)
            decoded = await asyncio.to_thread(
                validate_image_bytes,
                fetched.data,
                entry.filename or entry.id,
                fetched.content_type,
                settings,
            )
        except CardBuilderError as e:
            log.warning("project_image_unavailable", image_id=entry.id, error=str(e))
            return entry.id, str(e)
        return entry.id, decoded

    results = await asyncio.gather(*(load(entry) for entry in project.images))

    buffers: dict[str, DecodedImage] = {}
    failed: dict[str, str] = {}
    for image_id, outcome in results:
        if isinstance(outcome, DecodedImage):
            buffers[image_id] = outcome
        else:
            failed[image_id] = outcome

    return deserialize_document(project, buffers, catalog=catalog, settings=settings, failed=failed)


# ─── Internals ───────────────────────────────────────────────────────────────

def _keeps_failed_slot(document: CardDocument, image: UploadedImage) -> bool:
    return (
        image.status == ImageStatus.FAILED
        and image.width > 0
        and image.height > 0
        and bool(document.cutouts_for_image(image.image_id))
    )


def _restore_image(entry: ProjectImage, buffer: ImageBuffer, settings: Settings) -> UploadedImage:
    if isinstance(buffer, DecodedImage):
        decoded = buffer
    else:
        decoded = validate_image_bytes(buffer, label=entry.filename or entry.id, settings=settings)

    if (decoded.width, decoded.height) != (entry.width, entry.height):
        log.warning(
            "project_image_size_changed",
            image_id=entry.id,
            saved=(entry.width, entry.height),
            fetched=(decoded.width, decoded.height),
        )

    return UploadedImage(
        image_id=entry.id,
        filename=entry.filename or entry.id,
        byte_size=decoded.byte_size,
        status=ImageStatus.READY,
        width=decoded.width,
        height=decoded.height,
        pixels=decoded.pixels,
        thumbnail=decoded.thumbnail,
        storage_ref=entry.storage_ref,
    )


def _restore_base_card(
    project: ProjectDescription,
    images: Mapping[str, UploadedImage],
    catalog: TemplateCatalog | None,
    settings: Settings,
) -> BaseCard | None:
    if project.base_card_id is None:
        return None

    source = project.base_card_source
    if source is None:
        if catalog is None:
            raise NotFoundError(f"Base card template not found: {project.base_card_id}")
        return catalog.get(project.base_card_id)

    image = images.get(source.image_id)
    if image is None or not image.is_ready:
        # Source photo was removed or could not be fetched; no base card
        log.warning("base_card_source_unavailable", image_id=source.image_id)
        return None

    size = settings.card_size
    if project.canvas is not None:
        size = (project.canvas.width, project.canvas.height)
    return derive_base_card(image, source.crop_rect, size)
