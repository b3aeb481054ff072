# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Card Exporter
Encodes the full-resolution render into the raster handed to the upload
collaborator. Output dimensions always equal the base card canvas.
"""

from __future__ import annotations

import asyncio

from pydantic import BaseModel, Field

from cardbuilder.core.document import CardDocument
from cardbuilder.modules.rendering.compositor import render_document
from cardbuilder.utils.image_utils import content_type_for, encode_image
from cardbuilder.utils.logger import get_logger

log = get_logger(__name__)


class ExportResult(BaseModel):
    """Encoded card plus what the upload collaborator needs to store it."""
    data: bytes = Field(..., repr=False)
    content_type: str
    format: str
    width: int
    height: int

    @property
    def byte_size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return "jpg" if self.format in ("jpeg", "jpg") else self.format


def export_document(
    document: CardDocument,
    fmt: str | None = None,
    quality: int | None = None,
) -> ExportResult:
    """
    Render and encode the document.

    PNG and WebP keep the alpha channel; JPEG is flattened over white.
    Exporting an unchanged document twice gives byte-identical data.

    Raises:
        NoBaseCardError: no base card is selected.
        ValueError:      unsupported format.
    """
    settings = document.settings
    fmt = (fmt or settings.export_format).lower()
    quality = settings.export_jpeg_quality if quality is None else quality
    content_type = content_type_for(fmt)

    rendered = render_document(document)
    data = encode_image(rendered, fmt=fmt, quality=quality)
    height, width = rendered.shape[:2]

    log.info(
        "card_exported",
        format=fmt,
        width=width,
        height=height,
        size_kb=round(len(data) / 1024, 1),
        cutouts=len(document.cutouts_in_paint_order()),
    )
    return ExportResult(
        data=data,
        content_type=content_type,
        format=fmt,
        width=width,
        height=height,
    )


async def export_document_async(
    document: CardDocument,
    fmt: str | None = None,
    quality: int | None = None,
) -> ExportResult:
    """
    export_document() on a worker thread. Callers must not mutate the
    document until this returns.
    """
    return await asyncio.to_thread(export_document, document, fmt, quality)
