# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: GET /templates
Lists the base card templates every session can select, and serves
their pixels for the picker.
"""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Response

from cardbuilder.dependencies import CatalogDep
from cardbuilder.models.session import BaseCardView
from cardbuilder.utils.image_utils import encode_image, resize_long_edge
from cardbuilder.utils.logger import get_logger

router = APIRouter(prefix="/templates", tags=["templates"])
log = get_logger(__name__)


@router.get("", response_model=list[BaseCardView], summary="List base card templates")
async def list_templates(catalog: CatalogDep) -> list[BaseCardView]:
    return [BaseCardView.of(card) for card in catalog.list_templates()]


@router.get(
    "/{template_id}/image",
    summary="Template pixels as PNG (204 for layered templates)",
    response_class=Response,
)
async def get_template_image(
    template_id: str,
    catalog: CatalogDep,
    max_long_edge: int | None = None,
) -> Response:
    card = catalog.get(template_id)
    if card.pixels is None:
        return Response(status_code=204)

    pixels = card.pixels
    if max_long_edge:
        pixels, _ = resize_long_edge(pixels, max_long_edge)
    data = await asyncio.to_thread(encode_image, pixels, "png")
    log.debug("template_image_served", template_id=template_id, size_kb=round(len(data) / 1024, 1))
    return Response(content=data, media_type="image/png")
