# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: POST /upload/signature
Signs a direct browser-to-Cloudinary upload for a logical folder.
"""

from __future__ import annotations

from fastapi import APIRouter

from cardbuilder.dependencies import SignerDep
from cardbuilder.models.session import SignatureRequest
from cardbuilder.services.upload_signing import UploadSignature

router = APIRouter(tags=["upload"])


@router.post(
    "/upload/signature",
    response_model=UploadSignature,
    summary="Sign a Cloudinary upload",
    description="Folder defaults to the configured CLOUDINARY_FOLDER.",
)
async def upload_signature(signer: SignerDep, body: SignatureRequest | None = None) -> UploadSignature:
    return signer.sign(body.folder if body else None)
