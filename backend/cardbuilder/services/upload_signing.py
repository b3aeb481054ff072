# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Cloudinary Upload Signing
Signs direct browser uploads and publishes finished card exports.

The signed parameter set matches what the browser sends with the file:
  timestamp, folder, eager="q_auto,f_auto", use_filename, unique_filename
"""

from __future__ import annotations

import asyncio
import io
import time
from typing import Callable, Optional

import cloudinary.uploader
import cloudinary.utils
from pydantic import BaseModel

from cardbuilder.api.middleware.error_handler import SigningUnavailableError
from cardbuilder.config import Settings, get_settings
from cardbuilder.modules.rendering.exporter import ExportResult
from cardbuilder.utils.logger import get_logger

log = get_logger(__name__)

EAGER_TRANSFORM = "q_auto,f_auto"


class UploadSignature(BaseModel):
    signature: str
    timestamp: int
    api_key: str
    cloud_name: str
    folder: str
    eager: str = EAGER_TRANSFORM
    use_filename: str = "true"
    unique_filename: str = "true"


class PublishedAsset(BaseModel):
    """What Cloudinary reports back for an uploaded export."""
    public_id: str
    url: str
    eager_url: Optional[str] = None
    format: Optional[str] = None
    bytes: int = 0
    asset_id: Optional[str] = None


class UploadSigner:
    """
    Cloudinary signing client. The clock is injectable so signatures can
    be reproduced in tests.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or get_settings()
        self._clock = clock

    @property
    def configured(self) -> bool:
        s = self._settings
        return bool(s.cloudinary_cloud_name and s.cloudinary_api_key and s.cloudinary_api_secret)

    def sign(self, folder: str | None = None) -> UploadSignature:
        """Sign a direct upload into `folder` (defaults to the configured folder)."""
        self._require_credentials()
        s = self._settings
        folder = folder or s.cloudinary_folder
        timestamp = int(round(self._clock()))

        params = {
            "timestamp": timestamp,
            "folder": folder,
            "eager": EAGER_TRANSFORM,
            "use_filename": "true",
            "unique_filename": "true",
        }
        signature = cloudinary.utils.api_sign_request(params, s.cloudinary_api_secret)

        log.info("upload_signed", folder=folder, timestamp=timestamp)
        return UploadSignature(
            signature=signature,
            timestamp=timestamp,
            api_key=s.cloudinary_api_key,
            cloud_name=s.cloudinary_cloud_name,
            folder=folder,
        )

    def publish_export(
        self,
        export: ExportResult,
        folder: str | None = None,
        public_id: str | None = None,
    ) -> PublishedAsset:
        """Upload a flattened card export. Blocking; see publish_export_async."""
        self._require_credentials()
        s = self._settings
        folder = folder or s.cloudinary_folder

        options = {
            "resource_type": "image",
            "folder": folder,
            "eager": EAGER_TRANSFORM,
            "overwrite": True,
            "cloud_name": s.cloudinary_cloud_name,
            "api_key": s.cloudinary_api_key,
            "api_secret": s.cloudinary_api_secret,
        }
        if public_id:
            options["public_id"] = public_id

        res = cloudinary.uploader.upload(io.BytesIO(export.data), **options)
        eager = res.get("eager") or []
        asset = PublishedAsset(
            public_id=res["public_id"],
            url=res["secure_url"],
            eager_url=eager[0].get("secure_url") if eager else None,
            format=res.get("format"),
            bytes=res.get("bytes", export.byte_size),
            asset_id=res.get("asset_id"),
        )
        log.info("export_published", public_id=asset.public_id, folder=folder, bytes=asset.bytes)
        return asset

    async def publish_export_async(
        self,
        export: ExportResult,
        folder: str | None = None,
        public_id: str | None = None,
    ) -> PublishedAsset:
        return await asyncio.to_thread(self.publish_export, export, folder, public_id)

    def _require_credentials(self) -> None:
        if not self.configured:
            raise SigningUnavailableError(
                "Cloudinary is not configured. Set CLOUDINARY_CLOUD_NAME, "
                "CLOUDINARY_API_KEY and CLOUDINARY_API_SECRET."
            )
