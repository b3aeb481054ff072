# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Remote Image Client
Reads template images and previously stored uploads from a remote store.
Exactly one attempt per request: no retry, no cache. Any failure becomes
a RemoteFetchError scoped to the slot that asked for the image.
"""

from __future__ import annotations

import asyncio
from typing import Optional
from urllib.parse import urlparse

import aiohttp
from pydantic import BaseModel, Field

from cardbuilder.api.middleware.error_handler import RemoteFetchError
from cardbuilder.config import Settings, get_settings
from cardbuilder.utils.logger import get_logger

log = get_logger(__name__)

# Upstreams that omit a content type are assumed to serve JPEG
_DEFAULT_CONTENT_TYPE = "image/jpeg"
_CHUNK_BYTES = 64 * 1024


class FetchedImage(BaseModel):
    url: str
    data: bytes = Field(..., repr=False)
    content_type: str = _DEFAULT_CONTENT_TYPE


class RemoteImageFetcher:
    """
    aiohttp client for remote image reads.

    A shared ClientSession can be injected (one per app); otherwise a
    short-lived session is opened per request.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._session = session

    async def fetch(self, url: str) -> FetchedImage:
        """
        GET one image.

        Raises:
            RemoteFetchError: bad URL, non-2xx status, oversized body,
                              timeout or transport failure.
        """
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise RemoteFetchError(f"Only http(s) image URLs can be fetched: {url!r}")

        timeout = aiohttp.ClientTimeout(total=self._settings.remote_fetch_timeout_seconds)
        log.debug("remote_fetch_start", url=url)
        try:
            if self._session is not None:
                result = await self._get(self._session, url, timeout)
            else:
                async with aiohttp.ClientSession() as session:
                    result = await self._get(session, url, timeout)
        except asyncio.TimeoutError as e:
            log.warning("remote_fetch_timeout", url=url)
            raise RemoteFetchError(f"Timed out fetching {url}") from e
        except aiohttp.ClientError as e:
            log.warning("remote_fetch_failed", url=url, error=str(e))
            raise RemoteFetchError(f"Could not fetch {url}: {e}") from e

        log.info("remote_fetch_done", url=url, size_kb=round(len(result.data) / 1024, 1))
        return result

    async def _get(
        self,
        session: aiohttp.ClientSession,
        url: str,
        timeout: aiohttp.ClientTimeout,
    ) -> FetchedImage:
        limit = self._settings.upload_max_bytes
        async with session.get(url, timeout=timeout) as response:
            if response.status < 200 or response.status >= 300:
                log.warning("remote_fetch_bad_status", url=url, status=response.status)
                raise RemoteFetchError(f"Upstream returned HTTP {response.status} for {url}")
            if response.content_length is not None and response.content_length > limit:
                raise RemoteFetchError(f"Remote image at {url} exceeds {self._settings.upload_max_mb} MB.")

            buf = bytearray()
            async for chunk in response.content.iter_chunked(_CHUNK_BYTES):
                buf.extend(chunk)
                if len(buf) > limit:
                    raise RemoteFetchError(
                        f"Remote image at {url} exceeds {self._settings.upload_max_mb} MB."
                    )
            data = bytes(buf)

            content_type = response.headers.get("Content-Type", _DEFAULT_CONTENT_TYPE)
            return FetchedImage(
                url=url,
                data=data,
                content_type=content_type.split(";", 1)[0].strip() or _DEFAULT_CONTENT_TYPE,
            )
