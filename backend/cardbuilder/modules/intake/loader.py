# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Async Image Loader
Runs the slow parts of image intake (decode, remote fetch) off the event
loop and routes every completion back through a LoadToken check.

  submit_upload()   reserve a pending slot now, decode in the background
  load_upload()     same, but await the decode and return the final slot
  load_remote_*()   fetch by URL (single attempt) and then decode
  load_template()   fetch a remote base card template and select it

The document is only ever mutated from the event loop thread, and only
while holding the owning session's lock; the worker threads started by
asyncio.to_thread() only decode bytes. submit_upload() is synchronous and
expects the caller to hold that lock already.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Optional

from cardbuilder.api.middleware.error_handler import CardBuilderError, ImageValidationError
from cardbuilder.core.document import CardDocument, LoadToken
from cardbuilder.models.card import BaseCard, UploadedImage, UploadMetadata
from cardbuilder.modules.intake.validator import validate_image_bytes
from cardbuilder.utils.logger import get_logger

if TYPE_CHECKING:
    from cardbuilder.services.remote_images import RemoteImageFetcher

log = get_logger(__name__)


class ImageLoader:
    """
    Async intake for one CardDocument. Owned by a BuilderSession and
    closed together with it.
    """

    def __init__(
        self,
        document: CardDocument,
        fetcher: Optional["RemoteImageFetcher"] = None,
        lock: Optional[asyncio.Lock] = None,
    ) -> None:
        self._document = document
        self._fetcher = fetcher
        self._lock = lock or asyncio.Lock()
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        """Number of loads still in flight."""
        return len(self._tasks)

    # ─── Uploads ─────────────────────────────────────────────────────────────

    def submit_upload(self, data: bytes, metadata: UploadMetadata | None = None) -> UploadedImage:
        """
        Append a pending slot immediately (display order follows the order
        of user actions) and decode in the background.
        """
        image, token = self._document.reserve_upload(metadata)
        self._spawn(self._decode_into(token, data, metadata or UploadMetadata()))
        return image

    async def load_upload(self, data: bytes, metadata: UploadMetadata | None = None) -> UploadedImage:
        """Reserve, decode and return the slot as it stands after the load."""
        async with self._lock:
            image, token = self._document.reserve_upload(metadata)
        await self._decode_into(token, data, metadata or UploadMetadata())
        return self._current(image)

    async def load_remote_upload(self, url: str, metadata: UploadMetadata | None = None) -> UploadedImage:
        """
        Fetch an image by URL into a new upload slot. The URL becomes the
        slot's storage_ref. A failed fetch marks only this slot failed.
        """
        fetcher = self._require_fetcher()
        metadata = metadata or UploadMetadata(filename=url.rsplit("/", 1)[-1] or "remote")
        metadata = metadata.model_copy(update={"storage_ref": metadata.storage_ref or url})
        async with self._lock:
            image, token = self._document.reserve_upload(metadata)

        try:
            fetched = await fetcher.fetch(url)
        except CardBuilderError as e:
            async with self._lock:
                self._document.fail_upload(token, str(e))
            return self._current(image)

        await self._decode_into(
            token,
            fetched.data,
            metadata.model_copy(update={"content_type": fetched.content_type}),
        )
        return self._current(image)

    # ─── Templates ───────────────────────────────────────────────────────────

    async def load_template(self, template_id: str, url: str, name: str = "") -> Optional[BaseCard]:
        """
        Fetch a remote base card template, register it in the document's
        catalog and select it. Returns None if another base card was chosen
        (or the session closed) while the fetch was in flight.
        """
        fetcher = self._require_fetcher()
        catalog = self._document.catalog
        if catalog is None:
            raise RuntimeError("Remote templates need a document with a TemplateCatalog.")

        async with self._lock:
            token = self._document.issue_base_token(template_id)
        log.info("template_fetch_start", template_id=template_id, url=url)

        fetched = await fetcher.fetch(url)
        decoded = await asyncio.to_thread(
            validate_image_bytes,
            fetched.data,
            f"template '{template_id}'",
            fetched.content_type,
            self._document.settings,
        )

        async with self._lock:
            if not self._document.is_base_token_live(token):
                log.info("stale_load_discarded", template_id=template_id, generation=token.generation)
                return None

            card = catalog.register(BaseCard(
                template_id=template_id,
                name=name or template_id,
                width=decoded.width,
                height=decoded.height,
                pixels=decoded.pixels,
                storage_ref=url,
            ))
            self._document.select_base_card(card.template_id)
        return card

    # ─── Lifecycle ───────────────────────────────────────────────────────────

    async def drain(self) -> None:
        """Wait for every background load to finish (tests, shutdown)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """
        Close the document (making every token stale) and cancel whatever
        is still running. Late completions are discarded by the token check.
        """
        async with self._lock:
            self._document.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log.info("image_loader_closed", cancelled=len(tasks))

    # ─── Internals ───────────────────────────────────────────────────────────

    async def _decode_into(self, token: LoadToken, data: bytes, metadata: UploadMetadata) -> None:
        try:
            decoded = await asyncio.to_thread(
                validate_image_bytes,
                data,
                metadata.filename,
                metadata.content_type,
                self._document.settings,
            )
        except ImageValidationError as e:
            async with self._lock:
                self._document.fail_upload(token, str(e))
            return
        async with self._lock:
            self._document.resolve_upload(token, decoded, storage_ref=metadata.storage_ref)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error("image_load_crashed", error=str(exc), exc_type=type(exc).__name__)

    def _current(self, image: UploadedImage) -> UploadedImage:
        """The slot's latest state, or the reserved record if it was removed meanwhile."""
        try:
            return self._document.get_upload(image.image_id)
        except KeyError:
            return image

    def _require_fetcher(self) -> "RemoteImageFetcher":
        if self._fetcher is None:
            raise RuntimeError("ImageLoader was created without a RemoteImageFetcher.")
        return self._fetcher
