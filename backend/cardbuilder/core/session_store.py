# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Builder Session Store
One BuilderSession per editing session: its CardDocument plus the
ImageLoader that feeds it. Sessions never share documents.

SessionStore          abstract interface
InMemorySessionStore  dict + RLock, single-process deployments and tests
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from abc import ABC, abstractmethod
from typing import Optional

from cardbuilder.api.middleware.error_handler import SessionNotFoundError
from cardbuilder.config import Settings
from cardbuilder.core.document import CardDocument
from cardbuilder.core.templates import TemplateCatalog
from cardbuilder.modules.intake.loader import ImageLoader
from cardbuilder.services.remote_images import RemoteImageFetcher
from cardbuilder.utils.logger import get_logger

log = get_logger(__name__)


class BuilderSession:
    """
    A document and its loader. Route handlers hold `lock` around every
    mutation so a session has a single writer even with concurrent requests.
    """

    def __init__(
        self,
        session_id: str,
        document: CardDocument,
        fetcher: RemoteImageFetcher | None = None,
    ) -> None:
        self.session_id = session_id
        self.document = document
        self.lock = asyncio.Lock()
        self.loader = ImageLoader(document, fetcher=fetcher, lock=self.lock)

    async def close(self) -> None:
        await self.loader.close()


# ─── Abstract Interface ──────────────────────────────────────────────────────

class SessionStore(ABC):

    @abstractmethod
    def create_session(
        self,
        kit_slug: str | None = None,
        document: CardDocument | None = None,
    ) -> BuilderSession:
        """Create and register a session, optionally around an existing document."""

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[BuilderSession]:
        """Return the session, or None if not found."""

    @abstractmethod
    def pop_session(self, session_id: str) -> Optional[BuilderSession]:
        """Unregister and return the session (caller closes it)."""

    def require_session(self, session_id: str) -> BuilderSession:
        session = self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Builder session not found: {session_id}")
        return session

    async def close_session(self, session_id: str) -> None:
        """Remove a session and invalidate its in-flight loads."""
        session = self.pop_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Builder session not found: {session_id}")
        await session.close()
        log.info("session_closed", session_id=session_id)


# ─── In-Memory Implementation ────────────────────────────────────────────────

class InMemorySessionStore(SessionStore):
    """
    Thread-safe in-memory session store using a dict + RLock.
    All sessions are lost on process restart.
    """

    def __init__(
        self,
        catalog: TemplateCatalog,
        settings: Settings,
        fetcher: RemoteImageFetcher | None = None,
    ) -> None:
        self._catalog = catalog
        self._settings = settings
        self._fetcher = fetcher
        self._sessions: dict[str, BuilderSession] = {}
        self._lock = threading.RLock()

    @property
    def catalog(self) -> TemplateCatalog:
        return self._catalog

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def fetcher(self) -> RemoteImageFetcher | None:
        return self._fetcher

    def create_session(
        self,
        kit_slug: str | None = None,
        document: CardDocument | None = None,
    ) -> BuilderSession:
        if document is None:
            document = CardDocument(catalog=self._catalog, settings=self._settings, kit_slug=kit_slug)
        session = BuilderSession(str(uuid.uuid4()), document, fetcher=self._fetcher)
        with self._lock:
            self._sessions[session.session_id] = session
        log.info("session_created", session_id=session.session_id, kit_slug=document.kit_slug)
        return session

    def get_session(self, session_id: str) -> Optional[BuilderSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def pop_session(self, session_id: str) -> Optional[BuilderSession]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    async def close_all(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            await session.close()
        log.info("sessions_closed", count=len(sessions))

    def count(self) -> int:
        """Return number of open sessions (used by the health check)."""
        with self._lock:
            return len(self._sessions)
