# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: FastAPI Dependencies
Singleton providers for the template catalog, the session store and the
external clients. Everything is instantiated once at startup via the
lifespan event in main.py and stored here as module-level singletons.
Route handlers access them via FastAPI's Depends() injection.
"""

from __future__ import annotations

from typing import Annotated, Optional

import aiohttp
import structlog
from fastapi import Depends

from cardbuilder.config import get_settings
from cardbuilder.core.session_store import BuilderSession, InMemorySessionStore
from cardbuilder.core.templates import TemplateCatalog
from cardbuilder.services.remote_images import RemoteImageFetcher
from cardbuilder.services.upload_signing import UploadSigner
from cardbuilder.utils.logger import get_logger

log = get_logger(__name__)

# ─── Singletons ──────────────────────────────────────────────────────────────

_catalog: TemplateCatalog | None = None
_session_store: InMemorySessionStore | None = None
_http_session: Optional[aiohttp.ClientSession] = None
_signer: UploadSigner | None = None


async def init_services() -> None:
    """
    Build the catalog (built-ins + templates dir), the shared aiohttp
    session, the signer and the session store.
    Called once during application lifespan startup.
    """
    global _catalog, _session_store, _http_session, _signer
    settings = get_settings()

    _catalog = TemplateCatalog()
    _catalog.register_builtins(settings.card_size)
    _catalog.load_directory(settings.templates_dir)

    _http_session = aiohttp.ClientSession()
    fetcher = RemoteImageFetcher(settings, session=_http_session)
    _signer = UploadSigner(settings)
    _session_store = InMemorySessionStore(_catalog, settings, fetcher=fetcher)

    log.info(
        "init_services",
        templates=_catalog.count(),
        cloudinary=_signer.configured,
    )


async def shutdown_services() -> None:
    """Close every open session, then the shared HTTP session."""
    global _http_session
    if _session_store is not None:
        await _session_store.close_all()
    if _http_session is not None:
        await _http_session.close()
        _http_session = None


def _require(value, name: str):
    if value is None:
        raise RuntimeError(
            f"{name} has not been initialised. "
            "Ensure init_services() is called during app lifespan startup."
        )
    return value


def get_catalog() -> TemplateCatalog:
    return _require(_catalog, "TemplateCatalog")


def get_session_store() -> InMemorySessionStore:
    """
    FastAPI dependency: inject the session store into route handlers.

    Usage in a route:
        @router.get("/sessions/{session_id}")
        async def get_session(session_id: str, store: SessionStoreDep):
            session = store.require_session(session_id)
            ...
    """
    return _require(_session_store, "SessionStore")


def get_signer() -> UploadSigner:
    return _require(_signer, "UploadSigner")


# Annotated type aliases for clean route signatures
CatalogDep = Annotated[TemplateCatalog, Depends(get_catalog)]
SessionStoreDep = Annotated[InMemorySessionStore, Depends(get_session_store)]
SignerDep = Annotated[UploadSigner, Depends(get_signer)]


async def get_builder_session(session_id: str, store: SessionStoreDep) -> BuilderSession:
    """Resolve the path's session_id and bind it to the request's log context."""
    session = store.require_session(session_id)
    structlog.contextvars.bind_contextvars(session_id=session_id)
    return session


BuilderSessionDep = Annotated[BuilderSession, Depends(get_builder_session)]
