# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: FastAPI Application Entry Point
Creates the app, registers lifespan events, CORS, routers,
and global error handlers.
"""

from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cardbuilder.api.middleware.error_handler import register_error_handlers
from cardbuilder.api.routes import sessions, signature, templates
from cardbuilder.config import get_settings
from cardbuilder.dependencies import (
    get_catalog,
    get_session_store,
    get_signer,
    init_services,
    shutdown_services,
)
from cardbuilder.utils.logger import configure_logging, get_logger

log = get_logger(__name__)

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.
    Startup: configure logging, load templates, open the HTTP client pool.
    Shutdown: close open sessions (discarding in-flight loads) and the pool.
    """
    # ── Startup ──────────────────────────────────────────────────────────────
    configure_logging()
    settings = get_settings()

    log.info(
        "cardbuilder_startup",
        version=VERSION,
        card_size=settings.card_size,
        templates_dir=str(settings.templates_dir),
        max_uploads=settings.max_uploads_per_document,
        export_format=settings.export_format,
    )

    await init_services()

    log.info("cardbuilder_ready")
    yield

    # ── Shutdown ─────────────────────────────────────────────────────────────
    await shutdown_services()
    log.info("cardbuilder_shutdown")


def create_app() -> FastAPI:
    app = FastAPI(
        title="KitCard Builder",
        summary="Compose collectible model-kit cards from your own photos.",
        version=VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # ── CORS ─────────────────────────────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",   # Vite dev server
            "http://localhost:3000",   # Next.js dev server
            "http://localhost:80",     # Docker nginx
        ],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Card-Width", "X-Card-Height"],
    )

    # ── Error Handlers ───────────────────────────────────────────────────────
    register_error_handlers(app)

    # ── Routers ──────────────────────────────────────────────────────────────
    app.include_router(sessions.router)
    app.include_router(templates.router)
    app.include_router(signature.router)

    # ── Health Check ─────────────────────────────────────────────────────────
    @app.get("/health", tags=["health"], summary="Health check")
    async def health() -> dict:
        return {
            "status": "ok",
            "service": "cardbuilder",
            "version": VERSION,
            "templates": get_catalog().count(),
            "sessions": get_session_store().count(),
            "cloudinary": get_signer().configured,
        }

    return app


# Module-level app instance for uvicorn
app = create_app()
