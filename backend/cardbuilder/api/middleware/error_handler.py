# Copyright (c) 2026 Harsh Dwivedi
# Licensed under the Harsh Non-Commercial Attribution License (HNCAL) v1.0
# Commercial use requires written permission. See LICENSE for details.

"""
KitCard Builder: Error Taxonomy + Global Error Handler
Every recoverable card-builder failure is a CardBuilderError subclass.
Document operations validate before committing, so any of these leaves the
document unchanged. register_error_handlers() converts them into structured
JSON error responses on the FastAPI app.
"""

from __future__ import annotations

import traceback

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from cardbuilder.utils.logger import get_logger

log = get_logger(__name__)


class CardBuilderError(Exception):
    """Base class for all recoverable card builder errors."""

    code = "CARD_BUILDER_ERROR"
    http_status = status.HTTP_400_BAD_REQUEST


class ImageValidationError(CardBuilderError, ValueError):
    """Raised when an uploaded image fails format or size validation."""

    code = "IMAGE_VALIDATION_ERROR"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class InvalidFormatError(ImageValidationError):
    """Upload is not a decodable JPEG, PNG or WebP image."""

    code = "INVALID_FORMAT"


class TooLargeError(ImageValidationError):
    """Upload exceeds the byte-size, pixel-area or per-document count ceiling."""

    code = "TOO_LARGE"
    http_status = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE


class NotFoundError(CardBuilderError, KeyError):
    """An operation referenced a stale image, cutout or template identifier."""

    code = "NOT_FOUND"
    http_status = status.HTTP_404_NOT_FOUND

    def __str__(self) -> str:
        # KeyError.__str__ repr()s its argument
        return str(self.args[0]) if self.args else self.code


class ImageNotReadyError(NotFoundError):
    """The image slot exists but its decode is still pending or has failed."""

    code = "IMAGE_NOT_READY"
    http_status = status.HTTP_409_CONFLICT


class SessionNotFoundError(NotFoundError):
    """Raised when a session_id does not exist in the store."""

    code = "SESSION_NOT_FOUND"


class InvalidCropError(CardBuilderError, ValueError):
    """Crop rectangle is degenerate or outside the source image bounds."""

    code = "INVALID_CROP"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY


class NoBaseCardError(CardBuilderError):
    """Export or render attempted with no base card selected."""

    code = "NO_BASE_CARD"
    http_status = status.HTTP_409_CONFLICT


class RemoteFetchError(CardBuilderError):
    """A single-attempt remote image read failed."""

    code = "REMOTE_FETCH_ERROR"
    http_status = status.HTTP_502_BAD_GATEWAY


class SigningUnavailableError(CardBuilderError):
    """Cloudinary credentials are not configured, so uploads cannot be signed."""

    code = "SIGNING_UNAVAILABLE"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


def _error_body(code: str, message: str, detail: str | None = None) -> dict:
    body = {"error": {"code": code, "message": message}}
    if detail:
        body["error"]["detail"] = detail
    return body


def register_error_handlers(app: FastAPI) -> None:
    """
    Register all global exception handlers on the FastAPI application.
    Call this in main.py after creating the app instance.
    """

    @app.exception_handler(CardBuilderError)
    async def card_builder_error_handler(
        req: Request, exc: CardBuilderError
    ) -> JSONResponse:
        log.warning(
            "card_builder_error",
            path=str(req.url),
            code=exc.code,
            error=str(exc),
        )
        return JSONResponse(
            status_code=exc.http_status,
            content=_error_body(code=exc.code, message=str(exc)),
        )

    @app.exception_handler(Exception)
    async def generic_handler(req: Request, exc: Exception) -> JSONResponse:
        tb = traceback.format_exc()
        log.error(
            "unhandled_exception",
            path=str(req.url),
            error=str(exc),
            exc_type=type(exc).__name__,
            traceback=tb,
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(
                code="INTERNAL_SERVER_ERROR",
                message="An unexpected error occurred.",
            ),
        )
