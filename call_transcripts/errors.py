"""Typed failures for the transcription record service and their HTTP mapping."""

from __future__ import annotations

from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .logging_utils import format_fields, get_logger

logger = get_logger(__name__)


class TranscriptionError(Exception):
    """Base class for every failure a route handler can surface.

    Attributes:
        status_code: HTTP status returned to the client.
        error_code: Machine-readable identifier returned as ``code``.
        public_message: When set, replaces the exception text in responses so
            store internals stay in the server logs.
        context: Key-value pairs logged alongside the error.
    """

    status_code: int = 500
    error_code: str = "INTERNAL_ERROR"
    public_message: str | None = None

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.context = context

    @property
    def client_message(self) -> str:
        return self.public_message or str(self)


class InvalidPayload(TranscriptionError):
    """Request data is malformed or missing required fields."""

    status_code = 400
    error_code = "INVALID_PAYLOAD"


class NotFound(TranscriptionError):
    """The referenced call has no stored transcription."""

    status_code = 404
    error_code = "NOT_FOUND"

    def __init__(self, call_id: str, **context: Any) -> None:
        self.call_id = call_id
        super().__init__(f"Transcription {call_id} not found", call_id=call_id, **context)


class DuplicateKey(TranscriptionError):
    """A transcription already exists for the call."""

    status_code = 409
    error_code = "DUPLICATE_KEY"

    def __init__(self, call_id: str, **context: Any) -> None:
        self.call_id = call_id
        super().__init__(
            f"Transcription {call_id} already exists", call_id=call_id, **context
        )


class TranscriptFetchError(TranscriptionError):
    """The provider transcript file could not be downloaded."""

    status_code = 502
    error_code = "TRANSCRIPT_FETCH_FAILED"
    public_message = "Failed to fetch transcript from provider"


class StoreUnavailable(TranscriptionError):
    """The record store timed out or could not be reached. Safe to retry."""

    status_code = 503
    error_code = "STORE_UNAVAILABLE"
    public_message = "Record store unavailable"


class InternalError(TranscriptionError):
    status_code = 500
    error_code = "INTERNAL_ERROR"
    public_message = "Internal server error"


def _error_response(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, "code": code})


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(TranscriptionError)
    async def handle_transcription_error(
        request: Request, exc: TranscriptionError
    ) -> JSONResponse:
        log = logger.error if exc.status_code >= 500 else logger.warning
        log(
            "request.failed path=%s code=%s error=%s %s",
            request.url.path,
            exc.error_code,
            str(exc),
            format_fields(exc.context),
            exc_info=exc if exc.status_code >= 500 else None,
        )
        return _error_response(exc.status_code, exc.client_message, exc.error_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        logger.warning(
            "request.invalid path=%s errors=%s", request.url.path, exc.errors()
        )
        in_query = any(error["loc"] and error["loc"][0] == "query" for error in exc.errors())
        message = "Invalid query parameters" if in_query else "Invalid request body"
        return _error_response(InvalidPayload.status_code, message, InvalidPayload.error_code)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("request.crashed path=%s error=%s", request.url.path, str(exc))
        return _error_response(
            InternalError.status_code,
            InternalError.public_message,
            InternalError.error_code,
        )
