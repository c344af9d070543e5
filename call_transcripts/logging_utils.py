from __future__ import annotations

import contextvars
import logging
from typing import Any, Awaitable, Callable, Optional
from uuid import uuid4

from fastapi import Request, Response

REQUEST_ID_HEADER = "X-Request-ID"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [req=%(request_id)s] %(message)s"

_request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar(
    "request_id", default="-"
)
_configured = False


class RequestIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "request_id"):
            record.request_id = _request_id_var.get("-")
        return True


def configure_logging(level: str = "INFO") -> None:
    global _configured
    root = logging.getLogger()
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    if not _configured:
        if not root.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root.addHandler(handler)
        for handler in root.handlers:
            handler.addFilter(RequestIdFilter())
        _configured = True

    root.setLevel(numeric_level)


def set_request_id(request_id: str) -> contextvars.Token[str]:
    return _request_id_var.set(request_id)


def reset_request_id(token: contextvars.Token[str]) -> None:
    _request_id_var.reset(token)


def get_request_id() -> str:
    return _request_id_var.get("-")


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)


def format_fields(fields: dict[str, Any]) -> str:
    """Render context as ``key=value`` pairs in a stable order."""
    return " ".join(f"{key}={fields[key]}" for key in sorted(fields))


async def request_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Reuse the caller's X-Request-ID or mint one, and echo it back."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
    token = set_request_id(request_id)
    try:
        response = await call_next(request)
    finally:
        reset_request_id(token)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response
