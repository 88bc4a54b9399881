from __future__ import annotations

import secrets
import uuid
from collections.abc import Callable
from typing import Final

from fastapi import Header
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from .config import Settings
from .errors import ErrorCode, app_error
from .request_context import request_id_var

_RID_HEADER: Final[str] = "X-Request-ID"
_RID_MAX_LEN: Final[int] = 128


def _incoming_request_id(request: Request) -> str:
    supplied = (request.headers.get(_RID_HEADER) or "").strip()
    if supplied and len(supplied) <= _RID_MAX_LEN and supplied.isprintable():
        return supplied
    return uuid.uuid4().hex


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Binds a correlation id to ``request_id_var`` and echoes it back."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        rid = _incoming_request_id(request)
        token = request_id_var.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)
        response.headers[_RID_HEADER] = rid
        return response


def api_key_dependency(settings: Settings) -> Callable[[str | None], None]:
    """Build the ``X-API-Key`` check for classify routes; open when no key is set."""
    expected = settings.security.api_key.strip()

    def _verify(x_api_key: str | None = Header(default=None)) -> None:
        if not expected:
            return
        if x_api_key is not None and secrets.compare_digest(x_api_key.encode(), expected.encode()):
            return
        raise app_error(ErrorCode.unauthorized)

    return _verify
