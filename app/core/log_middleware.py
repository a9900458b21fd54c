"""
Log context for HTTP requests and talk WebSocket connections.

Every log entry emitted while a request is served carries request_id,
correlation_id and, when the caller presented a valid access token,
user_id. A talk connection binds session_id (its connection id),
correlation_id and user_id for its whole lifetime.
"""
from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from app.auth.access_tokens import decode_access_token, get_bearer_token
from app.core.structured_logging import (
    correlation_id_var,
    request_id_var,
    session_id_var,
    user_id_var,
)

logger = logging.getLogger(__name__)

# Logged at DEBUG
_QUIET_PATHS = {"/api/health"}


def _token_user_id(request: Request) -> Optional[str]:
    """User id from a valid bearer token, or None. Never raises."""
    token = get_bearer_token(request)
    if not token:
        return None
    claims = decode_access_token(token)
    return claims["uid"] if claims else None


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Bind request_id / correlation_id / user_id for every HTTP request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        corr_id = request.headers.get("x-correlation-id") or uuid.uuid4().hex
        user_id = _token_user_id(request)

        rid_token = request_id_var.set(req_id)
        cid_token = correlation_id_var.set(corr_id)
        uid_token = user_id_var.set(user_id)

        start = time.perf_counter()
        status_code = None
        try:
            response = await call_next(request)
            status_code = response.status_code
        finally:
            level = logging.DEBUG if request.url.path in _QUIET_PATHS else logging.INFO
            logger.log(
                level,
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path": request.url.path,
                    "http.status_code": status_code,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                },
            )
            user_id_var.reset(uid_token)
            correlation_id_var.reset(cid_token)
            request_id_var.reset(rid_token)

        response.headers["x-request-id"] = req_id
        response.headers["x-correlation-id"] = corr_id
        return response


@contextmanager
def talk_connection_context(user_id: str) -> Iterator[str]:
    """Bind log context for one talk WebSocket; yields the connection id.

    Usage::

        with talk_connection_context(user.user_id) as connection_id:
            ...
    """
    connection_id = uuid.uuid4().hex
    sid_token = session_id_var.set(connection_id)
    cid_token = correlation_id_var.set(uuid.uuid4().hex)
    uid_token = user_id_var.set(user_id)
    try:
        yield connection_id
    finally:
        user_id_var.reset(uid_token)
        correlation_id_var.reset(cid_token)
        session_id_var.reset(sid_token)
