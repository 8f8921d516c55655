from __future__ import annotations

import logging
import re
import time
import uuid
from typing import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from askgate.core.config import get_settings
from askgate.core.logging import LogContext, with_context

log = logging.getLogger(__name__)

# Header the vendor API uses for its own request ids; clients log it on failures.
VENDOR_REQUEST_ID_HEADER = "request-id"

_CLIENT_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def _request_id(incoming: str | None) -> str:
    if incoming and _CLIENT_REQUEST_ID.match(incoming):
        return incoming
    return f"req_{uuid.uuid4().hex}"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Assigns a request id, echoes it back and writes one access log line per request.

    Client-supplied ids are kept only when they are short and header/log safe.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        header_name = get_settings().askgate_request_id_header
        request_id = _request_id(request.headers.get(header_name))
        request.state.request_id = request_id

        started = time.perf_counter()
        response = await call_next(request)
        # For streamed responses this is time to first byte.
        elapsed_ms = int((time.perf_counter() - started) * 1000)

        response.headers[header_name] = request_id
        response.headers[VENDOR_REQUEST_ID_HEADER] = request_id
        response.headers["X-Response-Time-Ms"] = str(elapsed_ms)
        with_context(log, LogContext(request_id=request_id)).info(
            "http.request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": elapsed_ms,
            },
        )
        return response
