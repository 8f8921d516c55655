"""Exception handlers rendering failures as vendor error bodies."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from askgate.core.errors import AskGateError, MalformedRequest

log = logging.getLogger(__name__)


def _describe(errors: list[dict]) -> str:
    parts = []
    for err in errors[:5]:
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        parts.append(f"{loc}: {err.get('msg')}" if loc else str(err.get("msg")))
    return "; ".join(parts) or "invalid request"


async def askgate_error_handler(request: Request, exc: AskGateError) -> JSONResponse:
    log.warning(
        "request.failed",
        extra={
            "request_id": getattr(request.state, "request_id", None),
            "status": exc.status_code,
            "error_type": exc.error_type,
            "error": exc.message,
        },
    )
    return JSONResponse(status_code=exc.status_code, content=exc.as_body())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    error = MalformedRequest(_describe(list(exc.errors())))
    return JSONResponse(status_code=error.status_code, content=error.as_body())


def install_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AskGateError, askgate_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
