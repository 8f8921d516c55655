from __future__ import annotations

import logging
import time
from contextlib import aclosing

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import StreamingResponse

from askgate.core.auth import AuthContext, get_auth_context
from askgate.core.deps import get_session_coordinator
from askgate.core.errors import AskGateError
from askgate.core.logging import LogContext, with_context
from askgate.core.metrics import askgate_request_duration_seconds, askgate_requests_total
from askgate.domain.messages import MessagesRequest, MessagesResponse, TokenCountResponse
from askgate.session.coordinator import SessionCoordinator

router = APIRouter()
log = logging.getLogger(__name__)

WARNINGS_HEADER = "X-Askgate-Warnings"


def _observe(*, provider: str, model: str, stream: bool, status: int, started: float) -> None:
    askgate_requests_total.labels(provider=provider, model=model, stream=str(stream).lower(), status=str(status)).inc()
    askgate_request_duration_seconds.labels(provider=provider, model=model, stream=str(stream).lower()).observe(
        time.perf_counter() - started
    )


@router.post("/messages", response_model=MessagesResponse)
async def create_message(
    request: Request,
    response: Response,
    body: MessagesRequest,
    auth: AuthContext = Depends(get_auth_context),
    coordinator: SessionCoordinator = Depends(get_session_coordinator),
):
    request_id = getattr(request.state, "request_id", None)
    logger = with_context(log, LogContext(request_id=request_id, model=body.model))
    started = time.perf_counter()

    try:
        prepared = coordinator.prepare(body, logger)
    except AskGateError as e:
        _observe(provider="unknown", model=body.model, stream=body.stream, status=e.status_code, started=started)
        raise

    provider = prepared.profile.provider.value
    model = prepared.profile.id
    logger = with_context(
        log,
        LogContext(request_id=request_id, provider=provider, model=model, message_id=prepared.message_id),
    )
    headers: dict[str, str] = {}
    if prepared.warnings:
        headers[WARNINGS_HEADER] = ",".join(w.kind.value for w in prepared.warnings)

    logger.info(
        "messages.request",
        extra={
            "stream": body.stream,
            "tools": len(prepared.context.tools),
            "max_tokens": prepared.options.max_output_tokens,
            "warnings": [w.kind.value for w in prepared.warnings],
        },
    )

    if body.stream:
        session = coordinator.open_stream(prepared, logger)

        async def stream_gen():
            try:
                async with aclosing(session.stream()) as events:
                    async for chunk in events:
                        yield chunk
            finally:
                status_code = session.status_code or 499
                latency_ms = int((time.perf_counter() - started) * 1000)
                logger.info(
                    "messages.stream.done",
                    extra={"status": status_code, "outcome": session.outcome, "latency_ms": latency_ms},
                )
                _observe(provider=provider, model=model, stream=True, status=status_code, started=started)

        return StreamingResponse(
            stream_gen(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no", **headers},
        )

    status_code = 200
    try:
        result = await coordinator.complete(prepared, logger)
        response.headers.update(headers)
        return result
    except AskGateError as e:
        status_code = e.status_code
        raise
    finally:
        latency_ms = int((time.perf_counter() - started) * 1000)
        logger.info("messages.done", extra={"status": status_code, "latency_ms": latency_ms})
        _observe(provider=provider, model=model, stream=False, status=status_code, started=started)


@router.post("/messages/count_tokens", response_model=TokenCountResponse)
async def count_tokens(
    body: MessagesRequest,
    auth: AuthContext = Depends(get_auth_context),
    coordinator: SessionCoordinator = Depends(get_session_coordinator),
) -> TokenCountResponse:
    return TokenCountResponse(input_tokens=coordinator.count_tokens(body))
