"""Per-request orchestration: capability checks, translation and provider dispatch.

``SessionCoordinator`` is built from explicitly injected collaborators (capability
registry, schema converter, provider registry) and holds no request state.
Each streaming request gets its own ``StreamingSession``: one producer task
drives the provider's event stream into a queue, and the session is the only
consumer, so vendor events are written in provider order by a single writer.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, replace
from typing import Any
from uuid import uuid4

from askgate.capabilities.registry import CapabilityRegistry
from askgate.capabilities.resolver import CapabilityResolver
from askgate.core.config import Settings
from askgate.core.errors import (
    AskGateError,
    CapabilityMismatch,
    ProtocolViolation,
    ProviderError,
    gateway_timeout,
)
from askgate.core.metrics import (
    askgate_capability_warnings_total,
    askgate_stream_aborts_total,
    askgate_tool_schema_rejections_total,
)
from askgate.domain.conversation import AskOptions, ConversationContext, ToolInvocationBlock
from askgate.domain.events import AskResult
from askgate.domain.messages import MessagesRequest, MessagesResponse
from askgate.domain.models import CapabilityProfile, CapabilityWarning, WarningKind
from askgate.providers.base import ProviderAdapter
from askgate.providers.registry import ProviderRegistry
from askgate.providers.thinking import resolve_thinking_option, thinking_warning
from askgate.schema.converter import SchemaConverter
from askgate.translate.request import RejectedTool, RequestTransformer, estimate_input_tokens
from askgate.translate.response import build_response
from askgate.translate.streaming import StreamTranslator, VendorEvent

log = logging.getLogger(__name__)

# nginx convention for "client closed request"
CLIENT_CLOSED_STATUS = 499

# provider events buffered ahead of a slow client before the provider read pauses
STREAM_BUFFER_SIZE = 16


@dataclass(frozen=True)
class SessionPolicy:
    reject_unsupported_tools: bool = False
    strict_tool_schemas: bool = False
    ping_interval_seconds: float = 10.0
    request_timeout_seconds: float = 600.0
    model_override: str | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> SessionPolicy:
        return cls(
            reject_unsupported_tools=settings.askgate_reject_unsupported_tools,
            strict_tool_schemas=settings.askgate_strict_tool_schemas,
            ping_interval_seconds=settings.askgate_ping_interval_seconds,
            request_timeout_seconds=settings.askgate_request_timeout_seconds,
            model_override=settings.askgate_model_override,
        )


@dataclass(frozen=True)
class PreparedRequest:
    message_id: str
    profile: CapabilityProfile
    context: ConversationContext
    options: AskOptions
    warnings: tuple[CapabilityWarning, ...]
    rejected_tools: tuple[RejectedTool, ...]
    input_tokens: int


class SessionCoordinator:
    def __init__(
        self,
        registry: CapabilityRegistry,
        converter: SchemaConverter,
        providers: ProviderRegistry,
        policy: SessionPolicy | None = None,
    ) -> None:
        self._policy = policy or SessionPolicy()
        self._resolver = CapabilityResolver(registry)
        self._transformer = RequestTransformer(converter, strict_tool_schemas=self._policy.strict_tool_schemas)
        self._providers = providers

    def prepare(self, request: MessagesRequest, logger: logging.LoggerAdapter | logging.Logger = log) -> PreparedRequest:
        """Run every request-level check before any provider call.

        Raises ``ModelNotFound``, ``MalformedRequest``, ``CapabilityMismatch`` or a
        not-configured ``ProviderError``; nothing is streamed when it raises.
        """
        profile = self._resolver.resolve(self._policy.model_override or request.model)
        self._providers.get(profile.provider)

        transformed = self._transformer.transform(request, model=profile.id)
        for rejected in transformed.rejected_tools:
            askgate_tool_schema_rejections_total.inc()
            logger.warning(
                "tool.schema_rejected",
                extra={"tool": rejected.name, "reason": rejected.error.reason, "path": rejected.error.path},
            )

        warnings = self._resolver.validate(
            transformed.options,
            profile,
            has_tools=transformed.has_tools,
            has_images=transformed.has_images,
        )
        if self._policy.reject_unsupported_tools and any(w.kind is WarningKind.TOOLS_UNSUPPORTED for w in warnings):
            raise CapabilityMismatch(f"model '{profile.id}' does not support tool use")

        requested = transformed.options.thinking_requested
        option = resolve_thinking_option(profile.provider, requested)
        unsupported = thinking_warning(profile, requested, option)
        if unsupported is not None:
            warnings.append(unsupported)

        for warning in warnings:
            askgate_capability_warnings_total.labels(kind=warning.kind.value).inc()
            logger.warning("capability.warning", extra=warning.as_log_extra())

        options = replace(self._resolver.effective_options(transformed.options, profile), thinking_option=option)
        return PreparedRequest(
            message_id=f"msg_{uuid4().hex}",
            profile=profile,
            context=transformed.context,
            options=options,
            warnings=tuple(warnings),
            rejected_tools=transformed.rejected_tools,
            input_tokens=estimate_input_tokens(transformed.context),
        )

    def count_tokens(self, request: MessagesRequest) -> int:
        profile = self._resolver.resolve(self._policy.model_override or request.model)
        transformed = self._transformer.transform(request, model=profile.id)
        return estimate_input_tokens(transformed.context)

    async def complete(
        self, prepared: PreparedRequest, logger: logging.LoggerAdapter | logging.Logger = log
    ) -> MessagesResponse:
        adapter = self._providers.get(prepared.profile.provider)
        timeout = self._policy.request_timeout_seconds
        try:
            result = await asyncio.wait_for(adapter.ask(prepared.context, prepared.options), timeout=timeout)
        except asyncio.TimeoutError:
            raise gateway_timeout(f"request timed out after {timeout:g}s") from None

        _check_tool_arguments(prepared, result, logger)
        return build_response(
            result,
            message_id=prepared.message_id,
            model=prepared.profile.id,
            input_tokens=prepared.input_tokens,
        )

    def open_stream(
        self, prepared: PreparedRequest, logger: logging.LoggerAdapter | logging.Logger = log
    ) -> StreamingSession:
        return StreamingSession(
            adapter=self._providers.get(prepared.profile.provider),
            prepared=prepared,
            ping_interval=self._policy.ping_interval_seconds,
            timeout=self._policy.request_timeout_seconds,
            logger=logger,
        )


def _check_tool_arguments(
    prepared: PreparedRequest, result: AskResult, logger: logging.LoggerAdapter | logging.Logger
) -> None:
    """Log tool calls whose arguments do not match the declared schema. Arguments are never rewritten."""
    tools = {tool.name: tool for tool in prepared.context.tools}
    for block in result.blocks:
        if not isinstance(block, ToolInvocationBlock):
            continue
        tool = tools.get(block.name)
        if tool is None:
            logger.warning("tool.unknown_call", extra={"tool": block.name, "tool_call_id": block.id})
            continue
        error = tool.validate_arguments(block.arguments)
        if error is not None:
            logger.warning(
                "tool.arguments_mismatch",
                extra={"tool": block.name, "tool_call_id": block.id, "errors": error.error_count()},
            )


_END = object()
_WAKEUP = object()


@dataclass(frozen=True)
class _Failure:
    error: Exception


class StreamingSession:
    """One in-flight streaming request.

    ``stream()`` yields encoded vendor events. ``cancel(reason)`` may be called
    from any task on the same loop; the stream then closes any open block and
    ends with an error event. If the consumer itself stops early (client
    disconnect), the provider task is cancelled and nothing more is written.
    At most ``STREAM_BUFFER_SIZE`` provider events wait for a slow client; past
    that the provider task stops reading until the client catches up.
    """

    def __init__(
        self,
        *,
        adapter: ProviderAdapter,
        prepared: PreparedRequest,
        ping_interval: float,
        timeout: float,
        logger: logging.LoggerAdapter | logging.Logger = log,
    ) -> None:
        self._adapter = adapter
        self._prepared = prepared
        self._ping_interval = ping_interval
        self._timeout = timeout
        self._log = logger
        self._queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=STREAM_BUFFER_SIZE)
        self._cancelled_event = asyncio.Event()
        self._producer: asyncio.Task[None] | None = None
        self._cancel_reason: str | None = None
        self.translator = StreamTranslator(
            message_id=prepared.message_id,
            model=prepared.profile.id,
            input_tokens=prepared.input_tokens,
        )
        self.outcome: str | None = None
        self.status_code: int | None = None

    def cancel(self, reason: str = "cancelled") -> None:
        if self._cancel_reason is not None or self.translator.terminal:
            return
        self._cancel_reason = reason
        self._cancelled_event.set()
        if self._producer is not None:
            self._producer.cancel()

    async def _produce(self) -> None:
        try:
            async with aclosing(self._adapter.ask_stream(self._prepared.context, self._prepared.options)) as events:
                async for event in events:
                    await self._queue.put(event)
        except Exception as e:
            await self._queue.put(_Failure(e))
        else:
            await self._queue.put(_END)

    async def _next(self, timeout: float) -> Any:
        """Next queued item, ``_WAKEUP`` once cancelled, ``asyncio.TimeoutError`` when idle."""
        get = asyncio.ensure_future(self._queue.get())
        wake = asyncio.ensure_future(self._cancelled_event.wait())
        try:
            done, _ = await asyncio.wait({get, wake}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (get, wake):
                if not task.done():
                    task.cancel()
        if get in done:
            return get.result()
        if wake in done:
            return _WAKEUP
        raise asyncio.TimeoutError

    async def stream(self) -> AsyncIterator[bytes]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        if self._cancel_reason is None:
            self._producer = asyncio.create_task(self._produce())
        try:
            while True:
                if self._cancel_reason is not None:
                    for event in self._cancelled(self._cancel_reason):
                        yield event.encode()
                    return

                remaining = deadline - loop.time()
                if remaining <= 0:
                    self.cancel("timeout")
                    continue
                try:
                    item = await self._next(min(self._ping_interval, remaining))
                except asyncio.TimeoutError:
                    if loop.time() >= deadline:
                        self.cancel("timeout")
                    else:
                        for event in self.translator.keepalive():
                            yield event.encode()
                    continue

                if item is _WAKEUP:
                    continue
                if isinstance(item, _Failure):
                    for event in self._failed(item.error):
                        yield event.encode()
                    return

                try:
                    if item is _END:
                        raise ProtocolViolation("provider stream ended without a finish event")
                    events = self.translator.feed(item)
                except ProtocolViolation as e:
                    self._log.exception("stream.protocol_violation", extra={"state": self.translator.state.value})
                    for event in self._abort("protocol_violation", 500, e.error_type, e.message):
                        yield event.encode()
                    return

                for event in events:
                    yield event.encode()
                if self.translator.terminal:
                    self.outcome = "completed"
                    self.status_code = 200
                    return
        finally:
            await self._release()

    def _cancelled(self, reason: str) -> list[VendorEvent]:
        if reason == "timeout":
            return self._abort("timeout", 504, "timeout_error", f"request timed out after {self._timeout:g}s")
        return self._abort(reason, CLIENT_CLOSED_STATUS, "api_error", "request was cancelled")

    def _failed(self, error: Exception) -> list[VendorEvent]:
        if isinstance(error, AskGateError):
            reason = error.kind.value if isinstance(error, ProviderError) else "error"
            return self._abort(reason, error.status_code, error.error_type, error.message)
        self._log.error("stream.provider_failed", exc_info=error)
        return self._abort("internal", 500, "api_error", "provider stream failed")

    def _abort(self, reason: str, status_code: int, error_type: str, message: str) -> list[VendorEvent]:
        events = self.translator.abort(error_type, message)
        if events:
            self.outcome = reason
            self.status_code = status_code
            askgate_stream_aborts_total.labels(reason=reason).inc()
            self._log.warning(
                "stream.aborted",
                extra={"reason": reason, "error_type": error_type, "error": message},
            )
        return events

    async def _release(self) -> None:
        if not self.translator.terminal:
            # The consumer went away mid-stream; close the framing even though nobody reads it.
            self._abort("client_disconnected", CLIENT_CLOSED_STATUS, "api_error", "client disconnected")
        if self._producer is not None:
            self._producer.cancel()
            await asyncio.gather(self._producer, return_exceptions=True)
