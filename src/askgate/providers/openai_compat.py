from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from typing import Any
from uuid import uuid4

import httpx

from askgate.core.errors import ProviderError, ProviderErrorKind
from askgate.domain.conversation import (
    AskOptions,
    ConversationContext,
    ImageBlock,
    Role,
    TextBlock,
    ThinkingBlock,
    ToolInvocationBlock,
    ToolResultBlock,
    Turn,
)
from askgate.domain.events import (
    AskResult,
    BlockDelta,
    BlockEnd,
    BlockKind,
    BlockStart,
    Finish,
    ProviderEvent,
    ResultBlock,
    StopReason,
    Usage,
)
from askgate.domain.models import ProviderId
from askgate.providers.base import ProviderAdapter
from askgate.schema.converter import SchemaConverter

log = logging.getLogger(__name__)

_STOP_REASONS: dict[str, StopReason] = {
    "stop": StopReason.END,
    "length": StopReason.LENGTH,
    "tool_calls": StopReason.TOOL_USE,
    "function_call": StopReason.TOOL_USE,
    "content_filter": StopReason.FILTERED,
}


def _safe_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _stop_reason(value: Any) -> StopReason:
    return _STOP_REASONS.get(_safe_text(value), StopReason.END)


def _finish_reason(choice: dict[str, Any], stop_sequences: tuple[str, ...]) -> tuple[StopReason, str | None]:
    # vLLM reports the matched stop string as `stop_reason`, SGLang as `matched_stop`
    reason = _stop_reason(choice.get("finish_reason"))
    if reason is StopReason.END and stop_sequences:
        matched = choice.get("stop_reason") or choice.get("matched_stop")
        if isinstance(matched, str) and matched in stop_sequences:
            return StopReason.STOP_SEQUENCE, matched
    return reason, None


def _usage(data: Any) -> Usage:
    if not isinstance(data, dict):
        return Usage()
    return Usage(
        input_tokens=int(data.get("prompt_tokens") or 0),
        output_tokens=int(data.get("completion_tokens") or 0),
    )


def _tool_id() -> str:
    return f"toolu_{uuid4().hex[:24]}"


def _data_url(block: ImageBlock) -> str:
    if block.source_type == "url":
        return block.data
    return f"data:{block.media_type or 'image/png'};base64,{block.data}"


def _status_error(provider: ProviderId, status: int, detail: str) -> ProviderError:
    if status in (401, 403):
        kind = ProviderErrorKind.AUTH
    elif status == 429:
        kind = ProviderErrorKind.RATE_LIMIT
    elif status in (408, 504):
        kind = ProviderErrorKind.TIMEOUT
    elif status in (503, 529):
        kind = ProviderErrorKind.OVERLOADED
    else:
        kind = ProviderErrorKind.UNAVAILABLE
    if len(detail) > 500:
        detail = detail[:500] + "…"
    return ProviderError(kind, f"{provider.value} returned {status}: {detail}")


class _StreamAssembler:
    """Folds chat-completion chunks into canonical block events.

    Only one unit is open at a time. A change of unit kind (or a new tool call)
    closes the current one first. Text or reasoning that arrives while a tool
    call is still receiving arguments is held back and emitted once that call
    closes, so a tool call's arguments always stay in one block.
    """

    def __init__(self, stop_sequences: tuple[str, ...] = ()) -> None:
        self._stop_sequences = stop_sequences
        self._open: BlockKind | None = None
        self._tool_index: int | None = None
        self._tool_id: str | None = None
        self._started_tools: dict[int, str] = {}
        self._held: list[tuple[BlockKind, str]] = []
        self._stop: StopReason | None = None
        self._stop_sequence: str | None = None
        self._usage = Usage()

    def feed(self, chunk: dict[str, Any]) -> list[ProviderEvent]:
        out: list[ProviderEvent] = []
        if chunk.get("usage"):
            self._usage = _usage(chunk["usage"])
        for choice in chunk.get("choices") or []:
            if choice.get("index", 0) != 0:
                continue
            delta = choice.get("delta") or {}
            reasoning = delta.get("reasoning_content") or delta.get("reasoning")
            if reasoning:
                out.extend(self._text(BlockKind.THINKING, _safe_text(reasoning)))
            content = delta.get("content")
            if content:
                out.extend(self._text(BlockKind.TEXT, _safe_text(content)))
            for call in delta.get("tool_calls") or []:
                out.extend(self._tool_call(call))
            if choice.get("finish_reason"):
                self._stop, self._stop_sequence = _finish_reason(choice, self._stop_sequences)
                out.extend(self._close_all())
        return out

    def finish(self) -> list[ProviderEvent]:
        if self._stop is None:
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, "provider stream ended without a finish reason")
        out = self._close_all()
        out.append(Finish(stop_reason=self._stop, usage=self._usage, stop_sequence=self._stop_sequence))
        return out

    def _text(self, kind: BlockKind, text: str) -> list[ProviderEvent]:
        if self._open is BlockKind.TOOL_CALL:
            self._held.append((kind, text))
            return []
        out = self._switch(kind)
        out.append(BlockDelta(text))
        return out

    def _switch(self, kind: BlockKind) -> list[ProviderEvent]:
        if self._open is kind:
            return []
        out = self._close_all()
        self._open = kind
        out.append(BlockStart(kind))
        return out

    def _tool_call(self, call: dict[str, Any]) -> list[ProviderEvent]:
        out: list[ProviderEvent] = []
        index = call.get("index", 0)
        call_id = call.get("id") or None
        fn = call.get("function") or {}
        continues_open = (
            self._open is BlockKind.TOOL_CALL
            and index == self._tool_index
            and (call_id is None or call_id == self._tool_id)
        )
        if not continues_open:
            if index in self._started_tools and call_id in (None, self._started_tools[index]):
                raise ProviderError(
                    ProviderErrorKind.BAD_RESPONSE, f"arguments for tool call {index} arrived after it was closed"
                )
            name = _safe_text(fn.get("name"))
            if not name:
                raise ProviderError(ProviderErrorKind.BAD_RESPONSE, f"tool call {index} started without a name")
            out.extend(self._close_all())
            self._open = BlockKind.TOOL_CALL
            self._tool_index = index
            self._tool_id = call_id or _tool_id()
            self._started_tools[index] = self._tool_id
            out.append(BlockStart(BlockKind.TOOL_CALL, tool_call_id=self._tool_id, tool_name=name))
        arguments = fn.get("arguments")
        if arguments:
            out.append(BlockDelta(_safe_text(arguments)))
        return out

    def _close(self) -> list[ProviderEvent]:
        if self._open is None:
            return []
        closing_tool = self._open is BlockKind.TOOL_CALL
        self._open = None
        self._tool_index = None
        self._tool_id = None
        out: list[ProviderEvent] = [BlockEnd()]
        if closing_tool and self._held:
            held, self._held = self._held, []
            for kind, text in held:
                out.extend(self._text(kind, text))
        return out

    def _close_all(self) -> list[ProviderEvent]:
        out: list[ProviderEvent] = []
        while self._open is not None:
            out.extend(self._close())
        return out


class OpenAICompatibleAdapter(ProviderAdapter):
    """Provider abstraction over an OpenAI-compatible ``/chat/completions`` endpoint."""

    def __init__(self, *, provider: ProviderId, client: httpx.AsyncClient, converter: SchemaConverter):
        self.provider = provider
        self._client = client
        self._converter = converter

    def _user_messages(self, turn: Turn) -> list[dict[str, Any]]:
        # Tool results must directly follow the assistant message that issued
        # the calls, so they go out before the turn's own text and images.
        tool_messages: list[dict[str, Any]] = []
        parts: list[dict[str, Any]] = []
        for block in turn.blocks:
            if isinstance(block, TextBlock):
                parts.append({"type": "text", "text": block.text})
            elif isinstance(block, ImageBlock):
                parts.append({"type": "image_url", "image_url": {"url": _data_url(block)}})
            elif isinstance(block, ToolResultBlock):
                if isinstance(block.content, str):
                    text = block.content
                else:
                    text = "\n".join(p.text for p in block.content if isinstance(p, TextBlock))
                    parts.extend(
                        {"type": "image_url", "image_url": {"url": _data_url(p)}}
                        for p in block.content
                        if isinstance(p, ImageBlock)
                    )
                tool_messages.append({"role": "tool", "tool_call_id": block.tool_call_id, "content": text})
        if parts:
            tool_messages.append({"role": "user", "content": parts})
        return tool_messages

    def _messages(self, context: ConversationContext) -> list[dict[str, Any]]:
        out: list[dict[str, Any]] = []
        for turn in context.turns:
            if turn.role is Role.SYSTEM:
                text = "\n\n".join(b.text for b in turn.blocks if isinstance(b, TextBlock))
                out.append({"role": "system", "content": text})
            elif turn.role is Role.ASSISTANT:
                text = "".join(b.text for b in turn.blocks if isinstance(b, TextBlock))
                calls = [
                    {
                        "id": b.id,
                        "type": "function",
                        "function": {"name": b.name, "arguments": json.dumps(dict(b.arguments), ensure_ascii=False)},
                    }
                    for b in turn.blocks
                    if isinstance(b, ToolInvocationBlock)
                ]
                if not text and not calls:
                    continue
                message: dict[str, Any] = {"role": "assistant", "content": text or None}
                if calls:
                    message["tool_calls"] = calls
                out.append(message)
            else:
                out.extend(self._user_messages(turn))
        return out

    def _payload(self, context: ConversationContext, options: AskOptions, *, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": options.model,
            "messages": self._messages(context),
        }
        if options.max_output_tokens is not None:
            payload["max_tokens"] = options.max_output_tokens
        if options.temperature is not None:
            payload["temperature"] = options.temperature
        if options.top_p is not None:
            payload["top_p"] = options.top_p
        if options.stop_sequences:
            payload["stop"] = list(options.stop_sequences)

        if context.tools:
            payload["tools"] = [
                {
                    "type": "function",
                    "function": {
                        "name": tool.name,
                        "description": tool.description or "",
                        "parameters": self._converter.to_external(tool.native),
                    },
                }
                for tool in context.tools
            ]
            choice = context.tool_choice
            if choice is not None:
                if choice.mode == "tool":
                    payload["tool_choice"] = {"type": "function", "function": {"name": choice.name}}
                else:
                    payload["tool_choice"] = {"auto": "auto", "any": "required", "none": "none"}[choice.mode]

        payload.update(options.thinking_option.params())
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def ask(self, context: ConversationContext, options: AskOptions) -> AskResult:
        payload = self._payload(context, options, stream=False)
        try:
            resp = await self._client.post("/chat/completions", json=payload)
        except httpx.TimeoutException as e:
            log.exception("%s chat completion timed out: %s", self.provider.value, e)
            raise ProviderError(ProviderErrorKind.TIMEOUT, f"{self.provider.value} chat completion timed out") from e
        except httpx.HTTPError as e:
            log.exception("%s chat completion failed: %s", self.provider.value, e)
            raise ProviderError(
                ProviderErrorKind.TRANSPORT, f"{self.provider.value} chat completion request failed"
            ) from e

        if resp.status_code >= 400:
            raise _status_error(self.provider, resp.status_code, _safe_text(resp.text))

        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(ProviderErrorKind.BAD_RESPONSE, f"{self.provider.value} returned invalid JSON") from e

        choices = data.get("choices") or []
        if not choices:
            raise ProviderError(
                ProviderErrorKind.BAD_RESPONSE,
                f"{self.provider.value} returned no choices: {json.dumps(data)[:500]}",
            )
        message = choices[0].get("message") or {}

        blocks: list[ResultBlock] = []
        reasoning = message.get("reasoning_content") or message.get("reasoning")
        if reasoning:
            blocks.append(ThinkingBlock(text=_safe_text(reasoning)))
        if message.get("content"):
            blocks.append(TextBlock(_safe_text(message["content"])))
        for call in message.get("tool_calls") or []:
            fn = call.get("function") or {}
            raw = fn.get("arguments") or "{}"
            try:
                arguments = json.loads(raw)
            except json.JSONDecodeError as e:
                raise ProviderError(
                    ProviderErrorKind.BAD_RESPONSE,
                    f"{self.provider.value} returned malformed tool arguments for '{fn.get('name')}'",
                ) from e
            if not isinstance(arguments, dict):
                raise ProviderError(
                    ProviderErrorKind.BAD_RESPONSE,
                    f"{self.provider.value} returned non-object tool arguments for '{fn.get('name')}'",
                )
            blocks.append(
                ToolInvocationBlock(id=call.get("id") or _tool_id(), name=_safe_text(fn.get("name")), arguments=arguments)
            )

        stop_reason, stop_sequence = _finish_reason(choices[0], options.stop_sequences)
        return AskResult(
            blocks=tuple(blocks),
            stop_reason=stop_reason,
            stop_sequence=stop_sequence,
            usage=_usage(data.get("usage")),
        )

    async def ask_stream(self, context: ConversationContext, options: AskOptions) -> AsyncIterator[ProviderEvent]:
        payload = self._payload(context, options, stream=True)
        assembler = _StreamAssembler(options.stop_sequences)
        try:
            async with self._client.stream("POST", "/chat/completions", json=payload) as resp:
                if resp.status_code >= 400:
                    body = await resp.aread()
                    raise _status_error(self.provider, resp.status_code, body.decode("utf-8", errors="replace"))

                async for line in resp.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data_part = line[5:].strip()
                    if data_part == "[DONE]":
                        break
                    try:
                        obj = json.loads(data_part)
                    except json.JSONDecodeError as e:
                        raise ProviderError(
                            ProviderErrorKind.BAD_RESPONSE, f"{self.provider.value} sent an undecodable chunk"
                        ) from e
                    if obj.get("error"):
                        error = obj["error"]
                        message = error.get("message") if isinstance(error, dict) else error
                        raise ProviderError(ProviderErrorKind.UNAVAILABLE, f"{self.provider.value}: {_safe_text(message)}")
                    for event in assembler.feed(obj):
                        yield event
        except httpx.TimeoutException as e:
            log.exception("%s streaming timed out: %s", self.provider.value, e)
            raise ProviderError(ProviderErrorKind.TIMEOUT, f"{self.provider.value} streaming timed out") from e
        except httpx.HTTPError as e:
            log.exception("%s streaming failed: %s", self.provider.value, e)
            raise ProviderError(ProviderErrorKind.TRANSPORT, f"{self.provider.value} streaming request failed") from e

        for event in assembler.finish():
            yield event
