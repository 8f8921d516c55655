from __future__ import annotations

import json

import httpx
import pytest

from askgate.core.errors import ProviderError, ProviderErrorKind
from askgate.domain.conversation import (
    AskOptions,
    ConversationContext,
    ImageBlock,
    Role,
    TextBlock,
    ThinkingBlock,
    ToolChoice,
    ToolInvocationBlock,
    ToolResultBlock,
    ToolSchemaPair,
    Turn,
)
from askgate.domain.events import BlockDelta, BlockEnd, BlockKind, BlockStart, Finish, StopReason, Usage
from askgate.domain.models import EnableThinking, IncludeReasoning, NoThinking, ProviderId
from askgate.providers.openai_compat import OpenAICompatibleAdapter
from askgate.schema.converter import SchemaConverter
from askgate.translate.response import build_response
from askgate.translate.streaming import StreamTranslator

BASE_URL = "https://dashscope-intl.aliyuncs.com/compatible-mode/v1"
WEATHER_SCHEMA = {
    "type": "object",
    "properties": {"city": {"type": "string", "description": "City name"}},
    "required": ["city"],
}


def _adapter(client: httpx.AsyncClient, provider: ProviderId = ProviderId.QWEN) -> OpenAICompatibleAdapter:
    return OpenAICompatibleAdapter(provider=provider, client=client, converter=SchemaConverter())


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        base_url=BASE_URL,
        headers={"Authorization": "Bearer test-key"},
    )


def _weather_tool() -> ToolSchemaPair:
    return ToolSchemaPair(
        name="get_weather",
        description="Current weather",
        external=WEATHER_SCHEMA,
        native=SchemaConverter().to_native(WEATHER_SCHEMA, name="get_weather"),
    )


def _context(**kwargs) -> ConversationContext:
    return ConversationContext(turns=(Turn(role=Role.USER, blocks=(TextBlock("hi"),)),), **kwargs)


def _sse(*chunks: dict | str) -> bytes:
    lines = []
    for chunk in chunks:
        data = chunk if isinstance(chunk, str) else json.dumps(chunk)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode("utf-8")


@pytest.mark.asyncio
async def test_ask_builds_chat_payload_and_maps_result() -> None:
    seen: dict = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path.endswith("/chat/completions")
        assert request.headers.get("authorization") == "Bearer test-key"
        seen.update(json.loads(request.content.decode("utf-8")))
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-1",
                "model": "qwen-plus",
                "choices": [
                    {
                        "index": 0,
                        "finish_reason": "tool_calls",
                        "message": {
                            "role": "assistant",
                            "reasoning_content": "The user wants weather.",
                            "content": "Let me check.",
                            "tool_calls": [
                                {
                                    "id": "call_1",
                                    "type": "function",
                                    "function": {"name": "get_weather", "arguments": '{"city": "Paris"}'},
                                }
                            ],
                        },
                    }
                ],
                "usage": {"prompt_tokens": 20, "completion_tokens": 9, "total_tokens": 29},
            },
        )

    context = ConversationContext(
        turns=(
            Turn(role=Role.SYSTEM, blocks=(TextBlock("Be brief."), TextBlock("Use tools."))),
            Turn(
                role=Role.USER,
                blocks=(
                    TextBlock("What is this?"),
                    ImageBlock(source_type="base64", data="AAAA", media_type="image/jpeg"),
                ),
            ),
            Turn(
                role=Role.ASSISTANT,
                blocks=(
                    ThinkingBlock(text="hidden"),
                    TextBlock("Checking."),
                    ToolInvocationBlock(id="toolu_1", name="get_weather", arguments={"city": "Oslo"}),
                ),
            ),
            Turn(
                role=Role.USER,
                blocks=(ToolResultBlock(tool_call_id="toolu_1", content="-2C"), TextBlock("And Paris?")),
            ),
        ),
        tools=(_weather_tool(),),
        tool_choice=ToolChoice(mode="any"),
    )
    options = AskOptions(
        model="qwen-plus",
        max_output_tokens=512,
        temperature=0.2,
        stop_sequences=("END",),
        thinking_option=EnableThinking(enabled=True),
    )

    async with _client(handler) as client:
        result = await _adapter(client).ask(context, options)

    assert seen["model"] == "qwen-plus"
    assert seen["max_tokens"] == 512
    assert seen["temperature"] == 0.2
    assert seen["stop"] == ["END"]
    assert seen["enable_thinking"] is True
    assert "stream" not in seen
    assert seen["tool_choice"] == "required"
    assert seen["tools"] == [
        {
            "type": "function",
            "function": {"name": "get_weather", "description": "Current weather", "parameters": WEATHER_SCHEMA},
        }
    ]
    assert seen["messages"] == [
        {"role": "system", "content": "Be brief.\n\nUse tools."},
        {
            "role": "user",
            "content": [
                {"type": "text", "text": "What is this?"},
                {"type": "image_url", "image_url": {"url": "data:image/jpeg;base64,AAAA"}},
            ],
        },
        {
            "role": "assistant",
            "content": "Checking.",
            "tool_calls": [
                {
                    "id": "toolu_1",
                    "type": "function",
                    "function": {"name": "get_weather", "arguments": '{"city": "Oslo"}'},
                }
            ],
        },
        {"role": "tool", "tool_call_id": "toolu_1", "content": "-2C"},
        {"role": "user", "content": [{"type": "text", "text": "And Paris?"}]},
    ]

    assert result.blocks == (
        ThinkingBlock(text="The user wants weather."),
        TextBlock("Let me check."),
        ToolInvocationBlock(id="call_1", name="get_weather", arguments={"city": "Paris"}),
    )
    assert result.stop_reason is StopReason.TOOL_USE
    assert result.usage == Usage(input_tokens=20, output_tokens=9)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("provider", "option", "expected"),
    [
        (ProviderId.OPENROUTER, IncludeReasoning(include=True), {"include_reasoning": True}),
        (ProviderId.OPENAI, NoThinking(), {}),
    ],
)
async def test_thinking_parameters_per_provider(provider, option, expected) -> None:
    seen: dict = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content.decode("utf-8")))
        return httpx.Response(
            200, json={"choices": [{"index": 0, "finish_reason": "stop", "message": {"content": "ok"}}]}
        )

    async with _client(handler) as client:
        await _adapter(client, provider).ask(_context(), AskOptions(model="m", thinking_option=option))

    thinking_keys = {k: v for k, v in seen.items() if k in ("enable_thinking", "include_reasoning")}
    assert thinking_keys == expected


@pytest.mark.asyncio
async def test_named_tool_choice() -> None:
    seen: dict = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content.decode("utf-8")))
        return httpx.Response(200, json={"choices": [{"index": 0, "finish_reason": "stop", "message": {"content": "ok"}}]})

    context = _context(tools=(_weather_tool(),), tool_choice=ToolChoice(mode="tool", name="get_weather"))
    async with _client(handler) as client:
        await _adapter(client).ask(context, AskOptions(model="m"))

    assert seen["tool_choice"] == {"type": "function", "function": {"name": "get_weather"}}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("status", "kind"),
    [
        (401, ProviderErrorKind.AUTH),
        (429, ProviderErrorKind.RATE_LIMIT),
        (504, ProviderErrorKind.TIMEOUT),
        (503, ProviderErrorKind.OVERLOADED),
        (500, ProviderErrorKind.UNAVAILABLE),
    ],
)
async def test_ask_maps_status_codes(status: int, kind: ProviderErrorKind) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"error": {"message": "nope"}})

    async with _client(handler) as client:
        with pytest.raises(ProviderError) as exc_info:
            await _adapter(client).ask(_context(), AskOptions(model="m"))
    assert exc_info.value.kind is kind


@pytest.mark.asyncio
async def test_ask_timeout() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async with _client(handler) as client:
        with pytest.raises(ProviderError) as exc_info:
            await _adapter(client).ask(_context(), AskOptions(model="m"))
    assert exc_info.value.kind is ProviderErrorKind.TIMEOUT
    assert exc_info.value.status_code == 504


@pytest.mark.asyncio
async def test_ask_rejects_malformed_tool_arguments() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "choices": [
                    {
                        "index": 0,
                        "finish_reason": "tool_calls",
                        "message": {
                            "tool_calls": [{"id": "c", "function": {"name": "get_weather", "arguments": "{oops"}}]
                        },
                    }
                ]
            },
        )

    async with _client(handler) as client:
        with pytest.raises(ProviderError) as exc_info:
            await _adapter(client).ask(_context(), AskOptions(model="m"))
    assert exc_info.value.kind is ProviderErrorKind.BAD_RESPONSE


@pytest.mark.asyncio
async def test_ask_stream_assembles_canonical_events() -> None:
    seen: dict = {}

    async def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content.decode("utf-8")))
        body = _sse(
            {"choices": [{"index": 0, "delta": {"role": "assistant", "content": ""}}]},
            {"choices": [{"index": 0, "delta": {"reasoning_content": "thinking..."}}]},
            {"choices": [{"index": 0, "delta": {"content": "Hel"}}]},
            {"choices": [{"index": 0, "delta": {"content": "lo"}}]},
            {
                "choices": [
                    {
                        "index": 0,
                        "delta": {
                            "tool_calls": [
                                {
                                    "index": 0,
                                    "id": "call_1",
                                    "type": "function",
                                    "function": {"name": "get_weather", "arguments": '{"city":'},
                                }
                            ]
                        },
                    }
                ]
            },
            {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "function": {"arguments": '"Paris"}'}}]}}]},
            {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
            {"choices": [], "usage": {"prompt_tokens": 12, "completion_tokens": 7}},
            "[DONE]",
        )
        return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})

    async with _client(handler) as client:
        events = [e async for e in _adapter(client).ask_stream(_context(), AskOptions(model="qwen-plus"))]

    assert seen["stream"] is True
    assert seen["stream_options"] == {"include_usage": True}
    assert events == [
        BlockStart(BlockKind.THINKING),
        BlockDelta("thinking..."),
        BlockEnd(),
        BlockStart(BlockKind.TEXT),
        BlockDelta("Hel"),
        BlockDelta("lo"),
        BlockEnd(),
        BlockStart(BlockKind.TOOL_CALL, tool_call_id="call_1", tool_name="get_weather"),
        BlockDelta('{"city":'),
        BlockDelta('"Paris"}'),
        BlockEnd(),
        Finish(StopReason.TOOL_USE, Usage(input_tokens=12, output_tokens=7)),
    ]


@pytest.mark.asyncio
async def test_ask_stream_separates_parallel_tool_calls() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        body = _sse(
            {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 0, "id": "a", "function": {"name": "x", "arguments": "{}"}}]}}]},
            {"choices": [{"index": 0, "delta": {"tool_calls": [{"index": 1, "id": "b", "function": {"name": "y", "arguments": "{}"}}]}}]},
            {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
            "[DONE]",
        )
        return httpx.Response(200, content=body)

    async with _client(handler) as client:
        events = [e async for e in _adapter(client).ask_stream(_context(), AskOptions(model="m"))]

    starts = [e for e in events if isinstance(e, BlockStart)]
    assert [(s.tool_call_id, s.tool_name) for s in starts] == [("a", "x"), ("b", "y")]
    assert sum(isinstance(e, BlockEnd) for e in events) == 2


@pytest.mark.asyncio
async def test_ask_stream_without_finish_reason_is_a_bad_response() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse({"choices": [{"index": 0, "delta": {"content": "Hi"}}]}, "[DONE]"))

    async with _client(handler) as client:
        with pytest.raises(ProviderError) as exc_info:
            async for _ in _adapter(client).ask_stream(_context(), AskOptions(model="m")):
                pass
    assert exc_info.value.kind is ProviderErrorKind.BAD_RESPONSE


@pytest.mark.asyncio
async def test_ask_stream_error_status() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(529, text="overloaded")

    async with _client(handler) as client:
        with pytest.raises(ProviderError) as exc_info:
            async for _ in _adapter(client).ask_stream(_context(), AskOptions(model="m")):
                pass
    assert exc_info.value.kind is ProviderErrorKind.OVERLOADED
    assert exc_info.value.error_type == "overloaded_error"


@pytest.mark.asyncio
async def test_ask_stream_error_chunk() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=_sse(
                {"choices": [{"index": 0, "delta": {"content": "Hi"}}]},
                {"error": {"message": "upstream exploded"}},
            ),
        )

    async with _client(handler) as client:
        events = []
        with pytest.raises(ProviderError) as exc_info:
            async for event in _adapter(client).ask_stream(_context(), AskOptions(model="m")):
                events.append(event)
    assert "upstream exploded" in exc_info.value.message
    assert events == [BlockStart(BlockKind.TEXT), BlockDelta("Hi")]


def _tool_chunk(index: int, *, id: str | None = None, name: str | None = None, arguments: str = "") -> dict:
    call: dict = {"index": index, "function": {"arguments": arguments}}
    if id is not None:
        call["id"] = id
    if name is not None:
        call["function"]["name"] = name
    return {"choices": [{"index": 0, "delta": {"tool_calls": [call]}}]}


@pytest.mark.asyncio
async def test_ask_stream_holds_text_interleaved_with_tool_arguments() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        body = _sse(
            _tool_chunk(0, id="call_1", name="get_weather", arguments='{"city":'),
            {"choices": [{"index": 0, "delta": {"content": "Checking"}}]},
            _tool_chunk(0, arguments='"Paris"}'),
            {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
            "[DONE]",
        )
        return httpx.Response(200, content=body)

    async with _client(handler) as client:
        events = [e async for e in _adapter(client).ask_stream(_context(), AskOptions(model="m"))]

    assert events == [
        BlockStart(BlockKind.TOOL_CALL, tool_call_id="call_1", tool_name="get_weather"),
        BlockDelta('{"city":'),
        BlockDelta('"Paris"}'),
        BlockEnd(),
        BlockStart(BlockKind.TEXT),
        BlockDelta("Checking"),
        BlockEnd(),
        Finish(StopReason.TOOL_USE),
    ]

    translator = StreamTranslator(message_id="msg_1", model="m")
    vendor = [v for e in events for v in translator.feed(e)]
    assert vendor[-1].type == "message_stop"
    partial = [v.data["delta"]["partial_json"] for v in vendor if v.data.get("delta", {}).get("type") == "input_json_delta"]
    assert "".join(partial) == '{"city":"Paris"}'


@pytest.mark.asyncio
async def test_ask_stream_rejects_arguments_for_a_closed_tool_call() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        body = _sse(
            _tool_chunk(0, id="a", name="x", arguments="{"),
            _tool_chunk(1, id="b", name="y", arguments="{}"),
            _tool_chunk(0, arguments="}"),
            {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
            "[DONE]",
        )
        return httpx.Response(200, content=body)

    async with _client(handler) as client:
        events = []
        with pytest.raises(ProviderError) as exc_info:
            async for event in _adapter(client).ask_stream(_context(), AskOptions(model="m")):
                events.append(event)

    assert exc_info.value.kind is ProviderErrorKind.BAD_RESPONSE
    assert [e.tool_name for e in events if isinstance(e, BlockStart)] == ["x", "y"]


@pytest.mark.asyncio
async def test_ask_stream_rejects_a_tool_call_without_a_name() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse(_tool_chunk(0, arguments="{}"), "[DONE]"))

    async with _client(handler) as client:
        with pytest.raises(ProviderError) as exc_info:
            async for _ in _adapter(client).ask_stream(_context(), AskOptions(model="m")):
                pass
    assert exc_info.value.kind is ProviderErrorKind.BAD_RESPONSE


@pytest.mark.asyncio
async def test_ask_stream_reports_the_matched_stop_sequence() -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content.decode("utf-8"))["stop"] == ["END"]
        body = _sse(
            {"choices": [{"index": 0, "delta": {"content": "done"}}]},
            {"choices": [{"index": 0, "delta": {}, "finish_reason": "stop", "stop_reason": "END"}]},
            "[DONE]",
        )
        return httpx.Response(200, content=body)

    options = AskOptions(model="m", stop_sequences=("END",))
    async with _client(handler) as client:
        events = [e async for e in _adapter(client).ask_stream(_context(), options)]

    assert events[-1] == Finish(StopReason.STOP_SEQUENCE, stop_sequence="END")
    vendor = StreamTranslator(message_id="msg_1", model="m").feed(events[-1])
    assert vendor[1].data["delta"] == {"stop_reason": "stop_sequence", "stop_sequence": "END"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("choice_extra", "stop_reason", "stop_sequence"),
    [
        ({"matched_stop": "###"}, StopReason.STOP_SEQUENCE, "###"),
        ({"stop_reason": 151643}, StopReason.END, None),
        ({}, StopReason.END, None),
    ],
)
async def test_ask_stop_sequence_detection(choice_extra: dict, stop_reason: StopReason, stop_sequence) -> None:
    async def handler(request: httpx.Request) -> httpx.Response:
        choice = {"index": 0, "message": {"role": "assistant", "content": "ok"}, "finish_reason": "stop", **choice_extra}
        return httpx.Response(200, json={"choices": [choice]})

    options = AskOptions(model="m", stop_sequences=("###",))
    async with _client(handler) as client:
        result = await _adapter(client).ask(_context(), options)

    assert result.stop_reason is stop_reason
    assert result.stop_sequence == stop_sequence
    response = build_response(result, message_id="msg_1", model="m")
    assert response.stop_sequence == stop_sequence
