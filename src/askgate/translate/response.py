"""Canonical ask results -> vendor (non-streaming) response."""

from __future__ import annotations

from askgate.domain.conversation import TextBlock, ThinkingBlock, ToolInvocationBlock
from askgate.domain.events import AskResult, StopReason
from askgate.domain.messages import (
    MessagesResponse,
    ResponseContent,
    TextContent,
    ThinkingContent,
    ToolUseContent,
    Usage,
)

_VENDOR_STOP_REASONS: dict[StopReason, str] = {
    StopReason.END: "end_turn",
    StopReason.LENGTH: "max_tokens",
    StopReason.TOOL_USE: "tool_use",
    StopReason.STOP_SEQUENCE: "stop_sequence",
    StopReason.FILTERED: "refusal",
}


def vendor_stop_reason(reason: StopReason) -> str:
    return _VENDOR_STOP_REASONS[reason]


def build_response(result: AskResult, *, message_id: str, model: str, input_tokens: int = 0) -> MessagesResponse:
    content: list[ResponseContent] = []
    for block in result.blocks:
        if isinstance(block, TextBlock):
            content.append(TextContent(text=block.text))
        elif isinstance(block, ThinkingBlock):
            content.append(ThinkingContent(thinking=block.text, signature=block.signature))
        elif isinstance(block, ToolInvocationBlock):
            content.append(ToolUseContent(id=block.id, name=block.name, input=dict(block.arguments)))
    return MessagesResponse(
        id=message_id,
        model=model,
        content=content,
        stop_reason=vendor_stop_reason(result.stop_reason),
        stop_sequence=result.stop_sequence,
        usage=Usage(
            input_tokens=result.usage.input_tokens or input_tokens,
            output_tokens=result.usage.output_tokens,
        ),
    )
