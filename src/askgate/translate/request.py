"""Vendor request -> canonical conversation context and ask options."""

from __future__ import annotations

import json
import math
from dataclasses import dataclass

from askgate.core.errors import SchemaConversionError, malformed_request
from askgate.domain.conversation import (
    AskOptions,
    ContentBlock,
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
from askgate.domain.messages import (
    Base64ImageSource,
    ImageContent,
    InputMessage,
    MessagesRequest,
    TextContent,
    ThinkingContent,
    ToolDefinition,
    ToolResultContent,
    ToolUseContent,
)
from askgate.schema.converter import SchemaConverter

IMAGE_TOKEN_ESTIMATE = 1600


@dataclass(frozen=True)
class RejectedTool:
    name: str
    error: SchemaConversionError


@dataclass(frozen=True)
class TransformResult:
    context: ConversationContext
    options: AskOptions
    tools: tuple[ToolSchemaPair, ...]
    rejected_tools: tuple[RejectedTool, ...]
    has_tools: bool
    has_images: bool


def _image(content: ImageContent) -> ImageBlock:
    source = content.source
    if isinstance(source, Base64ImageSource):
        return ImageBlock(source_type="base64", data=source.data, media_type=source.media_type)
    return ImageBlock(source_type="url", data=source.url)


class RequestTransformer:
    def __init__(self, converter: SchemaConverter, *, strict_tool_schemas: bool = False) -> None:
        self._converter = converter
        self._strict_tool_schemas = strict_tool_schemas

    def transform(self, request: MessagesRequest, *, model: str | None = None) -> TransformResult:
        turns: list[Turn] = []
        system = self._system_turn(request)
        if system is not None:
            turns.append(system)

        known_tool_ids: set[str] = set()
        for i, message in enumerate(request.messages):
            turns.append(self._turn(i, message, known_tool_ids))

        pairs, rejected = self._tools(request.tools or [])
        context = ConversationContext(
            turns=tuple(turns),
            tools=pairs,
            tool_choice=self._tool_choice(request, pairs, rejected),
        )
        options = AskOptions(
            model=model or request.model,
            max_output_tokens=request.max_tokens,
            thinking_requested=request.thinking is not None and request.thinking.type == "enabled",
            temperature=request.temperature,
            top_p=request.top_p,
            stop_sequences=tuple(request.stop_sequences or ()),
        )
        return TransformResult(
            context=context,
            options=options,
            tools=pairs,
            rejected_tools=rejected,
            has_tools=bool(request.tools),
            has_images=context.has_images(),
        )

    def _system_turn(self, request: MessagesRequest) -> Turn | None:
        if request.system is None:
            return None
        if isinstance(request.system, str):
            if not request.system:
                return None
            return Turn(role=Role.SYSTEM, blocks=(TextBlock(request.system),))
        if not request.system:
            return None
        return Turn(role=Role.SYSTEM, blocks=tuple(TextBlock(part.text) for part in request.system))

    def _turn(self, index: int, message: InputMessage, known_tool_ids: set[str]) -> Turn:
        role = Role(message.role)
        if isinstance(message.content, str):
            return Turn(role=role, blocks=(TextBlock(message.content),))

        blocks: list[ContentBlock] = []
        for j, part in enumerate(message.content):
            where = f"messages.{index}.content.{j}"
            if isinstance(part, TextContent):
                blocks.append(TextBlock(part.text))
            elif isinstance(part, ImageContent):
                blocks.append(_image(part))
            elif isinstance(part, ToolUseContent):
                if role is not Role.ASSISTANT:
                    raise malformed_request(f"{where}: tool_use blocks are only allowed in assistant messages")
                if part.id in known_tool_ids:
                    raise malformed_request(f"{where}: duplicate tool_use id '{part.id}'")
                known_tool_ids.add(part.id)
                blocks.append(ToolInvocationBlock(id=part.id, name=part.name, arguments=part.input))
            elif isinstance(part, ToolResultContent):
                if role is not Role.USER:
                    raise malformed_request(f"{where}: tool_result blocks are only allowed in user messages")
                if part.tool_use_id not in known_tool_ids:
                    raise malformed_request(
                        f"{where}: tool_result references unknown tool_use id '{part.tool_use_id}'"
                    )
                blocks.append(self._tool_result(part))
            elif isinstance(part, ThinkingContent):
                blocks.append(ThinkingBlock(text=part.thinking, signature=part.signature))
        return Turn(role=role, blocks=tuple(blocks))

    def _tool_result(self, part: ToolResultContent) -> ToolResultBlock:
        if isinstance(part.content, str):
            content: str | tuple[TextBlock | ImageBlock, ...] = part.content
        else:
            content = tuple(
                TextBlock(p.text) if isinstance(p, TextContent) else _image(p) for p in part.content
            )
        return ToolResultBlock(tool_call_id=part.tool_use_id, content=content, is_error=part.is_error)

    def _tools(
        self, definitions: list[ToolDefinition]
    ) -> tuple[tuple[ToolSchemaPair, ...], tuple[RejectedTool, ...]]:
        pairs: list[ToolSchemaPair] = []
        rejected: list[RejectedTool] = []
        seen: set[str] = set()
        for i, tool in enumerate(definitions):
            if tool.name in seen:
                raise malformed_request(f"tools.{i}: duplicate tool name '{tool.name}'")
            seen.add(tool.name)

            try:
                if tool.input_schema is None:
                    raise SchemaConversionError(f"tool type '{tool.type}' carries no input schema", "")
                native = self._converter.to_native(tool.input_schema, name=tool.name)
            except SchemaConversionError as e:
                if self._strict_tool_schemas:
                    raise malformed_request(f"tools.{i}.input_schema: {e}") from e
                rejected.append(RejectedTool(name=tool.name, error=e))
                continue

            pairs.append(
                ToolSchemaPair(
                    name=tool.name,
                    description=tool.description,
                    external=tool.input_schema,
                    native=native,
                )
            )
        return tuple(pairs), tuple(rejected)

    def _tool_choice(
        self,
        request: MessagesRequest,
        pairs: tuple[ToolSchemaPair, ...],
        rejected: tuple[RejectedTool, ...],
    ) -> ToolChoice | None:
        choice = request.tool_choice
        if choice is None:
            return None
        if choice.type != "tool":
            return ToolChoice(mode=choice.type)
        if not choice.name:
            raise malformed_request("tool_choice: 'name' is required when type is 'tool'")
        if any(p.name == choice.name for p in pairs):
            return ToolChoice(mode="tool", name=choice.name)
        if any(r.name == choice.name for r in rejected):
            # The named tool was dropped; let the model pick among the rest.
            return ToolChoice(mode="auto")
        raise malformed_request(f"tool_choice: unknown tool '{choice.name}'")


def estimate_input_tokens(context: ConversationContext) -> int:
    """Rough prompt size: a quarter token per character plus a flat cost per image."""
    chars = 0
    images = 0

    def visit(block: ContentBlock) -> None:
        nonlocal chars, images
        if isinstance(block, TextBlock):
            chars += len(block.text)
        elif isinstance(block, ThinkingBlock):
            chars += len(block.text)
        elif isinstance(block, ImageBlock):
            images += 1
        elif isinstance(block, ToolInvocationBlock):
            chars += len(block.name) + len(json.dumps(dict(block.arguments), ensure_ascii=False))
        elif isinstance(block, ToolResultBlock):
            if isinstance(block.content, str):
                chars += len(block.content)
            else:
                for part in block.content:
                    visit(part)

    for turn in context.turns:
        for block in turn.blocks:
            visit(block)
    for tool in context.tools:
        chars += len(tool.name) + len(tool.description or "")
        chars += len(json.dumps(dict(tool.external), ensure_ascii=False))
    return math.ceil(chars / 4) + images * IMAGE_TOKEN_ESTIMATE
