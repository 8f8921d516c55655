"""Vendor (Anthropic Messages API) wire format."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, Field


class TextContent(BaseModel):
    type: Literal["text"] = "text"
    text: str


class Base64ImageSource(BaseModel):
    type: Literal["base64"] = "base64"
    media_type: str
    data: str


class UrlImageSource(BaseModel):
    type: Literal["url"] = "url"
    url: str


ImageSource = Annotated[Union[Base64ImageSource, UrlImageSource], Field(discriminator="type")]


class ImageContent(BaseModel):
    type: Literal["image"] = "image"
    source: ImageSource


class ToolUseContent(BaseModel):
    type: Literal["tool_use"] = "tool_use"
    id: str
    name: str
    input: dict[str, Any] = Field(default_factory=dict)


ToolResultPart = Annotated[Union[TextContent, ImageContent], Field(discriminator="type")]


class ToolResultContent(BaseModel):
    type: Literal["tool_result"] = "tool_result"
    tool_use_id: str
    content: str | list[ToolResultPart] = ""
    is_error: bool = False


class ThinkingContent(BaseModel):
    type: Literal["thinking"] = "thinking"
    thinking: str
    signature: str | None = None


RequestContent = Annotated[
    Union[TextContent, ImageContent, ToolUseContent, ToolResultContent, ThinkingContent],
    Field(discriminator="type"),
]


class InputMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str | list[RequestContent]


class ToolDefinition(BaseModel):
    name: str
    description: str | None = None
    input_schema: dict[str, Any] | None = None
    # Set for server-side tools (e.g. web search), which carry no input schema.
    type: str | None = None


class ThinkingConfig(BaseModel):
    type: Literal["enabled", "disabled"]
    budget_tokens: int | None = None


class ToolChoiceParam(BaseModel):
    type: Literal["auto", "any", "tool", "none"]
    name: str | None = None
    disable_parallel_tool_use: bool | None = None


class MessagesRequest(BaseModel):
    model: str = Field(..., min_length=1)
    messages: list[InputMessage] = Field(..., min_length=1)
    system: str | list[TextContent] | None = None
    max_tokens: int | None = Field(default=None, gt=0)
    tools: list[ToolDefinition] | None = None
    tool_choice: ToolChoiceParam | None = None
    thinking: ThinkingConfig | None = None
    temperature: float | None = None
    top_p: float | None = None
    stop_sequences: list[str] | None = None
    metadata: dict[str, Any] | None = None
    stream: bool = False


class Usage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


ResponseContent = Annotated[Union[TextContent, ThinkingContent, ToolUseContent], Field(discriminator="type")]


class MessagesResponse(BaseModel):
    id: str = Field(default_factory=lambda: f"msg_{uuid4().hex}")
    type: Literal["message"] = "message"
    role: Literal["assistant"] = "assistant"
    model: str
    content: list[ResponseContent]
    stop_reason: str | None = None
    stop_sequence: str | None = None
    usage: Usage = Field(default_factory=Usage)


class TokenCountResponse(BaseModel):
    input_tokens: int


class ModelEntry(BaseModel):
    type: Literal["model"] = "model"
    id: str
    display_name: str
    created_at: str


class ModelList(BaseModel):
    data: list[ModelEntry]
    has_more: bool = False
    first_id: str | None = None
    last_id: str | None = None
