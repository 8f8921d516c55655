"""Canonical, provider-agnostic conversation representation.

Everything here is immutable. Transform steps build new instances (usually via
``dataclasses.replace``) instead of mutating what they were given.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Union

from pydantic import BaseModel, ValidationError

from askgate.domain.models import NoThinking, ThinkingOption


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class TextBlock:
    text: str


@dataclass(frozen=True)
class ImageBlock:
    """Image attachment, carried unchanged from the request.

    ``source_type`` is ``base64`` (``data`` holds the encoded bytes) or ``url``
    (``data`` holds the reference).
    """

    source_type: Literal["base64", "url"]
    data: str
    media_type: str | None = None


@dataclass(frozen=True)
class ToolInvocationBlock:
    id: str
    name: str
    arguments: Mapping[str, Any]


@dataclass(frozen=True)
class ToolResultBlock:
    tool_call_id: str
    content: str | tuple[TextBlock | ImageBlock, ...]
    is_error: bool = False


@dataclass(frozen=True)
class ThinkingBlock:
    text: str
    signature: str | None = None


ContentBlock = Union[TextBlock, ImageBlock, ToolInvocationBlock, ToolResultBlock, ThinkingBlock]


@dataclass(frozen=True)
class Turn:
    role: Role
    blocks: tuple[ContentBlock, ...]


@dataclass(frozen=True)
class ToolSchemaPair:
    """A tool's external JSON-Schema description next to its native model."""

    name: str
    description: str | None
    external: Mapping[str, Any]
    native: type[BaseModel]

    def validate_arguments(self, arguments: Mapping[str, Any]) -> ValidationError | None:
        try:
            self.native.model_validate(dict(arguments))
        except ValidationError as e:
            return e
        return None


@dataclass(frozen=True)
class ToolChoice:
    mode: Literal["auto", "any", "tool", "none"]
    name: str | None = None


@dataclass(frozen=True)
class ConversationContext:
    turns: tuple[Turn, ...]
    tools: tuple[ToolSchemaPair, ...] = ()
    tool_choice: ToolChoice | None = None

    def has_images(self) -> bool:
        for turn in self.turns:
            for block in turn.blocks:
                if isinstance(block, ImageBlock):
                    return True
                if isinstance(block, ToolResultBlock) and not isinstance(block.content, str):
                    if any(isinstance(part, ImageBlock) for part in block.content):
                        return True
        return False


@dataclass(frozen=True)
class AskOptions:
    model: str
    max_output_tokens: int | None = None
    thinking_requested: bool = False
    thinking_option: ThinkingOption = field(default_factory=NoThinking)
    temperature: float | None = None
    top_p: float | None = None
    stop_sequences: tuple[str, ...] = ()
