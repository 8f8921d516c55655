"""Incremental events produced by the provider abstraction's ask operation."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from askgate.domain.conversation import TextBlock, ThinkingBlock, ToolInvocationBlock


class BlockKind(str, Enum):
    TEXT = "text"
    THINKING = "thinking"
    TOOL_CALL = "tool_call"


class StopReason(str, Enum):
    END = "end"
    LENGTH = "length"
    TOOL_USE = "tool_use"
    STOP_SEQUENCE = "stop_sequence"
    FILTERED = "filtered"


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class BlockStart:
    kind: BlockKind
    tool_call_id: str | None = None
    tool_name: str | None = None


@dataclass(frozen=True)
class BlockDelta:
    # text for text/thinking units, a partial JSON fragment for tool calls
    payload: str


@dataclass(frozen=True)
class BlockEnd:
    pass


@dataclass(frozen=True)
class Finish:
    stop_reason: StopReason
    usage: Usage = field(default_factory=Usage)
    stop_sequence: str | None = None


ProviderEvent = Union[BlockStart, BlockDelta, BlockEnd, Finish]

ResultBlock = Union[TextBlock, ThinkingBlock, ToolInvocationBlock]


@dataclass(frozen=True)
class AskResult:
    blocks: tuple[ResultBlock, ...]
    stop_reason: StopReason
    usage: Usage = field(default_factory=Usage)
    stop_sequence: str | None = None
