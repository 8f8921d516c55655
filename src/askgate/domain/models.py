from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from pydantic import BaseModel, ConfigDict, Field


class ProviderId(str, Enum):
    """Closed set of backends reachable through the provider abstraction."""

    QWEN = "qwen"
    OPENROUTER = "openrouter"
    OPENAI = "openai"


class CapabilityProfile(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., min_length=1, description="Provider-scoped model id")
    provider: ProviderId
    supports_tools: bool
    supports_image_input: bool
    max_output_tokens: int = Field(..., gt=0)
    display_name: str | None = None


class WarningKind(str, Enum):
    OUTPUT_TOKEN_EXCEEDED = "output-token-exceeded"
    TOOLS_UNSUPPORTED = "tools-unsupported"
    IMAGE_UNSUPPORTED = "image-unsupported"
    THINKING_UNSUPPORTED = "thinking-unsupported"


@dataclass(frozen=True)
class CapabilityWarning:
    kind: WarningKind
    model_id: str
    requested: int | bool
    limit: int | bool

    def as_log_extra(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "model": self.model_id,
            "requested": self.requested,
            "limit": self.limit,
        }


# Provider-specific thinking options. Each variant renders the extra request
# parameters its provider understands.


@dataclass(frozen=True)
class EnableThinking:
    enabled: bool

    def params(self) -> dict[str, Any]:
        return {"enable_thinking": self.enabled}


@dataclass(frozen=True)
class IncludeReasoning:
    include: bool

    def params(self) -> dict[str, Any]:
        return {"include_reasoning": self.include}


@dataclass(frozen=True)
class NoThinking:
    def params(self) -> dict[str, Any]:
        return {}


ThinkingOption = Union[EnableThinking, IncludeReasoning, NoThinking]
