from __future__ import annotations

from typing import assert_never

from askgate.domain.models import (
    CapabilityProfile,
    CapabilityWarning,
    EnableThinking,
    IncludeReasoning,
    NoThinking,
    ProviderId,
    ThinkingOption,
    WarningKind,
)


def resolve_thinking_option(provider: ProviderId, thinking_requested: bool) -> ThinkingOption:
    """Map the client's thinking directive onto the option its provider understands.

    Every ``ProviderId`` member needs an explicit branch; ``assert_never`` makes a
    type checker reject the function when a new member is left unhandled.
    """
    if provider is ProviderId.QWEN:
        return EnableThinking(enabled=thinking_requested)
    if provider is ProviderId.OPENROUTER:
        return IncludeReasoning(include=thinking_requested)
    if provider is ProviderId.OPENAI:
        return NoThinking()
    assert_never(provider)


def thinking_warning(
    profile: CapabilityProfile, thinking_requested: bool, option: ThinkingOption
) -> CapabilityWarning | None:
    if thinking_requested and isinstance(option, NoThinking):
        return CapabilityWarning(
            kind=WarningKind.THINKING_UNSUPPORTED,
            model_id=profile.id,
            requested=True,
            limit=False,
        )
    return None
