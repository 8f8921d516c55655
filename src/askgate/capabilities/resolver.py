from __future__ import annotations

from dataclasses import replace

from askgate.capabilities.registry import CapabilityRegistry
from askgate.core.errors import ModelNotFound
from askgate.domain.conversation import AskOptions
from askgate.domain.models import CapabilityProfile, CapabilityWarning, ProviderId, WarningKind


class CapabilityResolver:
    def __init__(self, registry: CapabilityRegistry) -> None:
        self._registry = registry

    def resolve(self, model_id: str) -> CapabilityProfile:
        profile = self._registry.lookup(model_id)
        if profile is None:
            raise ModelNotFound(f"model: {model_id}")
        return profile

    def list_capable(self, provider: ProviderId | None = None) -> list[CapabilityProfile]:
        """Models the calling client may be offered: tool use and image input both supported."""
        return [
            p
            for p in self._registry.list_all()
            if p.supports_tools and p.supports_image_input and (provider is None or p.provider is provider)
        ]

    def validate(
        self,
        options: AskOptions,
        profile: CapabilityProfile,
        *,
        has_tools: bool,
        has_images: bool,
    ) -> list[CapabilityWarning]:
        warnings: list[CapabilityWarning] = []
        requested = options.max_output_tokens
        if requested is not None and requested > profile.max_output_tokens:
            warnings.append(
                CapabilityWarning(
                    kind=WarningKind.OUTPUT_TOKEN_EXCEEDED,
                    model_id=profile.id,
                    requested=requested,
                    limit=profile.max_output_tokens,
                )
            )
        if has_tools and not profile.supports_tools:
            warnings.append(
                CapabilityWarning(kind=WarningKind.TOOLS_UNSUPPORTED, model_id=profile.id, requested=True, limit=False)
            )
        if has_images and not profile.supports_image_input:
            warnings.append(
                CapabilityWarning(kind=WarningKind.IMAGE_UNSUPPORTED, model_id=profile.id, requested=True, limit=False)
            )
        return warnings

    def effective_options(self, options: AskOptions, profile: CapabilityProfile) -> AskOptions:
        """Options as sent to the provider: output tokens defaulted or clamped to the profile limit."""
        requested = options.max_output_tokens
        if requested is None or requested > profile.max_output_tokens:
            return replace(options, max_output_tokens=profile.max_output_tokens)
        return options
