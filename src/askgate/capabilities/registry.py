from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path
from types import MappingProxyType

from pydantic import TypeAdapter, ValidationError

from askgate.domain.models import CapabilityProfile, ProviderId

log = logging.getLogger(__name__)

_PROFILES = TypeAdapter(list[CapabilityProfile])

# Used when no catalog file is configured.
DEFAULT_CATALOG: list[CapabilityProfile] = [
    CapabilityProfile(
        id="qwen3-coder-plus",
        provider=ProviderId.QWEN,
        supports_tools=True,
        supports_image_input=False,
        max_output_tokens=65536,
        display_name="Qwen3 Coder Plus",
    ),
    CapabilityProfile(
        id="qwen-plus",
        provider=ProviderId.QWEN,
        supports_tools=True,
        supports_image_input=False,
        max_output_tokens=32768,
        display_name="Qwen Plus",
    ),
    CapabilityProfile(
        id="qwen3-vl-plus",
        provider=ProviderId.QWEN,
        supports_tools=True,
        supports_image_input=True,
        max_output_tokens=32768,
        display_name="Qwen3 VL Plus",
    ),
    CapabilityProfile(
        id="anthropic/claude-sonnet-4",
        provider=ProviderId.OPENROUTER,
        supports_tools=True,
        supports_image_input=True,
        max_output_tokens=64000,
        display_name="Claude Sonnet 4 (OpenRouter)",
    ),
    CapabilityProfile(
        id="google/gemini-2.5-pro",
        provider=ProviderId.OPENROUTER,
        supports_tools=True,
        supports_image_input=True,
        max_output_tokens=65536,
        display_name="Gemini 2.5 Pro (OpenRouter)",
    ),
    CapabilityProfile(
        id="deepseek/deepseek-chat-v3.1",
        provider=ProviderId.OPENROUTER,
        supports_tools=True,
        supports_image_input=False,
        max_output_tokens=8192,
        display_name="DeepSeek V3.1 (OpenRouter)",
    ),
    CapabilityProfile(
        id="gpt-4.1",
        provider=ProviderId.OPENAI,
        supports_tools=True,
        supports_image_input=True,
        max_output_tokens=32768,
        display_name="GPT-4.1",
    ),
    CapabilityProfile(
        id="gpt-4.1-mini",
        provider=ProviderId.OPENAI,
        supports_tools=True,
        supports_image_input=True,
        max_output_tokens=32768,
        display_name="GPT-4.1 mini",
    ),
]


class RegistryLoadError(RuntimeError):
    pass


class CapabilityRegistry:
    """Read-only model capability lookup.

    Profiles are validated once when the registry is built and never change
    afterwards, so one instance can be shared by every request.
    """

    def __init__(self, profiles: Iterable[CapabilityProfile]) -> None:
        by_id: dict[str, CapabilityProfile] = {}
        for profile in profiles:
            if profile.id in by_id:
                raise RegistryLoadError(f"Duplicate model id in capability catalog: {profile.id}")
            by_id[profile.id] = profile
        self._profiles = MappingProxyType(by_id)

    @classmethod
    def from_json(cls, raw: str | bytes) -> CapabilityRegistry:
        try:
            profiles = _PROFILES.validate_json(raw)
        except ValidationError as e:
            raise RegistryLoadError(f"Invalid capability catalog: {e}") from e
        return cls(profiles)

    @classmethod
    def from_file(cls, path: str | Path) -> CapabilityRegistry:
        path = Path(path)
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise RegistryLoadError(f"Cannot read capability catalog {path}: {e}") from e
        registry = cls.from_json(raw)
        log.info("capabilities.loaded", extra={"path": str(path), "models": len(registry)})
        return registry

    def __len__(self) -> int:
        return len(self._profiles)

    def lookup(self, model_id: str) -> CapabilityProfile | None:
        return self._profiles.get(model_id)

    def list_all(self) -> list[CapabilityProfile]:
        return list(self._profiles.values())
