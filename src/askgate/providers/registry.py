from __future__ import annotations

from dataclasses import dataclass, field

from askgate.core.errors import not_configured
from askgate.domain.models import ProviderId
from askgate.providers.base import ProviderAdapter


@dataclass
class ProviderRegistry:
    _providers: dict[ProviderId, ProviderAdapter] = field(default_factory=dict)

    def register(self, adapter: ProviderAdapter) -> None:
        self._providers[adapter.provider] = adapter

    def get(self, provider: ProviderId) -> ProviderAdapter:
        try:
            return self._providers[provider]
        except KeyError:
            raise not_configured(f"Provider '{provider.value}' is not configured") from None
