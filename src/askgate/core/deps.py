from __future__ import annotations

from functools import lru_cache

from fastapi import Depends, Request

from askgate.capabilities.registry import DEFAULT_CATALOG, CapabilityRegistry
from askgate.capabilities.resolver import CapabilityResolver
from askgate.core.config import Settings, get_settings
from askgate.providers.openai_compat import OpenAICompatibleAdapter
from askgate.providers.registry import ProviderRegistry
from askgate.schema.converter import SchemaConverter
from askgate.session.coordinator import SessionCoordinator, SessionPolicy


@lru_cache
def get_capability_registry() -> CapabilityRegistry:
    settings = get_settings()
    if settings.askgate_models_file:
        return CapabilityRegistry.from_file(settings.askgate_models_file)
    return CapabilityRegistry(DEFAULT_CATALOG)


@lru_cache
def get_schema_converter() -> SchemaConverter:
    return SchemaConverter()


def get_capability_resolver(
    registry: CapabilityRegistry = Depends(get_capability_registry),
) -> CapabilityResolver:
    return CapabilityResolver(registry)


def get_provider_registry(
    request: Request,
    converter: SchemaConverter = Depends(get_schema_converter),
) -> ProviderRegistry:
    registry = ProviderRegistry()

    clients = getattr(request.app.state, "provider_clients", None) or {}
    for provider, client in clients.items():
        registry.register(OpenAICompatibleAdapter(provider=provider, client=client, converter=converter))

    return registry


def get_session_coordinator(
    registry: CapabilityRegistry = Depends(get_capability_registry),
    converter: SchemaConverter = Depends(get_schema_converter),
    providers: ProviderRegistry = Depends(get_provider_registry),
    settings: Settings = Depends(get_settings),
) -> SessionCoordinator:
    return SessionCoordinator(registry, converter, providers, SessionPolicy.from_settings(settings))
