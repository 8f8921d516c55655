from __future__ import annotations

from fastapi.testclient import TestClient

from askgate.capabilities.registry import DEFAULT_CATALOG, CapabilityRegistry
from askgate.core.deps import get_capability_registry
from askgate.domain.models import CapabilityProfile, ProviderId
from askgate.main import create_app


def _client(registry: CapabilityRegistry) -> TestClient:
    app = create_app()
    app.dependency_overrides[get_capability_registry] = lambda: registry
    return TestClient(app)


def _profile(model_id: str, *, tools: bool, images: bool, provider: ProviderId = ProviderId.QWEN) -> CapabilityProfile:
    return CapabilityProfile(
        id=model_id,
        provider=provider,
        supports_tools=tools,
        supports_image_input=images,
        max_output_tokens=4096,
        display_name=model_id.upper(),
    )


def test_models_lists_only_capable_models() -> None:
    client = _client(
        CapabilityRegistry(
            [
                _profile("m1", tools=True, images=True),
                _profile("m2", tools=True, images=False),
                _profile("m3", tools=False, images=True),
            ]
        )
    )

    r = client.get("/v1/models")

    assert r.status_code == 200
    body = r.json()
    assert [m["id"] for m in body["data"]] == ["m1"]
    assert body["data"][0]["type"] == "model"
    assert body["data"][0]["display_name"] == "M1"
    assert body["data"][0]["created_at"]
    assert body["has_more"] is False
    assert body["first_id"] == body["last_id"] == "m1"


def test_models_filter_by_provider() -> None:
    client = _client(
        CapabilityRegistry(
            [
                _profile("q", tools=True, images=True, provider=ProviderId.QWEN),
                _profile("o", tools=True, images=True, provider=ProviderId.OPENAI),
            ]
        )
    )

    assert [m["id"] for m in client.get("/v1/models", params={"provider": "openai"}).json()["data"]] == ["o"]

    empty = client.get("/v1/models", params={"provider": "openrouter"}).json()
    assert empty["data"] == [] and empty["first_id"] is None


def test_models_unknown_provider_is_invalid() -> None:
    r = _client(CapabilityRegistry(DEFAULT_CATALOG)).get("/v1/models", params={"provider": "acme"})

    assert r.status_code == 400
    assert r.json()["error"]["type"] == "invalid_request_error"


def test_default_catalog_offers_only_capable_models() -> None:
    r = _client(CapabilityRegistry(DEFAULT_CATALOG)).get("/v1/models")

    offered = {m["id"] for m in r.json()["data"]}
    expected = {p.id for p in DEFAULT_CATALOG if p.supports_tools and p.supports_image_input}
    assert offered == expected
    assert "qwen3-coder-plus" not in offered
