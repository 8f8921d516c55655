from __future__ import annotations

from functools import lru_cache
from typing import Literal, assert_never

from pydantic_settings import BaseSettings, SettingsConfigDict

from askgate.domain.models import ProviderId


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    # `local` is the preferred name for development environment.
    # Backward-compatibility: `dev` is accepted as an alias of `local`.
    askgate_env: Literal["local", "dev", "test", "prod"] = "local"
    askgate_log_level: str = "INFO"
    askgate_request_id_header: str = "X-Request-ID"

    # Shared key the calling client must present; unset disables the check.
    askgate_api_key: str | None = None

    # Routing and capability catalog
    askgate_model_override: str | None = None
    askgate_models_file: str | None = None

    # Streaming sessions
    askgate_ping_interval_seconds: float = 10.0
    askgate_request_timeout_seconds: float = 600.0

    # Capability policy
    askgate_reject_unsupported_tools: bool = False
    askgate_strict_tool_schemas: bool = False

    # Providers (each one is enabled by setting its API key)
    qwen_api_key: str | None = None
    qwen_base_url: str = "https://dashscope-intl.aliyuncs.com/compatible-mode/v1"
    openrouter_api_key: str | None = None
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    provider_timeout_seconds: float = 300.0

    def provider_credentials(self, provider: ProviderId) -> tuple[str | None, str]:
        if provider is ProviderId.QWEN:
            return self.qwen_api_key, self.qwen_base_url
        if provider is ProviderId.OPENROUTER:
            return self.openrouter_api_key, self.openrouter_base_url
        if provider is ProviderId.OPENAI:
            return self.openai_api_key, self.openai_base_url
        assert_never(provider)


@lru_cache
def get_settings() -> Settings:
    return Settings()
