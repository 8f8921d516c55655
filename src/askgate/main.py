from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI

from askgate import __version__
from askgate.api import api_router
from askgate.core.config import get_settings
from askgate.core.handlers import install_exception_handlers
from askgate.core.logging import configure_logging
from askgate.core.middleware import RequestIdMiddleware
from askgate.domain.models import ProviderId

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    configure_logging(level=settings.askgate_log_level)
    log.info("app.start", extra={"env": settings.askgate_env})

    clients: dict[ProviderId, httpx.AsyncClient] = {}
    for provider in ProviderId:
        api_key, base_url = settings.provider_credentials(provider)
        if not (api_key and base_url):
            continue
        clients[provider] = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(settings.provider_timeout_seconds, connect=10.0),
        )
    app.state.provider_clients = clients
    log.info("providers.configured", extra={"providers": [p.value for p in clients]})

    try:
        yield
    finally:
        for client in clients.values():
            await client.aclose()
        log.info("app.stop")


def create_app() -> FastAPI:
    app = FastAPI(title="AskGate", version=__version__, lifespan=lifespan)
    app.add_middleware(RequestIdMiddleware)
    install_exception_handlers(app)
    app.include_router(api_router)
    return app


app = create_app()
