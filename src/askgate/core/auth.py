from __future__ import annotations

import hmac
from dataclasses import dataclass

from fastapi import Depends, Header

from askgate.core.config import Settings, get_settings
from askgate.core.errors import unauthorized


@dataclass(frozen=True)
class AuthContext:
    api_key: str | None


def _parse_bearer(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, value = parts[0].lower(), parts[1].strip()
    if scheme != "bearer" or not value:
        return None
    return value


async def get_auth_context(
    x_api_key: str | None = Header(default=None, alias="x-api-key"),
    authorization: str | None = Header(default=None, alias="Authorization"),
    settings: Settings = Depends(get_settings),
) -> AuthContext:
    api_key = x_api_key or _parse_bearer(authorization)

    # No shared key configured: the gateway is open (local use behind the client).
    if not settings.askgate_api_key:
        return AuthContext(api_key=api_key)

    if not api_key:
        raise unauthorized("Missing x-api-key or Authorization header")
    if not hmac.compare_digest(api_key.encode("utf-8"), settings.askgate_api_key.encode("utf-8")):
        raise unauthorized("Invalid API key")
    return AuthContext(api_key=api_key)
