from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from askgate.capabilities.resolver import CapabilityResolver
from askgate.core.auth import AuthContext, get_auth_context
from askgate.core.deps import get_capability_resolver
from askgate.domain.messages import ModelEntry, ModelList
from askgate.domain.models import ProviderId

router = APIRouter()

# The catalog carries no release dates; clients only need a well-formed timestamp.
CATALOG_CREATED_AT = "2025-01-01T00:00:00Z"


@router.get("/models", response_model=ModelList)
async def list_models(
    provider: ProviderId | None = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    resolver: CapabilityResolver = Depends(get_capability_resolver),
) -> ModelList:
    data = [
        ModelEntry(id=p.id, display_name=p.display_name or p.id, created_at=CATALOG_CREATED_AT)
        for p in resolver.list_capable(provider)
    ]
    return ModelList(
        data=data,
        first_id=data[0].id if data else None,
        last_id=data[-1].id if data else None,
    )
