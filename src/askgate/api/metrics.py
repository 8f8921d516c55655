"""Prometheus metrics endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Query
from fastapi.responses import Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

router = APIRouter()


@router.get("/metrics")
def metrics(names: list[str] | None = Query(None, alias="name[]")) -> Response:
    """Prometheus metrics in text format, optionally restricted to the sample names in ``name[]``."""
    registry = REGISTRY.restricted_registry(names) if names else REGISTRY
    return Response(content=generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
