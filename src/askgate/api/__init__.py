from fastapi import APIRouter

from askgate.api.health import router as health_router
from askgate.api.messages import router as messages_router
from askgate.api.metrics import router as metrics_router
from askgate.api.models import router as models_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(metrics_router)
api_router.include_router(models_router, prefix="/v1")
api_router.include_router(messages_router, prefix="/v1")

__all__ = ["api_router"]
