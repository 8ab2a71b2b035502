from fastapi import APIRouter

from app.surplus.core.config import settings
from app.surplus.routers.audit import router as audit_router
from app.surplus.routers.auth import router as auth_router
from app.surplus.routers.health import router as health_router
from app.surplus.routers.materials import router as materials_router
from app.surplus.routers.metrics import router as metrics_router
from app.surplus.routers.notifications import router as notifications_router
from app.surplus.routers.transfers import router as transfers_router

api_router = APIRouter()
api_router.include_router(health_router)
api_router.include_router(auth_router, prefix="/surplus/auth", tags=["auth"])
api_router.include_router(materials_router, tags=["materials"])
api_router.include_router(transfers_router, tags=["transfers"])
api_router.include_router(audit_router, tags=["audit"])
api_router.include_router(notifications_router, tags=["notifications"])
if settings.METRICS_ENABLED:
    api_router.include_router(metrics_router, tags=["ops"])
