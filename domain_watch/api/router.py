from fastapi import APIRouter

from domain_watch.api.routes import alerts, callbacks, devices, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(alerts.router, prefix="/alerts", tags=["audit"])
api_router.include_router(callbacks.router, prefix="/callbacks", tags=["callbacks"])
api_router.include_router(devices.router, prefix="/devices", tags=["ingestion"])
