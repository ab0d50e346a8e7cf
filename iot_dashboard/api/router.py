from fastapi import APIRouter

from iot_dashboard.api.routes import auth, mqtt

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(auth.router, tags=["auth"])
api_router.include_router(mqtt.router, tags=["mqtt"])
