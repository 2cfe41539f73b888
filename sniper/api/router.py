from fastapi import APIRouter

from sniper.api.routes import admin, health

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
