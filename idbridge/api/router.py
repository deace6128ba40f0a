from fastapi import APIRouter

from idbridge.api.auth import router as auth_router
from idbridge.api.health import router as health_router
from idbridge.api.hooks import router as hooks_router

api_router = APIRouter()

api_router.include_router(health_router, tags=["health"])
api_router.include_router(auth_router)
api_router.include_router(hooks_router)
