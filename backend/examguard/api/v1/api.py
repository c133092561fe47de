from fastapi import APIRouter

from .endpoints import health, sessions, violations

api_router = APIRouter()

api_router.include_router(sessions.router, prefix="/sessions", tags=["sessions"])
api_router.include_router(violations.router, prefix="/violations", tags=["violations"])
api_router.include_router(health.router, prefix="/health", tags=["health"])
