from fastapi import APIRouter

from .assess import router as assess_router
from .health import router as health_router


# Public API router; the assessment stream is protected by rate limiting only.
api_router = APIRouter()

api_router.include_router(health_router, tags=["health"])
api_router.include_router(assess_router)
