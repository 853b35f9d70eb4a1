from typing import Annotated

from fastapi import APIRouter, Depends

from core.config import Settings, get_settings
from schemas.api import ApiResponse, HealthStatus


router = APIRouter()


@router.get("/health", response_model=ApiResponse[HealthStatus])
def health_check(
    settings: Annotated[Settings, Depends(get_settings)],
) -> ApiResponse[HealthStatus]:
    """Liveness check; never rate limited and never calls Claude."""
    return ApiResponse(
        data=HealthStatus(
            message=f"{settings.APP_NAME} API is running",
            model=settings.ASSESS_MODEL,
            model_configured=bool(settings.ANTHROPIC_API_KEY),
        ),
        message="Health check successful",
    )
