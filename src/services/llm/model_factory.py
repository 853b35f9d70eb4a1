"""Claude model factory for assessment streams.

Usage:
    from services.llm.model_factory import get_assessment_model

    model = get_assessment_model()  # Returns pydantic-ai Model
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from pydantic_ai.models import Model
from pydantic_ai.models.anthropic import AnthropicModel
from pydantic_ai.providers.anthropic import AnthropicProvider

from core.config import get_settings
from services.streaming.exceptions import ConfigurationError


if TYPE_CHECKING:
    from httpx import AsyncClient

logger = logging.getLogger(__name__)


def _validate_anthropic_credentials() -> bool:
    """Validate that the Anthropic API key is configured."""
    if not get_settings().ANTHROPIC_API_KEY:
        logger.warning("Anthropic API key not configured")
        return False
    return True


def get_assessment_model(http_client: AsyncClient | None = None) -> Model:
    """Get the Claude model used for assessments.

    Args:
        http_client: Optional HTTP client for custom transport/retry logic.

    Raises:
        ConfigurationError: if `ANTHROPIC_API_KEY` is not set.
    """
    settings = get_settings()
    if not _validate_anthropic_credentials():
        raise ConfigurationError("API key not configured")

    provider = AnthropicProvider(
        api_key=settings.ANTHROPIC_API_KEY,
        http_client=http_client,
    )
    logger.info(f"Using Claude assessment model: {settings.ASSESS_MODEL}")
    return AnthropicModel(settings.ASSESS_MODEL, provider=provider)
