"""Gateway factory bound to worker settings."""

from __future__ import annotations

import logging
from typing import Optional

from drafter_shared.llm import LLMGateway

from ..core.config import Settings, get_settings

logger = logging.getLogger(__name__)


def default_model_for_provider(settings: Settings, provider: str) -> str:
    if provider == "anthropic" and settings.anthropic_model:
        return settings.anthropic_model
    return settings.openai_model


def build_gateway(settings: Optional[Settings] = None) -> LLMGateway:
    settings = settings or get_settings()
    provider = str(settings.llm_provider).lower()
    model = default_model_for_provider(settings, provider)

    logger.info("Configuring LLM gateway provider=%s model=%s", provider, model)
    return LLMGateway(
        provider=provider,
        model=model,
        image_model=settings.openai_image_model,
        openai_api_key=settings.openai_api_key,
        anthropic_api_key=settings.anthropic_api_key,
    )
