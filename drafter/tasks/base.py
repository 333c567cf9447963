from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..core.config import Settings, get_settings
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)


class GenerationStep:
    """Shared wiring for pipeline components that call the generative gateway."""

    def __init__(
        self,
        gateway: Any,
        *,
        settings: Optional[Settings] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> None:
        self.gateway = gateway
        self.settings = settings or get_settings()
        self.backoff = backoff or BackoffPolicy.from_settings(self.settings)

    def _log_prompt_snapshot(self, prompt: str, log_info: Optional[Dict[str, Any]] = None) -> None:
        """Optionally log prompts for traceability (controlled via LOG_PROMPTS)."""
        if not self.settings.log_prompts:
            return
        max_chars = int(self.settings.log_prompts_max_chars or 0)
        info = log_info or {}
        label = " ".join(f"{key}={value}" for key, value in info.items())
        truncated = max_chars > 0 and len(prompt) > max_chars
        preview = prompt[:max_chars] if truncated else prompt
        logger.info("PromptSnapshot %s truncated=%s preview=\n%s", label, truncated, preview)

    def _generate_text(
        self,
        prompt: str,
        *,
        temperature: float = 0.7,
        max_tokens: Optional[int] = 4000,
        log_info: Optional[Dict[str, Any]] = None,
    ) -> str:
        self._log_prompt_snapshot(prompt, log_info)
        text = self.gateway.generate_text(prompt, temperature=temperature, max_tokens=max_tokens)
        return text.strip() if isinstance(text, str) else ""

    def _generate_json(
        self,
        prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: Optional[int] = 4000,
        log_info: Optional[Dict[str, Any]] = None,
    ) -> Any:
        self._log_prompt_snapshot(prompt, log_info)
        return self.gateway.generate_json(prompt, temperature=temperature, max_tokens=max_tokens)
