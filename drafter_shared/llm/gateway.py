from __future__ import annotations

import base64
import json
import logging
import os
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from anthropic import Anthropic
from anthropic.types import Message as AnthropicMessage
from openai import OpenAI

logger = logging.getLogger(__name__)


SUPPORTED_PROVIDERS = {"openai", "anthropic"}
OPENAI_TEMPERATURE_LOCKED_MODELS = {"gpt-5", "gpt-5-mini", "o4-mini"}
OPENAI_MAX_COMPLETION_ONLY_MODELS = {"gpt-5", "gpt-5-mini", "o4-mini", "o3"}

DEFAULT_SYSTEM_PROMPT = (
    "あなたは日本語の長文SEO記事を執筆・編集する専門家です。"
    "出典の文章をコピーせず、具体的で実務に役立つ内容を書いてください。"
)

_JSON_DECODER = json.JSONDecoder()


class GenerationParseError(ValueError):
    """Raised when a structured generation cannot be parsed into JSON."""


def _clean_proxy_env() -> bool:
    """Remove proxy-related env vars that break SDK clients."""
    proxy_keys = [
        "OPENAI_PROXY",
        "OPENAI_HTTP_PROXY",
        "OPENAI_HTTPS_PROXY",
        "HTTP_PROXY",
        "HTTPS_PROXY",
        "http_proxy",
        "https_proxy",
        "ALL_PROXY",
        "all_proxy",
    ]
    removed = False
    for key in proxy_keys:
        if os.environ.pop(key, None) is not None:
            removed = True
            logger.info("Removed proxy env var: %s", key)
    return removed


def map_messages_to_anthropic(messages: Sequence[Dict[str, Any]]) -> Tuple[str, List[Dict[str, Any]]]:
    """
    Convert OpenAI-style chat messages into Anthropic system/user blocks.

    Returns:
        system_prompt: Combined system/developer directives.
        anthropic_messages: Messages payload compatible with Anthropic SDK.
    """
    system_sections: List[str] = []
    user_sections: List[str] = []

    for entry in messages:
        role = entry.get("role", "user")
        content = str(entry.get("content", ""))

        if role == "system":
            system_sections.append(content.strip())
        elif role in {"developer", "assistant"}:
            system_sections.append(f"[{role}]\n{content.strip()}")
        else:
            user_sections.append(content.strip())

    system_prompt = "\n\n".join(section for section in system_sections if section)
    user_payload = "\n\n---\n\n".join(section for section in user_sections if section)

    if not user_payload:
        user_payload = "回答を生成してください。"

    anthropic_messages = [
        {
            "role": "user",
            "content": [{"type": "text", "text": user_payload}],
        }
    ]
    return system_prompt, anthropic_messages


def strip_code_fences(text: str) -> str:
    cleaned = re.sub(r"```(?:json)?\s*", "", text or "", flags=re.IGNORECASE)
    return cleaned.replace("\u2028", "").replace("\u2029", "").strip()


def extract_json_payload(raw_text: str) -> Any:
    """
    Parse the first JSON object/array embedded in a model response.

    Models wrap JSON in code fences, add commentary around it, or leave
    trailing commas; all three are tolerated. Raises GenerationParseError
    when nothing parseable remains.
    """
    cleaned = strip_code_fences(raw_text)
    starts = [idx for idx in (cleaned.find("{"), cleaned.find("[")) if idx >= 0]
    if not starts:
        raise GenerationParseError("no JSON value in model response")
    candidate = cleaned[min(starts):]

    for attempt in (candidate, _remove_trailing_commas(candidate)):
        try:
            value, _end = _JSON_DECODER.raw_decode(attempt)
            return value
        except json.JSONDecodeError:
            continue
    raise GenerationParseError(f"invalid JSON in model response ({len(cleaned)} chars)")


def _remove_trailing_commas(text: str) -> str:
    for _ in range(5):
        updated = re.sub(r",\s*([}\]])", r"\1", text)
        if updated == text:
            break
        text = updated
    return text


class LLMGateway:
    """Provider-agnostic gateway for text, JSON and image generation."""

    def __init__(
        self,
        *,
        provider: str = "openai",
        model: str = "gpt-5",
        image_model: str = "gpt-image-1",
        openai_api_key: Optional[str] = None,
        anthropic_api_key: Optional[str] = None,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
    ) -> None:
        provider = provider.lower()
        if provider not in SUPPORTED_PROVIDERS:
            raise ValueError(f"Unsupported provider: {provider}")

        self.provider = provider
        self.model = model
        self.image_model = image_model
        self.system_prompt = system_prompt
        self._openai_api_key = openai_api_key or os.getenv("OPENAI_API_KEY")
        self._anthropic_api_key = (
            anthropic_api_key
            or os.getenv("ANTHROPIC_API_KEY")
            or os.getenv("CLAUDE_API_KEY")
        )
        self._client: Any = None
        self._image_client: Optional[OpenAI] = None

        self._initialize_client()

    # ------------------------------------------------------------------ #
    # Client initialisation
    # ------------------------------------------------------------------ #
    def _initialize_client(self) -> None:
        proxy_removed = _clean_proxy_env()

        if self.provider == "openai":
            if not self._openai_api_key:
                raise ValueError("OpenAI API key is required. Set OPENAI_API_KEY.")
            self._client = OpenAI(api_key=self._openai_api_key)
            self._image_client = self._client
        else:
            if not self._anthropic_api_key:
                raise ValueError("Anthropic API key is required. Set ANTHROPIC_API_KEY or CLAUDE_API_KEY.")
            self._client = Anthropic(api_key=self._anthropic_api_key)
            if self._openai_api_key:
                self._image_client = OpenAI(api_key=self._openai_api_key)

        if proxy_removed:
            logger.info("Initialized %s client (proxy env cleared)", self.provider)
        else:
            logger.info("Initialized %s client", self.provider)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def generate_text(
        self,
        prompt: str,
        *,
        temperature: float = 0.7,
        max_tokens: Optional[int] = 4000,
    ) -> str:
        """Generate free text. Returns an empty string when the model says nothing."""
        messages = [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": prompt},
        ]
        text = self._dispatch_generate(messages, temperature=temperature, max_tokens=max_tokens)
        text = (text or "").strip()
        logger.info("Generated text using %s/%s (chars=%d)", self.provider, self.model, len(text))
        return text

    def generate_json(
        self,
        prompt: str,
        *,
        temperature: float = 0.3,
        max_tokens: Optional[int] = 4000,
    ) -> Any:
        """Generate a JSON value. Raises GenerationParseError on unparseable output."""
        messages = [
            {
                "role": "system",
                "content": f"{self.system_prompt}\n出力は厳密なJSONのみとし、説明文を付けないでください。",
            },
            {"role": "user", "content": prompt},
        ]
        raw = self._dispatch_generate(messages, temperature=temperature, max_tokens=max_tokens)
        return extract_json_payload(raw or "")

    def generate_image(self, prompt: str, *, size: str = "1536x1024") -> bytes:
        """Generate one PNG image. Requires an OpenAI key regardless of text provider."""
        if self._image_client is None:
            raise RuntimeError("Image generation requires OPENAI_API_KEY")
        response = self._image_client.images.generate(model=self.image_model, prompt=prompt, size=size, n=1)
        encoded = response.data[0].b64_json if response.data else None
        if not encoded:
            raise RuntimeError("Image generation returned no data")
        return base64.b64decode(encoded)

    # ------------------------------------------------------------------ #
    # Provider-specific dispatch
    # ------------------------------------------------------------------ #
    def _dispatch_generate(
        self,
        messages: Sequence[Dict[str, Any]],
        *,
        temperature: float,
        max_tokens: Optional[int],
    ) -> str:
        if self.provider == "openai":
            payload: Dict[str, Any] = {
                "model": self.model,
                "messages": list(messages),
            }
            if self.model not in OPENAI_TEMPERATURE_LOCKED_MODELS:
                payload["temperature"] = temperature
            else:
                logger.debug(
                    "Model %s enforces default temperature. Requested=%s ignored.",
                    self.model,
                    temperature,
                )
            if max_tokens is not None:
                if self.model in OPENAI_MAX_COMPLETION_ONLY_MODELS:
                    payload["max_completion_tokens"] = max_tokens
                else:
                    payload["max_tokens"] = max_tokens

            response = self._client.chat.completions.create(**payload)
            return response.choices[0].message.content or ""

        system_prompt, anthropic_messages = map_messages_to_anthropic(messages)
        response: AnthropicMessage = self._client.messages.create(
            model=self.model,
            system=system_prompt or None,
            messages=anthropic_messages,
            temperature=temperature,
            max_tokens=max_tokens or 4000,
        )
        return self._collect_anthropic_text(response)

    def _collect_anthropic_text(self, response: AnthropicMessage) -> str:
        """Flatten Anthropic message content into a string."""
        parts: List[str] = []
        content: Iterable[Any] = getattr(response, "content", []) or []

        for block in content:
            if isinstance(block, dict):
                if block.get("type") == "text":
                    parts.append(str(block.get("text", "")))
            else:
                if getattr(block, "type", None) == "text":
                    parts.append(str(getattr(block, "text", "")))

        return "\n".join(part for part in parts if part).strip()
