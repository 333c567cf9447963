"""LLM provider abstractions shared by the drafter services."""

from .gateway import (
    GenerationParseError,
    LLMGateway,
    OPENAI_MAX_COMPLETION_ONLY_MODELS,
    OPENAI_TEMPERATURE_LOCKED_MODELS,
    extract_json_payload,
    map_messages_to_anthropic,
)

__all__ = [
    "GenerationParseError",
    "LLMGateway",
    "extract_json_payload",
    "map_messages_to_anthropic",
    "OPENAI_TEMPERATURE_LOCKED_MODELS",
    "OPENAI_MAX_COMPLETION_ONLY_MODELS",
]
