"""Style guideline constants shared across services."""

from .constants import (
    AGGREGATOR_DOMAINS,
    CLOSING_HEADING_KEYWORDS,
    PLACEHOLDER_NAME_PATTERNS,
    PLACEHOLDER_REPLACEMENTS,
    QUERY_NOISE_WORDS,
    QUERY_STOP_WORDS,
)

__all__ = [
    "AGGREGATOR_DOMAINS",
    "CLOSING_HEADING_KEYWORDS",
    "PLACEHOLDER_NAME_PATTERNS",
    "PLACEHOLDER_REPLACEMENTS",
    "QUERY_NOISE_WORDS",
    "QUERY_STOP_WORDS",
]
