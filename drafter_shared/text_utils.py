from __future__ import annotations

import re
import unicodedata
from typing import Any, Callable, Iterable, List, Optional, TypeVar
from urllib.parse import urlparse

from .style import PLACEHOLDER_NAME_PATTERNS, PLACEHOLDER_REPLACEMENTS

T = TypeVar("T")

_PARENTHETICAL = re.compile(r"[（(\[［][^）)\]］]*[）)\]］]")
_BRACKET_CHARS = re.compile(r"[（）()\[\]［］【】「」『』<>＜＞〈〉《》]")
_WHITESPACE = re.compile(r"\s+")
_HEADING_PREFIX = re.compile(r"^\s*#{1,6}\s*")
_HEADING_NUMBERING = re.compile(r"^(?:\d+[.)．、]\s*|第\s*\d+\s*[章節]\s*|[0-9０-９]+\s+)")
_INTENT_SUFFIX = re.compile(r"\s*[（(]意図[:：][^）)]*[）)]\s*$")


def normalize_name(name: Any) -> str:
    """Dedup key for an entity name: case, width, whitespace and bracket insensitive."""
    text = unicodedata.normalize("NFKC", str(name or "")).strip().lower()
    if not text:
        return ""
    stripped = _PARENTHETICAL.sub("", text)
    if not _WHITESPACE.sub("", _BRACKET_CHARS.sub("", stripped)):
        stripped = text
    stripped = _BRACKET_CHARS.sub("", stripped)
    return _WHITESPACE.sub("", stripped)


def is_placeholder_name(name: Any) -> bool:
    text = unicodedata.normalize("NFKC", str(name or "")).strip().lower()
    if not text:
        return True
    return any(re.search(pattern, text) for pattern in PLACEHOLDER_NAME_PATTERNS)


def dedup_by_name(items: Iterable[T], key: Optional[Callable[[T], Any]] = None) -> List[T]:
    """Keep the first item per normalized name, preserving order.

    Items whose name normalizes to an empty string are dropped.
    """
    if key is None:
        key = _default_name_key
    seen = set()
    unique: List[T] = []
    for item in items:
        normalized = normalize_name(key(item))
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        unique.append(item)
    return unique


def _default_name_key(item: Any) -> Any:
    if isinstance(item, dict):
        return item.get("name")
    return getattr(item, "name", item)


def is_valid_url(url: Any) -> bool:
    value = str(url or "").strip()
    if not value or any(ch.isspace() for ch in value):
        return False
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        return False
    host = parsed.hostname or ""
    return "." in host and "example.com" not in host


def url_domain(url: str) -> str:
    host = urlparse(str(url or "")).hostname or ""
    return host[4:] if host.startswith("www.") else host


def clamp_text(text: Optional[str], max_chars: int = 12000) -> str:
    if not text:
        return ""
    if len(text) <= max_chars:
        return text
    return f"{text[:max_chars]}\n...(truncated)"


def normalize_heading(text: Any) -> str:
    """Strip markdown markers, numbering and intent tags from a heading line."""
    value = unicodedata.normalize("NFKC", str(text or "")).strip()
    value = _HEADING_PREFIX.sub("", value)
    value = _HEADING_NUMBERING.sub("", value)
    value = _INTENT_SUFFIX.sub("", value)
    value = value.strip().strip("*").strip()
    return _WHITESPACE.sub(" ", value)


def count_chars(text: Optional[str]) -> int:
    """Article length as counted for targets: every non-whitespace character."""
    if not text:
        return 0
    return len(_WHITESPACE.sub("", text))


def sanitize_placeholders(markdown: str) -> str:
    updated = markdown or ""
    for pattern, replacement in PLACEHOLDER_REPLACEMENTS:
        updated = re.sub(pattern, replacement, updated)
    return updated


def body_key(text: Optional[str]) -> str:
    """Search key for a document body, comparable with ``normalize_name`` output."""
    value = unicodedata.normalize("NFKC", text or "").lower()
    return _WHITESPACE.sub("", _BRACKET_CHARS.sub("", value))


def mentions_name(key: str, name: Any) -> bool:
    """True when ``name`` appears in a body already passed through ``body_key``."""
    normalized = normalize_name(name)
    return bool(normalized) and normalized in key
