from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional
from urllib.parse import urlparse

import httpx
import trafilatura
from lxml import etree
from lxml import html as lxml_html

from ..core.config import Settings, get_settings

logger = logging.getLogger(__name__)

MAX_TEXT_CHARS = 50000
BLOCKED_HOSTS = {"localhost", "metadata.google.internal", "metadata"}


@dataclass
class ExtractedPage:
    url: str
    title: str = ""
    description: str = ""
    text: str = ""
    headings: Dict[str, List[str]] = field(default_factory=lambda: {"h2": [], "h3": []})

    @property
    def is_empty(self) -> bool:
        return not self.text.strip()


def is_unsafe_url(url: str) -> bool:
    """Refuse non-HTTP schemes, loopback, private ranges and metadata endpoints."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return True
    if parsed.scheme not in {"http", "https"}:
        return True
    host = (parsed.hostname or "").lower()
    if not host or host in BLOCKED_HOSTS:
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return address.is_private or address.is_loopback or address.is_link_local or address.is_unspecified


class PageExtractor:
    """Fetches a page and extracts title, headings and main text.

    Failures never raise: callers receive an empty page and skip it.
    """

    def __init__(
        self,
        *,
        timeout: float = 30.0,
        user_agent: str = "Mozilla/5.0 (compatible; LongFormDrafter/1.0)",
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout),
            follow_redirects=True,
            transport=transport,
            headers={
                "User-Agent": user_agent,
                "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
                "Accept-Language": "ja,en;q=0.5",
            },
        )

    def extract(self, url: str) -> ExtractedPage:
        if is_unsafe_url(url):
            logger.warning("Refusing to fetch unsafe URL %s", url)
            return ExtractedPage(url=url)
        try:
            response = self._client.get(url)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Fetch failed for %s: %s", url, exc)
            return ExtractedPage(url=url)
        return parse_html(url, response.text)

    def close(self) -> None:
        self._client.close()


def parse_html(url: str, html: str) -> ExtractedPage:
    if not html or not html.strip():
        return ExtractedPage(url=url)
    try:
        tree = lxml_html.fromstring(html)
    except (etree.ParserError, ValueError) as exc:
        logger.warning("HTML parse failed for %s: %s", url, exc)
        return ExtractedPage(url=url)

    title = _first_text(tree.xpath("//title/text()"))
    description = _first_text(tree.xpath("//meta[@name='description']/@content"))
    headings = {
        "h2": _clean_list(tree.xpath("//h2"))[:50],
        "h3": _clean_list(tree.xpath("//h3"))[:50],
    }

    text = trafilatura.extract(html, url=url, include_comments=False, include_tables=True) or ""
    if not text:
        for node in tree.xpath("//script|//style|//nav|//footer|//header"):
            node.drop_tree()
        lines = [line.strip() for line in tree.text_content().splitlines() if line.strip()]
        text = "\n".join(lines)
    if len(text) > MAX_TEXT_CHARS:
        text = text[:MAX_TEXT_CHARS] + "..."

    return ExtractedPage(url=url, title=title, description=description, text=text, headings=headings)


def _first_text(values: List[str]) -> str:
    for value in values:
        cleaned = " ".join(str(value).split())
        if cleaned:
            return cleaned
    return ""


def _clean_list(nodes) -> List[str]:
    items: List[str] = []
    for node in nodes:
        text = " ".join(node.text_content().split())
        if text and text not in items:
            items.append(text)
    return items


def build_page_extractor(settings: Optional[Settings] = None) -> PageExtractor:
    settings = settings or get_settings()
    return PageExtractor(timeout=settings.extract_timeout_seconds, user_agent=settings.extract_user_agent)
