from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from drafter_shared.text_utils import is_valid_url

from ..core.config import Settings, get_settings
from ..errors import UpstreamError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SearchResult:
    title: str
    url: str
    snippet: str = ""


class SearchClient:
    """Google Programmable Search JSON API client."""

    def __init__(
        self,
        api_key: str,
        engine_id: str,
        *,
        endpoint: str = "https://www.googleapis.com/customsearch/v1",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self._api_key = api_key
        self._engine_id = engine_id
        self._endpoint = endpoint
        self._client = httpx.Client(timeout=httpx.Timeout(timeout), transport=transport)

    def search(self, query: str, locale: str = "ja", count: int = 10) -> List[SearchResult]:
        params = {
            "key": self._api_key,
            "cx": self._engine_id,
            "q": query,
            "hl": locale,
            "lr": f"lang_{locale}",
            "num": max(1, min(int(count), 10)),
        }
        try:
            response = self._client.get(self._endpoint, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise UpstreamError(f"search HTTP {exc.response.status_code} for query '{query}'") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(f"search unreachable for query '{query}'") from exc

        results: List[SearchResult] = []
        for item in response.json().get("items") or []:
            url = str(item.get("link") or "").strip()
            if not is_valid_url(url):
                continue
            results.append(
                SearchResult(
                    title=str(item.get("title") or "").strip(),
                    url=url,
                    snippet=str(item.get("snippet") or "").strip(),
                )
            )
        logger.info("Search '%s' returned %d results", query, len(results))
        return results

    def close(self) -> None:
        self._client.close()


def build_search_client(settings: Optional[Settings] = None) -> Optional[SearchClient]:
    """Return a client, or None when search is not configured."""
    settings = settings or get_settings()
    if not settings.search_api_key or not settings.search_engine_id:
        logger.info("Search capability not configured; collectors will use known URLs only")
        return None
    return SearchClient(
        settings.search_api_key,
        settings.search_engine_id,
        endpoint=settings.search_endpoint,
    )
