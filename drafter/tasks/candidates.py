from __future__ import annotations

import logging
import math
import re
import unicodedata
from typing import Any, Callable, Iterable, List, Optional, TypeVar

from drafter_shared.style import AGGREGATOR_DOMAINS, QUERY_NOISE_WORDS, QUERY_STOP_WORDS
from drafter_shared.text_utils import clamp_text, dedup_by_name, is_valid_url, normalize_name, url_domain

from ..core.config import Settings
from ..models import Article, Candidate, CandidateSource
from .base import GenerationStep
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_SOURCE_PAGES = 8
KNOWLEDGE_FALLBACK_RATIO = 0.3
QUERY_VARIANTS = ["{query} 比較", "{query} おすすめ ランキング", "{query} 一覧 選び方"]
REGION_LOCALES = {"JP": "ja", "US": "en", "GB": "en", "UK": "en"}

_QUERY_PUNCTUATION = re.compile(r"[!?！？。、,，.:：;；・|｜/／\"'“”‘’「」『』【】\[\]()（）<>＜＞]")
_COUNT_SUFFIX = re.compile(r"\d+\s*(?:選|社|個|件|本|つ|年版|年)")

ProgressHook = Callable[[List[Candidate], str], None]


def derive_search_query(title: str, keywords: Iterable[str] = ()) -> Optional[str]:
    """Build a subject query from title and keywords; None when only noise remains."""
    raw = " ".join([title or "", *[str(keyword) for keyword in keywords or []]])
    text = unicodedata.normalize("NFKC", raw)
    text = _QUERY_PUNCTUATION.sub(" ", text)
    text = _COUNT_SUFFIX.sub(" ", text)
    for noise in sorted(QUERY_NOISE_WORDS, key=len, reverse=True):
        pattern = rf"\b{re.escape(noise)}\b" if noise.isascii() else re.escape(noise)
        text = re.sub(pattern, " ", text, flags=re.IGNORECASE)

    tokens: List[str] = []
    for token in text.split():
        lowered = token.lower()
        if lowered in QUERY_STOP_WORDS or token.isdigit():
            continue
        if lowered not in {existing.lower() for existing in tokens}:
            tokens.append(token)
    if not tokens:
        return None
    return " ".join(tokens[:6])


class CandidateCollector(GenerationStep):
    """Collects real comparison entities through an ordered chain of sources.

    Every candidate carries the source it came from; the generative fallback
    is tagged ``ai_knowledge`` and only runs when the other sources yield less
    than ``KNOWLEDGE_FALLBACK_RATIO`` of the desired count.
    """

    def __init__(
        self,
        gateway: Any,
        repository: Any,
        extractor: Any,
        search_client: Optional[Any] = None,
        *,
        settings: Optional[Settings] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> None:
        super().__init__(gateway, settings=settings, backoff=backoff)
        self.repository = repository
        self.extractor = extractor
        self.search_client = search_client

    def ensure_candidates(self, article: Article, on_update: Optional[ProgressHook] = None) -> List[Candidate]:
        desired = article.comparison_config.desired_count
        collected = self._merge([], article.comparison_candidates, source=CandidateSource.existing)
        if len(collected) >= desired:
            logger.info("Article %s already has %d candidates", article.id, len(collected))
            return collected

        query = derive_search_query(article.title, article.keywords)
        if query is None:
            logger.warning("Article %s: title/keywords reduce to stop-words; web search skipped", article.id)

        if self.search_client is None or query is None:
            found = self._from_reference_urls(article, desired - len(collected))
            collected = self._commit(article, collected, found, "reference_urls", on_update)
        else:
            locale = REGION_LOCALES.get(article.comparison_config.region.upper(), self.settings.search_locale)
            for url in self._search_source_urls(query, locale):
                if len(collected) >= desired:
                    break
                found = self._extract_from_page(url, query, CandidateSource.web_extraction)
                collected = self._commit(article, collected, found, f"page:{url_domain(url)}", on_update)
            if article.comparison_config.include_official_url:
                collected = self._enrich_official_urls(collected[:desired], locale) + collected[desired:]
                self._persist(article, collected, "official_urls", on_update)

        if article.comparison_config.include_pricing or article.comparison_config.include_features:
            collected = self._enrich_details(article, collected[:desired]) + collected[desired:]
            self._persist(article, collected, "details", on_update)

        threshold = math.ceil(round(desired * KNOWLEDGE_FALLBACK_RATIO, 6))
        if len(collected) < threshold:
            logger.info(
                "Article %s: %d/%d candidates below threshold %d; using knowledge fallback",
                article.id,
                len(collected),
                desired,
                threshold,
            )
            found = self._from_knowledge(article, query, collected, desired - len(collected))
            collected = self._commit(article, collected, found, "ai_knowledge", on_update)

        return collected

    # ------------------------------------------------------------------ #
    # Merge and persistence
    # ------------------------------------------------------------------ #
    @staticmethod
    def _merge(
        collected: List[Candidate],
        raw_items: Iterable[Any],
        *,
        source: CandidateSource,
        source_url: Optional[str] = None,
    ) -> List[Candidate]:
        incoming: List[Candidate] = []
        for raw in raw_items or []:
            candidate = Candidate.from_raw(raw, source=source, source_url=source_url)
            if candidate is not None:
                incoming.append(candidate)
        return dedup_by_name([*collected, *incoming])

    def _commit(
        self,
        article: Article,
        collected: List[Candidate],
        found: List[Candidate],
        label: str,
        on_update: Optional[ProgressHook],
    ) -> List[Candidate]:
        merged = dedup_by_name([*collected, *found])
        if len(merged) != len(collected):
            self._persist(article, merged, label, on_update)
        return merged

    def _persist(
        self,
        article: Article,
        collected: List[Candidate],
        label: str,
        on_update: Optional[ProgressHook],
    ) -> None:
        self.repository.update_article(article.id, comparison_candidates=collected)
        if on_update:
            on_update(collected, label)

    def _call(self, label: str, func: Callable[[], T]) -> Optional[T]:
        """Run an upstream call under the backoff policy; None once attempts are spent."""
        for attempt in range(self.backoff.attempts):
            try:
                return func()
            except Exception as exc:
                logger.warning("%s failed (attempt %d/%d): %s", label, attempt + 1, self.backoff.attempts, exc)
                if attempt + 1 < self.backoff.attempts:
                    self.backoff.wait(attempt)
        return None

    # ------------------------------------------------------------------ #
    # Sources
    # ------------------------------------------------------------------ #
    def _from_reference_urls(self, article: Article, needed: int) -> List[Candidate]:
        found: List[Candidate] = []
        topic = derive_search_query(article.title, article.keywords) or article.title
        for url in article.reference_urls[:MAX_SOURCE_PAGES]:
            if len(found) >= needed:
                break
            found = dedup_by_name([*found, *self._extract_from_page(url, topic, CandidateSource.reference_page)])
        return found

    def _search_source_urls(self, query: str, locale: str) -> List[str]:
        urls: List[str] = []
        for template in QUERY_VARIANTS:
            variant = template.format(query=query)
            results = self._call(f"search '{variant}'", lambda: self.search_client.search(variant, locale, 10))
            for result in results or []:
                url = getattr(result, "url", "") or ""
                if is_valid_url(url) and url not in urls:
                    urls.append(url)
            if len(urls) >= MAX_SOURCE_PAGES:
                break
        return urls[:MAX_SOURCE_PAGES]

    def _extract_from_page(self, url: str, topic: str, source: CandidateSource) -> List[Candidate]:
        page = self.extractor.extract(url)
        if page.is_empty:
            return []
        prompt = "\n".join(
            [
                "You are a Japanese market researcher.",
                f"From the page below, list the real products/services/companies related to: {topic}",
                "Only include entities explicitly named on the page. Never invent names.",
                "Do not output generic placeholders such as 'サービスA' or '○○'.",
                "Output STRICT JSON only.",
                "",
                'JSON schema: { "candidates": [ { "name":"...", "websiteUrl":"...", "pricing":"...", '
                '"features":["..."], "description":"..." } ] }',
                "",
                f"URL: {url}",
                f"TITLE: {page.title}",
                "BODY (truncated):",
                clamp_text(page.text, 10000),
            ]
        )
        out = self._call(
            f"entity extraction {url}",
            lambda: self._generate_json(prompt, temperature=0.2, max_tokens=3000, log_info={"stage": "candidates", "url": url}),
        )
        items = out.get("candidates") if isinstance(out, dict) else out
        return self._merge([], items if isinstance(items, list) else [], source=source, source_url=url)

    def _from_knowledge(
        self,
        article: Article,
        query: Optional[str],
        collected: List[Candidate],
        needed: int,
    ) -> List[Candidate]:
        if needed <= 0:
            return []
        excluded = [candidate.name for candidate in collected]
        prompt = "\n".join(
            [
                "You are a Japanese market researcher.",
                f"List up to {needed} real, currently available products/services/companies for: {query or article.title}",
                f"Region: {article.comparison_config.region}",
                f"Exclude these names: {' / '.join(excluded)}" if excluded else "",
                "Only include entities you are confident exist. Return fewer items rather than guessing.",
                "Never output placeholders such as 'サービスA', 'XXX' or '○○'.",
                "Output STRICT JSON only.",
                "",
                'JSON schema: { "candidates": [ { "name":"...", "websiteUrl":"...", "pricing":"...", '
                '"features":["..."], "description":"..." } ] }',
            ]
        )
        out = self._call(
            "knowledge fallback",
            lambda: self._generate_json(prompt, temperature=0.3, max_tokens=3000, log_info={"stage": "candidates_knowledge", "article_id": article.id}),
        )
        items = out.get("candidates") if isinstance(out, dict) else out
        excluded_keys = {normalize_name(name) for name in excluded}
        found = [
            candidate
            for candidate in self._merge([], items if isinstance(items, list) else [], source=CandidateSource.ai_knowledge)
            if normalize_name(candidate.name) not in excluded_keys
        ]
        for idx, candidate in enumerate(found):
            found[idx] = candidate.model_copy(update={"source": CandidateSource.ai_knowledge})
        return found[:needed]

    # ------------------------------------------------------------------ #
    # Enrichment
    # ------------------------------------------------------------------ #
    def _enrich_official_urls(self, candidates: List[Candidate], locale: str) -> List[Candidate]:
        enriched: List[Candidate] = []
        for candidate in candidates:
            if candidate.website_url:
                enriched.append(candidate)
                continue
            query = f"{candidate.name} 公式サイト"
            results = self._call(f"search '{query}'", lambda: self.search_client.search(query, locale, 5)) or []
            official = _pick_official_url(results, candidate)
            if official:
                candidate = candidate.model_copy(update={"website_url": official})
            enriched.append(candidate)
        return enriched

    def _enrich_details(self, article: Article, candidates: List[Candidate]) -> List[Candidate]:
        config = article.comparison_config
        enriched: List[Candidate] = []
        for candidate in candidates:
            missing_pricing = config.include_pricing and not candidate.pricing
            missing_features = config.include_features and not candidate.features
            if not candidate.website_url or not (missing_pricing or missing_features):
                enriched.append(candidate)
                continue
            details = self._fetch_details(candidate)
            updates = {}
            if missing_pricing and details.get("pricing"):
                updates["pricing"] = str(details["pricing"]).strip()[:200]
            if missing_features and isinstance(details.get("features"), list):
                updates["features"] = [str(item).strip()[:100] for item in details["features"] if str(item).strip()][:10]
            if not candidate.description and details.get("description"):
                updates["description"] = str(details["description"]).strip()[:500]
            enriched.append(candidate.model_copy(update=updates) if updates else candidate)
        return enriched

    def _fetch_details(self, candidate: Candidate) -> dict:
        page = self.extractor.extract(candidate.website_url)
        if page.is_empty:
            return {}
        prompt = "\n".join(
            [
                "You are a Japanese market researcher.",
                f"From the official page of {candidate.name}, extract pricing and key features.",
                "Use only facts stated on the page. Leave a field empty when the page does not say.",
                "Output STRICT JSON only.",
                'JSON schema: { "pricing":"...", "features":["..."], "description":"..." }',
                "",
                f"URL: {candidate.website_url}",
                clamp_text(page.text, 8000),
            ]
        )
        out = self._call(
            f"detail extraction {candidate.name}",
            lambda: self._generate_json(prompt, temperature=0.2, max_tokens=1200, log_info={"stage": "candidate_details", "name": candidate.name}),
        )
        return out if isinstance(out, dict) else {}


def _pick_official_url(results: Iterable[Any], candidate: Candidate) -> Optional[str]:
    listing_domain = url_domain(candidate.source_url or "")
    for result in results:
        url = getattr(result, "url", "") or ""
        domain = url_domain(url)
        if not is_valid_url(url) or not domain or domain == listing_domain:
            continue
        if any(domain == blocked or domain.endswith(f".{blocked}") for blocked in AGGREGATOR_DOMAINS):
            continue
        return url
    return None


def merge_manual_candidates(repository: Any, article: Article, raw_items: Iterable[Any]) -> List[Candidate]:
    """Merge user-supplied candidates into the article, keeping existing entries first."""
    incoming: List[Candidate] = []
    for raw in raw_items:
        if isinstance(raw, dict):
            raw = {key: value for key, value in raw.items() if key != "source"}
        candidate = Candidate.from_raw(raw, source=CandidateSource.manual)
        if candidate is not None:
            incoming.append(candidate)
    merged = dedup_by_name([*article.comparison_candidates, *incoming])
    repository.update_article(article.id, comparison_candidates=merged)
    logger.info(
        "Article %s: merged %d manual candidates (%d total)",
        article.id,
        len(merged) - len(article.comparison_candidates),
        len(merged),
    )
    return merged
