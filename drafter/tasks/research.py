from __future__ import annotations

import logging
from typing import Any, List, Optional

from drafter_shared.text_utils import clamp_text

from ..core.config import Settings
from ..models import Article, Reference, ReferenceInsights
from .base import GenerationStep
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)


class ReferenceResearcher(GenerationStep):
    """Fetches and summarizes an article's reference URLs, once per URL."""

    def __init__(
        self,
        gateway: Any,
        repository: Any,
        extractor: Any,
        *,
        settings: Optional[Settings] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> None:
        super().__init__(gateway, settings=settings, backoff=backoff)
        self.repository = repository
        self.extractor = extractor

    def research(self, article: Article) -> int:
        """Store a Reference for every URL not yet researched. Returns the number stored."""
        known = {reference.url for reference in self.repository.list_references(article.id)}
        stored = 0
        for url in article.reference_urls:
            if url in known:
                logger.debug("Reference already stored for %s", url)
                continue
            try:
                reference = self._research_url(article, url)
            except Exception as exc:
                logger.warning("Research failed for article %s url=%s: %s", article.id, url, exc)
                continue
            if reference is None:
                continue
            self.repository.upsert_reference(reference)
            self.repository.add_knowledge_item(
                article.id,
                item_type="insight",
                title=f"参考URL要点: {reference.title or url}",
                content=_insight_text(reference),
                user_id=article.user_id,
                source_urls=[url],
            )
            known.add(url)
            stored += 1
        logger.info("Research for article %s stored %d references", article.id, stored)
        return stored

    def _research_url(self, article: Article, url: str) -> Optional[Reference]:
        page = self.extractor.extract(url)
        if page.is_empty:
            logger.info("Skipping %s: no extractable text", url)
            return None

        prompt = "\n".join(
            line
            for line in [
                "You are a Japanese SEO analyst.",
                "Summarize and analyze this page WITHOUT copying sentences.",
                "Output STRICT JSON only.",
                "",
                "JSON schema:",
                '{ "summary":"...", "insights": { "claims":[], "structure":[], "faq":[], "internalLinks":[] } }',
                "",
                f"URL: {url}",
                f"TITLE: {page.title}" if page.title else "",
                "HEADINGS:",
                f"H2: {' / '.join(page.headings.get('h2', []))}",
                f"H3: {' / '.join(page.headings.get('h3', []))}",
                "",
                "BODY (truncated):",
                clamp_text(page.text, 12000),
            ]
            if line
        )
        out = self._generate_json(
            prompt,
            temperature=0.3,
            max_tokens=1800,
            log_info={"stage": "research", "article_id": article.id, "url": url},
        )
        if not isinstance(out, dict):
            raise ValueError("research summary is not an object")
        insights_raw = out.get("insights") if isinstance(out.get("insights"), dict) else {}
        insights = ReferenceInsights(
            claims=insights_raw.get("claims"),
            structure=insights_raw.get("structure"),
            faq=insights_raw.get("faq"),
            internal_links=insights_raw.get("internalLinks") or insights_raw.get("internal_links"),
        )
        return Reference(
            article_id=article.id,
            url=url,
            title=page.title,
            extracted_text=page.text,
            headings=page.headings,
            summary=str(out.get("summary") or "").strip(),
            insights=insights,
        )

    def build_context(self, article_id: str) -> str:
        """Render stored references as a prompt block; empty when none exist."""
        return render_research_context(self.repository.list_references(article_id))


def render_research_context(references: List[Reference]) -> str:
    if not references:
        return ""
    blocks: List[str] = []
    for reference in references:
        h2 = reference.headings.get("h2") or []
        h3 = reference.headings.get("h3") or []
        insights = reference.insights
        lines = [
            f"URL: {reference.url}",
            f"TITLE: {reference.title}" if reference.title else "",
            f"SUMMARY: {clamp_text(reference.summary, 1200)}" if reference.summary else "",
            f"H2: {' / '.join(h2[:15])}" if h2 else "",
            f"H3: {' / '.join(h3[:20])}" if h3 else "",
            f"CLAIMS: {' / '.join(insights.claims[:10])}" if insights.claims else "",
            f"FAQ: {' / '.join(insights.faq[:10])}" if insights.faq else "",
            f"INTERNAL_LINKS: {' / '.join(insights.internal_links[:10])}" if insights.internal_links else "",
        ]
        blocks.append("\n".join(line for line in lines if line))
    return "\n\n=== RESEARCH (summarized) ===\n" + "\n\n---\n\n".join(blocks) + "\n"


def _insight_text(reference: Reference) -> str:
    claims = "\n- ".join(reference.insights.claims)
    return f"{reference.summary}\n\n主張:\n- {claims}" if claims else reference.summary
