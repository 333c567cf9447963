from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from drafter_shared.text_utils import clamp_text, normalize_heading

from ..core.config import Settings
from ..models import Article, Outline, OutlineSection
from .base import GenerationStep
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)

MAX_SECTIONS = 60
MIN_PLANNED_CHARS = 400
MAX_PLANNED_CHARS = 3200

# (upper bound of targetChars, minimum section count)
MIN_SECTION_STEPS = [
    (3000, 3),
    (6000, 4),
    (10000, 5),
    (20000, 8),
    (30000, 12),
    (40000, 16),
]

FILLER_SECTIONS = [
    ("比較表で整理するポイント", "比較"),
    ("導入前に確認したいチェックリスト", "手順"),
    ("よくある失敗事例と回避策", "事例"),
    ("よくある質問（FAQ）", "FAQ"),
    ("そのまま使えるテンプレート", "テンプレ"),
]


def compute_min_sections(target_chars: int) -> int:
    """Minimum number of H2 sections for a target length."""
    target = max(int(target_chars or 0), 0)
    for upper, count in MIN_SECTION_STEPS:
        if target <= upper:
            return count
    return min(MAX_SECTIONS, max(MIN_SECTION_STEPS[-1][1], target // 2500))


def parse_markdown_outline(markdown: str) -> Outline:
    """Line scanner for markdown outlines: ``##`` sections, ``###`` and ``####`` below them."""
    sections: List[Dict[str, Any]] = []
    current: Optional[Dict[str, Any]] = None
    current_h3: Optional[str] = None
    for raw_line in (markdown or "").splitlines():
        line = raw_line.strip()
        if line.startswith("#### "):
            if current is not None and current_h3:
                heading = normalize_heading(line)
                if heading:
                    current["h4"].setdefault(current_h3, []).append(heading)
        elif line.startswith("### "):
            if current is not None:
                heading = normalize_heading(line)
                if heading:
                    current["h3"].append(heading)
                    current_h3 = heading
        elif line.startswith("## "):
            heading = normalize_heading(line)
            if heading:
                current = {"h2": heading, "h3": [], "h4": {}}
                current_h3 = None
                sections.append(current)
    return Outline.from_raw({"sections": sections})


def ensure_min_sections(outline: Outline, minimum: int) -> Outline:
    """Append filler sections until the outline has at least ``minimum`` entries."""
    sections = list(outline.sections)
    existing = {section.h2 for section in sections}
    round_no = 1
    while len(sections) < minimum:
        for heading, tag in FILLER_SECTIONS:
            if len(sections) >= minimum:
                break
            title = heading if round_no == 1 else f"{heading}（{round_no}）"
            if title in existing:
                continue
            existing.add(title)
            sections.append(OutlineSection(h2=title, intent_tag=tag))
        round_no += 1
    return outline.model_copy(update={"sections": sections})


def scale_planned_chars(outline: Outline, target_chars: int) -> List[int]:
    """Planned length per section, scaled so the sum tracks ``target_chars``."""
    count = max(len(outline.sections), 1)
    default = max(target_chars // count, 1)
    planned = [section.planned_chars or default for section in outline.sections]
    ratio = target_chars / max(sum(planned), 1)
    return [max(MIN_PLANNED_CHARS, min(MAX_PLANNED_CHARS, int(round(value * ratio)))) for value in planned]


class OutlineSynthesizer(GenerationStep):
    """Builds the article outline: structured output first, markdown headings as fallback."""

    def __init__(
        self,
        gateway: Any,
        repository: Any,
        *,
        settings: Optional[Settings] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> None:
        super().__init__(gateway, settings=settings, backoff=backoff)
        self.repository = repository

    def build_outline(self, article: Article, research_context: str = "") -> Outline:
        minimum = compute_min_sections(article.target_chars)
        outline = self._structured_outline(article, research_context, minimum)
        if outline is None:
            outline = self._markdown_outline(article, research_context, minimum)
        if outline is None:
            logger.warning("Outline generation failed for article %s; using filler sections only", article.id)
            outline = Outline(sections=[OutlineSection(h2=f"{article.title}の基本", intent_tag="定義")])
        if len(outline.sections) < minimum:
            logger.info(
                "Outline for article %s has %d sections (< %d); appending fillers",
                article.id,
                len(outline.sections),
                minimum,
            )
            outline = ensure_min_sections(outline, minimum)
        if len(outline.sections) > MAX_SECTIONS:
            outline = outline.model_copy(update={"sections": outline.sections[:MAX_SECTIONS]})
        return outline

    def _requirements(self, article: Article, minimum: int) -> List[str]:
        comparison = []
        if article.is_comparison:
            names = [candidate.name for candidate in article.comparison_candidates]
            comparison = [
                "Comparison mode: compare ONLY these collected entities, never invent others:",
                " / ".join(names) if names else "(none collected)",
            ]
        return [
            "Article requirements (Japanese):",
            f"- Title: {article.title}",
            f"- Keywords: {', '.join(article.keywords)}",
            f"- Persona: {clamp_text(article.persona, 1200)}" if article.persona else "",
            f"- Search intent: {clamp_text(article.search_intent, 1200)}" if article.search_intent else "",
            f"- Target chars: {article.target_chars}",
            f"- Tone: {article.tone}",
            f"- Forbidden: {' / '.join(article.forbidden)}" if article.forbidden else "",
            f"- Minimum H2 sections: {minimum}",
            *comparison,
            "",
            "LLMO elements toggles:",
            article.llmo_options.describe(),
        ]

    def _structured_outline(self, article: Article, research_context: str, minimum: int) -> Optional[Outline]:
        prompt = "\n".join(
            [
                "You are a Japanese SEO + LLMO expert editor.",
                "Produce an outline that can scale to the target length without breaking.",
                "Do NOT copy text from sources. Only paraphrase insights.",
                "Output JSON with keys: sections, internalLinkIdeas, faq, glossary, diagramIdeas.",
                "",
                *self._requirements(article, minimum),
                "",
                research_context,
                "",
                "Constraints:",
                "- Each plannedChars 1500-3000 (except intro/conclusion).",
                "- Add intentTag per section (e.g., 定義/比較/手順/事例/注意点/FAQ/用語).",
                "- Include E-E-A-T reinforcement sections (experience, decision tradeoffs, failure cases).",
                "- Include at least one: comparison table, checklist, step-by-step template.",
                "- Ensure headings are consistent and non-overlapping.",
                "",
                "JSON schema example:",
                '{ "sections":[{"h2":"...", "intentTag":"...", "plannedChars":2000, "h3":["..."], '
                '"h4":{"H3 title":["..."]}}], "internalLinkIdeas":["..."], "faq":["..."], "glossary":["..."], '
                '"diagramIdeas":[{"title":"...", "description":"...", "insertionHint":"..."}] }',
            ]
        )
        try:
            raw = self._generate_json(
                prompt,
                temperature=0.3,
                max_tokens=6000,
                log_info={"stage": "outline", "article_id": article.id},
            )
            return Outline.from_raw(raw)
        except ValueError as exc:
            logger.warning("Structured outline rejected for article %s: %s", article.id, exc)
        except Exception as exc:
            logger.warning("Structured outline request failed for article %s: %s", article.id, exc)
        return None

    def _markdown_outline(self, article: Article, research_context: str, minimum: int) -> Optional[Outline]:
        prompt = "\n".join(
            [
                "You are a Japanese SEO + LLMO expert editor.",
                "Write the article outline as Markdown headings only.",
                "Use '## ' for sections, '### ' for subsections and '#### ' for sub-subsections.",
                "",
                *self._requirements(article, minimum),
                "",
                research_context,
            ]
        )
        try:
            markdown = self._generate_text(
                prompt,
                temperature=0.4,
                max_tokens=4000,
                log_info={"stage": "outline_markdown", "article_id": article.id},
            )
            return parse_markdown_outline(markdown)
        except ValueError as exc:
            logger.warning("Markdown outline had no sections for article %s: %s", article.id, exc)
        except Exception as exc:
            logger.warning("Markdown outline request failed for article %s: %s", article.id, exc)
        return None

    def record_intro_variants(self, article: Article) -> None:
        """Store two intro drafts as an ``intro_ab`` knowledge item; failure text is stored instead."""
        prompt = "\n".join(
            [
                "You are a Japanese copywriter for SEO intros.",
                "Create two different intro drafts (A/B) for the article.",
                "A: logical and business-like. B: friendly and story-driven.",
                "Each 250-400 Japanese chars. No exaggeration. Avoid generic AI tone.",
                "",
                f"Title: {article.title}",
                f"Keywords: {', '.join(article.keywords)}",
                f"Persona: {clamp_text(article.persona, 800)}" if article.persona else "",
                f"Intent: {clamp_text(article.search_intent, 800)}" if article.search_intent else "",
                "",
                "Output format (Japanese):",
                "A: ...",
                "B: ...",
            ]
        )
        try:
            text = self._generate_text(
                prompt,
                temperature=0.6,
                max_tokens=1000,
                log_info={"stage": "intro_ab", "article_id": article.id},
            )
        except Exception as exc:
            logger.warning("Intro A/B generation failed for article %s: %s", article.id, exc)
            text = ""
        self.repository.add_knowledge_item(
            article.id,
            item_type="intro_ab",
            title="導入文案A/B",
            content=text or "A: （生成に失敗しました）\nB: （生成に失敗しました）",
            user_id=article.user_id,
            source_urls=article.reference_urls,
        )
