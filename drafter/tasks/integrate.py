from __future__ import annotations

import logging
import math
from typing import Any, List, Optional, Tuple

from drafter_shared.text_utils import body_key, clamp_text, count_chars, is_valid_url, mentions_name, sanitize_placeholders

from ..core.config import Settings
from ..errors import StructuralError, UpstreamError
from ..models import Article, ArticleStatus, Artifact, Candidate, Job, Section
from ..validators import StructureValidator
from .base import GenerationStep
from .retry import BackoffPolicy
from .sections import ensure_heading

logger = logging.getLogger(__name__)

SUMMARY_TABLE_MAX_TARGET = 20000
MAX_PADDING_ITERATIONS = 12
LENGTH_FLOOR_RATIO = 0.85
FAILED_TEXT = "（生成に失敗しました）"


def padding_iteration_bound(target_chars: int) -> int:
    return min(MAX_PADDING_ITERATIONS, 3 + max(target_chars, 0) // 10000)


def find_uncovered_candidates(markdown: str, candidates: List[Candidate]) -> List[Candidate]:
    """Candidates whose normalized name does not appear anywhere in ``markdown``."""
    key = body_key(markdown)
    return [candidate for candidate in candidates if not mentions_name(key, candidate.name)]


def render_summary_table(article: Article, sections: List[Section]) -> str:
    if article.is_comparison:
        lines = [
            "## 比較早見表",
            "",
            "| 名称 | 料金 | 主な特徴 | 公式サイト |",
            "| --- | --- | --- | --- |",
        ]
        for candidate in article.comparison_candidates:
            features = " / ".join(candidate.features[:3]) or "要確認"
            lines.append(
                f"| {_cell(candidate.name)} | {_cell(candidate.pricing or '要確認')} | "
                f"{_cell(features)} | {candidate.website_url or '要確認'} |"
            )
        return "\n".join(lines)

    lines = ["## この記事でわかること", "", "| 見出し | 要点 |", "| --- | --- |"]
    for section in sections:
        lines.append(f"| {_cell(section.heading)} | {_cell(_lead_sentence(section.content or ''))} |")
    return "\n".join(lines)


def render_coverage_gap(candidates: List[Candidate]) -> str:
    lines = [
        "## その他の比較対象",
        "",
        "本文で詳しく触れられなかった比較対象についても、収集した情報を整理しておきます。",
    ]
    for candidate in candidates:
        lines.append("")
        lines.append(f"### {candidate.name}")
        if candidate.description:
            lines.append(candidate.description)
        if candidate.pricing:
            lines.append(f"- 料金: {candidate.pricing}")
        if candidate.features:
            lines.append(f"- 主な特徴: {' / '.join(candidate.features[:5])}")
        if candidate.website_url:
            lines.append(f"- 公式サイト: {candidate.website_url}")
        if not (candidate.description or candidate.pricing or candidate.features):
            lines.append("- 詳細は公式サイトで最新情報を確認してください。")
    return "\n".join(lines)


def collect_citation_urls(article: Article) -> List[str]:
    urls: List[str] = []
    for url in [
        *article.reference_urls,
        *[candidate.source_url for candidate in article.comparison_candidates],
    ]:
        if url and is_valid_url(url) and url not in urls:
            urls.append(url)
    return urls


def fallback_closing(article: Article, sections: List[Section]) -> str:
    points = "\n".join(f"- {section.heading}" for section in sections[:8])
    return "\n".join(
        [
            "## まとめ",
            "",
            f"本記事では「{article.title}」について、判断に必要なポイントを順に整理しました。",
            "最後に、押さえておきたい要点を振り返ります。",
            "",
            points,
            "",
            "まずは自社の目的と条件を明確にし、上記のポイントを一つずつ確認しながら検討を進めてください。",
        ]
    )


def _cell(value: str) -> str:
    return " ".join(str(value).replace("|", "／").split())[:80]


def _lead_sentence(content: str) -> str:
    for line in content.splitlines():
        text = line.strip().lstrip("-*>").strip()
        if not text or text.startswith("#") or text.startswith("|"):
            continue
        sentence = text.split("。")[0]
        return sentence[:60]
    return ""


class Integrator(GenerationStep):
    """Assembles reviewed sections into the final article and publishes it."""

    def __init__(
        self,
        gateway: Any,
        repository: Any,
        storage: Optional[Any] = None,
        *,
        settings: Optional[Settings] = None,
        backoff: Optional[BackoffPolicy] = None,
    ) -> None:
        super().__init__(gateway, settings=settings, backoff=backoff)
        self.repository = repository
        self.storage = storage

    def integrate(self, job: Job, article: Article) -> Artifact:
        sections = self.repository.list_sections(job.id)
        if not sections:
            raise StructuralError(f"job {job.id} has no sections to integrate")
        incomplete = [section.index for section in sections if not section.is_complete]
        if incomplete:
            raise StructuralError(f"sections not reviewed: {incomplete}")
        if article.is_comparison and not article.comparison_candidates:
            raise StructuralError("comparison article has no collected candidates")

        target = article.target_chars
        blocks: List[str] = [f"# {article.title}"]
        if target <= SUMMARY_TABLE_MAX_TARGET:
            blocks.append(render_summary_table(article, sections))
        if article.llmo_options.tldr:
            tldr = self._tldr_block(article, sections)
            if tldr:
                blocks.append(tldr)
        blocks.extend((section.content or "").strip() for section in sections)

        uncovered: List[str] = []
        if article.is_comparison:
            body = "\n\n".join(section.content or "" for section in sections)
            missing = find_uncovered_candidates(body, article.comparison_candidates)
            if missing:
                uncovered = [candidate.name for candidate in missing]
                logger.info("Job %s: adding coverage-gap section for %s", job.id, uncovered)
                blocks.append(render_coverage_gap(missing))

        citations = collect_citation_urls(article)
        citation_block = (
            "## 参考URL\n\n" + "\n".join(f"- {url}" for url in citations) if citations else ""
        )

        blocks, iterations = self._pad(job, article, blocks, extra_chars=count_chars(citation_block))

        body = "\n\n".join(blocks)
        if not StructureValidator.has_closing_section(body):
            blocks.append(self._closing(job, article, sections))
        if citation_block:
            blocks.append(citation_block)

        markdown = sanitize_placeholders("\n\n".join(block for block in blocks if block).strip() + "\n")
        char_count = count_chars(markdown)
        floor = math.ceil(target * LENGTH_FLOOR_RATIO)
        if char_count < floor:
            raise UpstreamError(f"artifact below length floor ({char_count} < {floor})")

        warnings = StructureValidator.validate(markdown, tone=article.tone)
        for warning in warnings:
            logger.info("Job %s structure warning: %s", job.id, warning)

        if self.storage is not None:
            self.storage.save_text(article.id, "final.md", markdown)
        self.repository.update_article(article.id, final_markdown=markdown, status=ArticleStatus.done)
        logger.info(
            "Integrated job %s: %d chars (target %d, padding iterations %d)",
            job.id,
            char_count,
            target,
            iterations,
        )
        return Artifact(
            markdown=markdown,
            char_count=char_count,
            padding_iterations=iterations,
            uncovered_candidates=uncovered,
            warnings=warnings,
        )

    def _tldr_block(self, article: Article, sections: List[Section]) -> str:
        headings = "\n".join(f"- {section.heading}" for section in sections)
        prompt = "\n".join(
            [
                "You are a Japanese chief editor for SEO + LLMO long-form articles.",
                "Write a TL;DR for the article: 3-5 Japanese bullet points, conclusion first.",
                "Output only the bullets (lines starting with '- ').",
                "Never mention products or companies that are not in the article." if article.is_comparison else "",
                "",
                f"Title: {article.title}",
                "Sections:",
                headings,
            ]
        )
        try:
            text = self._generate_text(prompt, temperature=0.35, max_tokens=800, log_info={"stage": "tldr", "article_id": article.id})
        except Exception as exc:
            logger.warning("TL;DR generation failed for article %s: %s", article.id, exc)
            return ""
        bullets = [line.strip() for line in text.splitlines() if line.strip().startswith(("-", "・", "*"))]
        if not bullets:
            return ""
        return "## TL;DR\n\n" + "\n".join(f"- {line.lstrip('-・* ').strip()}" for line in bullets[:5])

    def _pad(self, job: Job, article: Article, blocks: List[str], *, extra_chars: int = 0) -> Tuple[List[str], int]:
        target = article.target_chars
        goal = math.ceil(target * self.settings.padding_ratio)
        bound = padding_iteration_bound(target)
        blocks = list(blocks)
        iterations = 0
        while count_chars("\n\n".join(blocks)) + extra_chars < goal and iterations < bound:
            iterations += 1
            current = count_chars("\n\n".join(blocks)) + extra_chars
            headings = [block.splitlines()[0][3:] for block in blocks if block.startswith("## ")]
            wanted = min(3000, max(goal - current, 800))
            prompt = "\n".join(
                [
                    "You are a Japanese SEO + LLMO expert writer.",
                    "The article is shorter than required. Write ONE additional H2 section in Japanese Markdown.",
                    f"Write about {wanted} Japanese chars. Start with '## '.",
                    "Choose a topic NOT covered by the existing headings; prefer practical steps, cases, pitfalls or FAQ.",
                    "Never invent products or companies; only use ones already in the article." if article.is_comparison else "",
                    "",
                    f"Title: {article.title}",
                    f"Tone: {article.tone}",
                    "Existing headings:",
                    *[f"- {heading}" for heading in headings],
                    "",
                    "Article tail (for continuity):",
                    clamp_text(blocks[-1], 1500),
                ]
            )
            try:
                text = self._generate_text(
                    prompt,
                    temperature=0.7,
                    max_tokens=6000,
                    log_info={"stage": "padding", "job_id": job.id, "iteration": iterations},
                )
            except Exception as exc:
                logger.warning("Padding iteration %d failed for job %s: %s", iterations, job.id, exc)
                continue
            if not text:
                logger.warning("Padding iteration %d returned empty text for job %s", iterations, job.id)
                continue
            blocks.append(ensure_heading(text, f"補足: 実践のポイント（{iterations}）"))
        if iterations:
            logger.info(
                "Job %s padding finished after %d iterations (%d / goal %d chars)",
                job.id,
                iterations,
                count_chars("\n\n".join(blocks)) + extra_chars,
                goal,
            )
        return blocks, iterations

    def _closing(self, job: Job, article: Article, sections: List[Section]) -> str:
        prompt = "\n".join(
            [
                "You are a Japanese chief editor.",
                "Write the closing section of the article in Japanese Markdown, 300-500 chars.",
                "Start with '## まとめ'. Summarize the key decisions and the next action for the reader.",
                "",
                f"Title: {article.title}",
                "Sections:",
                *[f"- {section.heading}" for section in sections],
            ]
        )
        try:
            text = self._generate_text(prompt, temperature=0.4, max_tokens=1500, log_info={"stage": "closing", "job_id": job.id})
        except Exception as exc:
            logger.warning("Closing generation failed for job %s: %s", job.id, exc)
            text = ""
        if text and StructureValidator.has_closing_section(text):
            return text.strip()
        if text and not text.lstrip().startswith("#"):
            return ensure_heading(text, "まとめ")
        return fallback_closing(article, sections)

    def record_extras(self, article: Article, markdown: str) -> None:
        """Internal link ideas, SNS copy and the optional banner. Failures never propagate."""
        self._record_knowledge(
            article,
            item_type="internal_link",
            title="内部リンク提案",
            prompt="\n".join(
                [
                    "You are a Japanese SEO strategist.",
                    "From the article, propose internal links that would strengthen topical authority.",
                    "Output 8-15 items. Each item: anchor, suggested target type, rationale.",
                    'Do NOT invent existing pages. Use target types like "サービス紹介", "料金", "比較", "事例", "FAQ", "用語集".',
                    "Output as bullet list in Japanese (not JSON).",
                    "",
                    clamp_text(markdown, 8000),
                ]
            ),
            temperature=0.4,
        )
        self._record_knowledge(
            article,
            item_type="sns",
            title="SNS要約 & CTA案",
            prompt="\n".join(
                [
                    "You are a Japanese social media editor.",
                    "Create: (1) X(Twitter) post (<=140 chars), (2) LinkedIn style post (~400 chars), "
                    "(3) CTA paragraph for the article end (80-140 chars).",
                    "Avoid clickbait. Keep specific and helpful.",
                    "",
                    f"Title: {article.title}",
                    clamp_text(markdown, 5000),
                ]
            ),
            temperature=0.7,
        )
        if self.settings.generate_banner and self.storage is not None:
            self._generate_banner(article)

    def _record_knowledge(self, article: Article, *, item_type: str, title: str, prompt: str, temperature: float) -> None:
        try:
            text = self._generate_text(prompt, temperature=temperature, max_tokens=1200, log_info={"stage": item_type, "article_id": article.id})
        except Exception as exc:
            logger.warning("%s generation failed for article %s: %s", item_type, article.id, exc)
            text = ""
        self.repository.add_knowledge_item(
            article.id,
            item_type=item_type,
            title=title,
            content=text or FAILED_TEXT,
            user_id=article.user_id,
            source_urls=article.reference_urls,
        )

    def _generate_banner(self, article: Article) -> None:
        prompt = (
            f"Blog header banner for a Japanese article titled '{article.title}'. "
            "Clean flat illustration, no text, no logos, 16:9 composition."
        )
        try:
            data = self.gateway.generate_image(prompt)
            path = self.storage.save_bytes(article.id, "banner.png", data, content_type="image/png")
            self.repository.update_article(article.id, banner_path=path)
            logger.info("Banner stored for article %s at %s", article.id, path)
        except Exception as exc:
            logger.warning("Banner generation failed for article %s: %s", article.id, exc)
