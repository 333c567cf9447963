from __future__ import annotations

import logging
import math
from typing import Any, List, Optional, Tuple

from drafter_shared.text_utils import clamp_text, count_chars

from ..core.config import Settings
from ..errors import StructuralError
from ..models import Article, Job, Section, SectionStatus
from .base import GenerationStep
from .retry import BackoffPolicy

logger = logging.getLogger(__name__)

ATTEMPT_TEMPERATURES = (0.7, 0.8, 0.9)
MIN_ACCEPT_RATIO = 0.35
EXPAND_RATIO = 0.75
MIN_SECTION_CHARS = 200


def fallback_skeleton(heading: str) -> str:
    """Deterministic section body used when generation keeps failing."""
    return "\n".join(
        [
            f"## {heading}",
            "",
            f"{heading}について、判断に必要な観点を整理します。"
            "ここでは実務で確認すべき項目をチェックリスト形式でまとめ、次のアクションにつなげられるようにしています。",
            "",
            "### 確認チェックリスト",
            "- 目的と期待する成果を言語化し、関係者と合意できているか",
            "- 現状の課題と制約条件（予算・期間・体制）を把握しているか",
            "- 比較・検討に使う評価基準を事前に決めているか",
            "- 実行の手順と担当者を明確にしているか",
            "- 効果測定の指標と振り返りのタイミングを設定しているか",
            "- 想定されるリスクと代替案を用意しているか",
            "",
            "### 進め方のポイント",
            "チェックリストのうち未確認の項目から優先的に着手し、判断材料がそろった段階で次のステップに進むのが安全です。",
        ]
    )


def ensure_heading(content: str, heading: str) -> str:
    body = content.strip()
    if body.startswith("## "):
        return body
    return f"## {heading}\n\n{body}"


class SectionDrafter(GenerationStep):
    """Drafts one section at a time and always leaves it reviewed with content."""

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

    def draft_section(self, job: Job, article: Article, index: int, research_context: str = "") -> Section:
        section = self.repository.get_section(job.id, index)
        if section is None:
            raise StructuralError(f"section {index} does not exist for job {job.id}")

        previous = [
            item
            for item in self.repository.list_sections(job.id)
            if item.index < index and (item.content or "").strip()
        ][-2:]
        recent = "\n\n".join(
            f"# Prev section {item.index}\n{clamp_text(item.content, 2200)}" for item in previous
        )
        log_info = {"stage": "section", "job_id": job.id, "section": index}

        prompt = self._build_prompt(article, section, recent, research_context)
        content, calls = self._draft_with_retries(prompt, section, log_info)
        content = ensure_heading(content, section.heading)

        content, issues = self._consistency_pass(article, content, recent, log_info)
        calls += 1

        minimum_expected = math.ceil(section.planned_chars * EXPAND_RATIO)
        if count_chars(content) < minimum_expected:
            content = self._expand(article, section, content, log_info)
            calls += 1

        while count_chars(content) < MIN_SECTION_CHARS:
            content = f"{content.rstrip()}\n\n{fallback_skeleton(section.heading)}".strip()

        consistency = "ISSUES:\n- " + "\n- ".join(issues) if issues else None
        updated = self.repository.update_section(
            job.id,
            index,
            content=content,
            status=SectionStatus.reviewed,
            consistency=consistency,
            attempts=section.attempts + calls,
        )
        logger.info(
            "Drafted section %d for job %s (%d chars, planned %d)",
            index,
            job.id,
            count_chars(content),
            section.planned_chars,
        )
        return updated

    def _build_prompt(self, article: Article, section: Section, recent: str, research_context: str) -> str:
        comparison: List[str] = []
        if article.is_comparison:
            comparison = [
                "Comparison mode rules:",
                "- Mention ONLY the entities listed below. Never invent products, companies or prices.",
                "- Never use placeholder names such as 'サービスA', 'XXX' or '○○'.",
                "- If a detail is unknown, say it should be checked on the official site.",
                "Collected entities:",
                *[_candidate_line(candidate) for candidate in article.comparison_candidates],
                "",
            ]
        return "\n".join(
            [
                "You are a Japanese SEO + LLMO expert writer.",
                "Write ONE section only in Japanese. Markdown output.",
                "Do NOT copy from sources; paraphrase ideas and add originality (experience, tradeoffs, examples, failure cases).",
                'Avoid "AIっぽい" generic filler. Be specific and practical.',
                "",
                f"Article title: {article.title}",
                f"Tone: {article.tone}",
                f"Forbidden: {' / '.join(article.forbidden)}" if article.forbidden else "",
                "",
                "Outline (for consistency):",
                clamp_text(article.outline or "", 2500),
                "",
                f"Recent context:\n{recent}" if recent else "",
                "",
                f"Write section index {section.index} with plannedChars ~{section.planned_chars}.",
                f"Section headingPath: {section.heading_path}",
                "",
                "Rules:",
                f'- Start with "## {section.heading}" (H2) exactly as in the outline.',
                "- Use H3/H4 as needed.",
                "- Include: concrete checklist/steps/examples where appropriate.",
                "- Avoid repeating earlier sections.",
                "",
                *comparison,
                research_context,
            ]
        )

    def _draft_with_retries(self, prompt: str, section: Section, log_info: dict) -> Tuple[str, int]:
        threshold = math.ceil(section.planned_chars * MIN_ACCEPT_RATIO)
        calls = 0
        for attempt, temperature in enumerate(ATTEMPT_TEMPERATURES):
            calls += 1
            try:
                text = self._generate_text(
                    prompt,
                    temperature=temperature,
                    max_tokens=6000,
                    log_info={**log_info, "attempt": attempt + 1},
                )
            except Exception as exc:
                logger.warning("Section %s attempt %d failed: %s", section.index, attempt + 1, exc)
                text = ""
            if count_chars(text) >= threshold:
                return text, calls
            logger.info(
                "Section %s attempt %d too short (%d < %d)",
                section.index,
                attempt + 1,
                count_chars(text),
                threshold,
            )
            if attempt + 1 < len(ATTEMPT_TEMPERATURES):
                self.backoff.wait(attempt)
        logger.warning("Section %s falling back to skeleton after %d attempts", section.index, calls)
        return fallback_skeleton(section.heading), calls

    def _consistency_pass(self, article: Article, content: str, recent: str, log_info: dict) -> Tuple[str, List[str]]:
        prompt = "\n".join(
            [
                "You are a Japanese editor. Check the section for:",
                "- contradictions with outline/context",
                "- redundancy with previous sections",
                "- missing details vs the heading",
                "Then rewrite the section to fix issues.",
                "Output STRICT JSON only.",
                "",
                "JSON schema:",
                '{ "issues": ["..."], "rewritten": "markdown" }',
                "",
                "Outline:",
                clamp_text(article.outline or "", 2200),
                "",
                f"Recent context:\n{recent}" if recent else "",
                "",
                "Section draft:",
                clamp_text(content, 6000),
            ]
        )
        try:
            out = self._generate_json(prompt, temperature=0.3, max_tokens=6500, log_info={**log_info, "stage": "consistency"})
        except Exception as exc:
            logger.info("Consistency pass skipped for %s: %s", log_info.get("section"), exc)
            return content, []
        if not isinstance(out, dict):
            return content, []
        issues = [str(item).strip() for item in out.get("issues") or [] if str(item).strip()]
        rewritten = out.get("rewritten")
        if isinstance(rewritten, str) and rewritten.strip():
            heading = content.splitlines()[0][3:].strip()
            return ensure_heading(rewritten, heading), issues
        return content, issues

    def _expand(self, article: Article, section: Section, content: str, log_info: dict) -> str:
        missing = max(section.planned_chars - count_chars(content), 0)
        prompt = "\n".join(
            [
                "You are a Japanese SEO + LLMO expert writer.",
                f"The section below is too short. Write about {missing} additional Japanese chars that deepen it.",
                "Add concrete examples, steps, failure cases or decision criteria. Do not repeat existing sentences.",
                "Output only the additional Markdown (H3 headings allowed, no H2).",
                "Never invent products or companies that are not already mentioned." if article.is_comparison else "",
                "",
                f"Article title: {article.title}",
                f"Section: {section.heading_path}",
                "",
                clamp_text(content, 6000),
            ]
        )
        try:
            extra = self._generate_text(prompt, temperature=0.7, max_tokens=4000, log_info={**log_info, "stage": "expand"})
        except Exception as exc:
            logger.warning("Expansion failed for section %s: %s", section.index, exc)
            return content
        if not extra:
            return content
        return f"{content.rstrip()}\n\n{extra.strip()}"


def _candidate_line(candidate: Any) -> str:
    parts = [f"- {candidate.name}"]
    if candidate.website_url:
        parts.append(f"URL: {candidate.website_url}")
    if candidate.pricing:
        parts.append(f"料金: {candidate.pricing}")
    if candidate.features:
        parts.append(f"特徴: {' / '.join(candidate.features[:5])}")
    return " | ".join(parts)
