from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from drafter_shared.text_utils import dedup_by_name, is_placeholder_name, is_valid_url, normalize_heading

from .errors import ErrorKind


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    pending = "pending"
    running = "running"
    paused = "paused"
    cancelled = "cancelled"
    done = "done"
    error = "error"


# Advance() is a no-op for these.
HALTED_JOB_STATUSES = {JobStatus.paused, JobStatus.cancelled, JobStatus.done, JobStatus.error}


class ArticleMode(str, Enum):
    standard = "standard"
    comparison_research = "comparison_research"


class ArticleStatus(str, Enum):
    draft = "draft"
    running = "RUNNING"
    done = "DONE"
    error = "ERROR"


class SectionStatus(str, Enum):
    pending = "pending"
    reviewed = "reviewed"


class CandidateSource(str, Enum):
    existing = "existing"
    manual = "manual"
    reference_page = "reference_page"
    web_extraction = "web_extraction"
    ai_knowledge = "ai_knowledge"


class LlmoOptions(BaseModel):
    tldr: bool = True
    conclusion_first: bool = True
    faq: bool = True
    glossary: bool = True
    comparison: bool = True
    quotes: bool = True
    templates: bool = True
    objections: bool = True

    def describe(self) -> str:
        labels = {
            "tldr": "TL;DR",
            "conclusion_first": "結論ファースト＋根拠",
            "faq": "FAQ",
            "glossary": "用語集",
            "comparison": "比較表",
            "quotes": "引用・根拠（言い換え）",
            "templates": "実務テンプレ（手順/チェックリスト/例文）",
            "objections": "反論に答える",
        }
        return "\n".join(
            f"{'ON' if getattr(self, key) else 'OFF'}: {label}" for key, label in labels.items()
        )


class ComparisonConfig(BaseModel):
    desired_count: int = Field(default=10, ge=1, le=50)
    region: str = "JP"
    include_pricing: bool = True
    include_features: bool = True
    include_official_url: bool = True


class Candidate(BaseModel):
    name: str
    website_url: Optional[str] = None
    pricing: Optional[str] = None
    features: List[str] = Field(default_factory=list)
    description: Optional[str] = None
    source: CandidateSource = CandidateSource.existing
    source_url: Optional[str] = None

    @classmethod
    def from_raw(
        cls,
        raw: Any,
        *,
        source: CandidateSource,
        source_url: Optional[str] = None,
    ) -> Optional["Candidate"]:
        """Build a candidate from loose collaborator output; None when unusable."""
        if isinstance(raw, Candidate):
            return None if is_placeholder_name(raw.name) else raw
        if isinstance(raw, str):
            raw = {"name": raw}
        if not isinstance(raw, dict):
            return None

        name = str(raw.get("name") or raw.get("title") or "").strip()
        if not name or len(name) > 100 or is_placeholder_name(name):
            return None

        website_url = str(raw.get("website_url") or raw.get("websiteUrl") or raw.get("url") or "").strip()
        features_raw = raw.get("features") or []
        if isinstance(features_raw, str):
            features_raw = [item for item in features_raw.replace("、", ",").split(",")]
        features = [str(item).strip()[:100] for item in features_raw if str(item).strip()][:10]
        pricing = str(raw.get("pricing") or "").strip()[:200] or None
        description = str(raw.get("description") or "").strip()[:500] or None

        raw_source = raw.get("source")
        try:
            resolved_source = CandidateSource(raw_source) if raw_source else source
        except ValueError:
            resolved_source = source
        resolved_source_url = str(raw.get("source_url") or raw.get("sourceUrl") or source_url or "").strip()

        return cls(
            name=name,
            website_url=website_url if is_valid_url(website_url) else None,
            pricing=pricing,
            features=features,
            description=description,
            source=resolved_source,
            source_url=resolved_source_url if is_valid_url(resolved_source_url) else None,
        )


class ArticleCreate(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    keywords: List[str] = Field(default_factory=list, max_length=50)
    persona: str = ""
    search_intent: str = ""
    tone: str = "丁寧"
    forbidden: List[str] = Field(default_factory=list, max_length=50)
    target_chars: int = Field(default=10000, ge=1000, le=60000)
    reference_urls: List[str] = Field(default_factory=list, max_length=20)
    mode: ArticleMode = ArticleMode.standard
    comparison_config: ComparisonConfig = Field(default_factory=ComparisonConfig)
    comparison_candidates: List[Candidate] = Field(default_factory=list)
    llmo_options: LlmoOptions = Field(default_factory=LlmoOptions)
    user_id: Optional[str] = None

    @field_validator("comparison_candidates", mode="before")
    @classmethod
    def _clean_candidates(cls, value: Any) -> List[Candidate]:
        """Placeholder names are dropped and duplicates collapse to the first entry."""
        candidates = []
        for raw in value or []:
            candidate = Candidate.from_raw(raw, source=CandidateSource.existing)
            if candidate is not None:
                candidates.append(candidate)
        return dedup_by_name(candidates)

    @field_validator("reference_urls")
    @classmethod
    def _keep_valid_urls(cls, value: List[str]) -> List[str]:
        urls: List[str] = []
        for url in value:
            url = str(url).strip()
            if is_valid_url(url) and url not in urls:
                urls.append(url)
        return urls


class Article(ArticleCreate):
    id: str
    outline: Optional[str] = None
    final_markdown: Optional[str] = None
    banner_path: Optional[str] = None
    status: ArticleStatus = ArticleStatus.draft
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_comparison(self) -> bool:
        return self.mode == ArticleMode.comparison_research


class JobEvent(BaseModel):
    at: datetime = Field(default_factory=utcnow)
    step: str
    level: str = "info"
    message: str


class JobStats(BaseModel):
    sections_total: int = 0
    sections_reviewed: int = 0
    candidates: int = 0
    candidate_sources: Dict[str, int] = Field(default_factory=dict)
    references: int = 0
    artifact_chars: int = 0
    padding_iterations: int = 0


class Job(BaseModel):
    id: str
    article_id: str
    status: JobStatus = JobStatus.pending
    step: str = "init"
    progress: int = Field(default=0, ge=0, le=100)
    cursor: int = 0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    retry_count: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    events: List[JobEvent] = Field(default_factory=list)
    stats: JobStats = Field(default_factory=JobStats)


class Section(BaseModel):
    job_id: str
    article_id: str
    index: int = Field(..., ge=0)
    heading: str
    intent_tag: str = ""
    planned_chars: int = 2000
    content: Optional[str] = None
    status: SectionStatus = SectionStatus.pending
    consistency: Optional[str] = None
    attempts: int = 0
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def heading_path(self) -> str:
        tag = f" [{self.intent_tag}]" if self.intent_tag else ""
        return f"H2: {self.heading}{tag}"

    @property
    def is_complete(self) -> bool:
        return self.status == SectionStatus.reviewed and bool((self.content or "").strip())


class ReferenceInsights(BaseModel):
    claims: List[str] = Field(default_factory=list)
    structure: List[str] = Field(default_factory=list)
    faq: List[str] = Field(default_factory=list)
    internal_links: List[str] = Field(default_factory=list)

    @field_validator("claims", "structure", "faq", "internal_links", mode="before")
    @classmethod
    def _coerce_strings(cls, value: Any) -> List[str]:
        return _string_items(value)


class Reference(BaseModel):
    article_id: str
    url: str
    title: str = ""
    fetched_at: datetime = Field(default_factory=utcnow)
    extracted_text: str = ""
    headings: Dict[str, List[str]] = Field(default_factory=dict)
    summary: str = ""
    insights: ReferenceInsights = Field(default_factory=ReferenceInsights)


class KnowledgeItem(BaseModel):
    id: str
    article_id: str
    user_id: Optional[str] = None
    type: str
    title: str
    content: str
    source_urls: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)


def _string_items(value: Any) -> List[str]:
    """Coerce list items that models sometimes emit as objects into strings."""
    if value is None:
        return []
    if not isinstance(value, list):
        value = [value]
    items: List[str] = []
    for entry in value:
        if isinstance(entry, dict):
            picked = ""
            for key in ("text", "value", "title", "name", "q", "question", "term"):
                if isinstance(entry.get(key), str) and entry[key].strip():
                    picked = entry[key]
                    break
            entry = picked
        text = str(entry or "").strip()
        if text:
            items.append(text)
    return items


class OutlineSection(BaseModel):
    h2: str = Field(..., min_length=1)
    intent_tag: str = ""
    planned_chars: Optional[int] = None
    h3: List[str] = Field(default_factory=list)
    h4: Dict[str, List[str]] = Field(default_factory=dict)

    @field_validator("h2", mode="before")
    @classmethod
    def _clean_heading(cls, value: Any) -> str:
        return normalize_heading(value)

    @field_validator("intent_tag", mode="before")
    @classmethod
    def _coerce_tag(cls, value: Any) -> str:
        return str(value or "").strip()

    @field_validator("planned_chars", mode="before")
    @classmethod
    def _clamp_planned(cls, value: Any) -> Optional[int]:
        if value is None or isinstance(value, bool):
            return None
        try:
            number = int(round(float(str(value).strip())))
        except ValueError:
            return None
        return max(800, min(3500, number))

    @field_validator("h3", mode="before")
    @classmethod
    def _coerce_h3(cls, value: Any) -> List[str]:
        return [normalize_heading(item) for item in _string_items(value)]

    @field_validator("h4", mode="before")
    @classmethod
    def _coerce_h4(cls, value: Any) -> Dict[str, List[str]]:
        if not isinstance(value, dict):
            return {}
        return {str(key): _string_items(items) for key, items in value.items()}


class DiagramIdea(BaseModel):
    title: str
    description: str = ""
    insertion_hint: str = ""


class Outline(BaseModel):
    sections: List[OutlineSection] = Field(default_factory=list)
    faq: List[str] = Field(default_factory=list)
    glossary: List[str] = Field(default_factory=list)
    internal_link_ideas: List[str] = Field(default_factory=list)
    diagram_ideas: List[DiagramIdea] = Field(default_factory=list)

    @field_validator("faq", "glossary", "internal_link_ideas", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> List[str]:
        return _string_items(value)

    @classmethod
    def from_raw(cls, raw: Any) -> "Outline":
        """Validate structured generator output; raises ValueError when no section survives."""
        if not isinstance(raw, dict):
            raise ValueError("outline payload must be an object")
        sections: List[OutlineSection] = []
        for entry in raw.get("sections") or []:
            if not isinstance(entry, dict):
                continue
            data = dict(entry)
            data.setdefault("intent_tag", data.pop("intentTag", ""))
            data.setdefault("planned_chars", data.pop("plannedChars", None))
            if not normalize_heading(data.get("h2")):
                continue
            sections.append(OutlineSection.model_validate(data))
        if not sections:
            raise ValueError("outline contains no usable sections")

        diagrams = []
        for entry in raw.get("diagramIdeas") or raw.get("diagram_ideas") or []:
            if isinstance(entry, dict) and str(entry.get("title") or "").strip():
                diagrams.append(
                    DiagramIdea(
                        title=str(entry["title"]).strip(),
                        description=str(entry.get("description") or "").strip(),
                        insertion_hint=str(entry.get("insertionHint") or entry.get("insertion_hint") or "").strip(),
                    )
                )
        return cls(
            sections=sections,
            faq=raw.get("faq"),
            glossary=raw.get("glossary"),
            internal_link_ideas=raw.get("internalLinkIdeas") or raw.get("internal_link_ideas"),
            diagram_ideas=diagrams,
        )

    def to_markdown(self) -> str:
        lines: List[str] = ["# アウトライン"]
        for idx, section in enumerate(self.sections, 1):
            tag = f"（意図: {section.intent_tag}）" if section.intent_tag else ""
            lines.append(f"\n## {idx}. {section.h2}{tag}")
            for h3 in section.h3:
                lines.append(f"- {h3}")
                for h4 in section.h4.get(h3, []):
                    lines.append(f"  - {h4}")
        extras = [
            ("FAQ候補", self.faq),
            ("用語集候補", self.glossary),
            ("内部リンク案", self.internal_link_ideas),
        ]
        for label, items in extras:
            if items:
                lines.append(f"\n## {label}")
                lines.extend(f"- {item}" for item in items)
        if self.diagram_ideas:
            lines.append("\n## 図解アイデア")
            for idea in self.diagram_ideas:
                hint = f"（挿入: {idea.insertion_hint}）" if idea.insertion_hint else ""
                lines.append(f"- {idea.title}: {idea.description}{hint}")
        return "\n".join(lines)


class Artifact(BaseModel):
    markdown: str
    char_count: int
    padding_iterations: int = 0
    uncovered_candidates: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class AdvanceResponse(BaseModel):
    job_id: str
    status: JobStatus
    step: str
    progress: int
    error: Optional[str] = None


class ArticleCreateResponse(BaseModel):
    article_id: str
    job_id: str


class CandidatesAddRequest(BaseModel):
    candidates: List[Dict[str, Any]] = Field(..., min_length=1, max_length=20)


class RunRequest(BaseModel):
    budget_seconds: Optional[float] = Field(default=None, gt=0, le=900)
