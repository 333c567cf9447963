import pytest

from drafter.errors import StructuralError
from drafter.models import ArticleMode, Section, SectionStatus
from drafter.tasks.retry import NO_WAIT
from drafter.tasks.sections import ATTEMPT_TEMPERATURES, SectionDrafter
from drafter_shared.text_utils import count_chars

from .fakes import DummyGateway, japanese_text

DRAFT_PROMPT = "Write ONE section only"
CONSISTENCY_PROMPT = "You are a Japanese editor. Check the section"
EXPAND_PROMPT = "The section below is too short"


@pytest.fixture
def job_with_section(create_article, repository):
    def _build(planned_chars=1000, **article_overrides):
        article = create_article(**article_overrides)
        job = repository.create_job(article.id)
        repository.create_sections(
            [
                Section(job_id=job.id, article_id=article.id, index=0, heading="CRMの基本", planned_chars=planned_chars),
            ]
        )
        return job, article

    return _build


def test_first_acceptable_draft_is_reviewed(job_with_section, repository):
    job, article = job_with_section()
    gateway = DummyGateway(text_rules=[(DRAFT_PROMPT, japanese_text(1000))])

    section = SectionDrafter(gateway, repository, backoff=NO_WAIT).draft_section(job, article, 0)

    assert section.status == SectionStatus.reviewed
    assert section.content.startswith("## CRMの基本")
    assert count_chars(section.content) >= 1000
    assert len(gateway.calls_with(DRAFT_PROMPT)) == 1
    assert gateway.calls_with(EXPAND_PROMPT) == []
    assert section.consistency is None


def test_short_drafts_fall_back_to_skeleton(job_with_section, repository):
    job, article = job_with_section()
    gateway = DummyGateway(text_rules=[(DRAFT_PROMPT, "短すぎる本文")])

    section = SectionDrafter(gateway, repository, backoff=NO_WAIT).draft_section(job, article, 0)

    assert len(gateway.calls_with(DRAFT_PROMPT)) == len(ATTEMPT_TEMPERATURES)
    assert "確認チェックリスト" in section.content
    assert section.status == SectionStatus.reviewed
    assert count_chars(section.content) >= 200


def test_consistency_rewrite_is_accepted_when_non_empty(job_with_section, repository):
    job, article = job_with_section()
    rewritten = "## CRMの基本\n\n" + japanese_text(1100)
    gateway = DummyGateway(
        text_rules=[(DRAFT_PROMPT, japanese_text(1000))],
        json_rules=[(CONSISTENCY_PROMPT, {"issues": ["前節と重複"], "rewritten": rewritten})],
    )

    section = SectionDrafter(gateway, repository, backoff=NO_WAIT).draft_section(job, article, 0)

    assert section.content == rewritten.strip()
    assert section.consistency == "ISSUES:\n- 前節と重複"


def test_blank_rewrite_keeps_original(job_with_section, repository):
    job, article = job_with_section()
    gateway = DummyGateway(
        text_rules=[(DRAFT_PROMPT, "元の本文です。\n" + japanese_text(1000))],
        json_rules=[(CONSISTENCY_PROMPT, {"issues": [], "rewritten": "   "})],
    )

    section = SectionDrafter(gateway, repository, backoff=NO_WAIT).draft_section(job, article, 0)

    assert "元の本文です。" in section.content


def test_expansion_runs_at_most_once(job_with_section, repository):
    job, article = job_with_section()
    gateway = DummyGateway(
        text_rules=[
            (EXPAND_PROMPT, "### 補足\n追加の説明です。"),
            (DRAFT_PROMPT, japanese_text(400)),
        ]
    )

    section = SectionDrafter(gateway, repository, backoff=NO_WAIT).draft_section(job, article, 0)

    assert len(gateway.calls_with(EXPAND_PROMPT)) == 1
    assert section.content.endswith("### 補足\n追加の説明です。")


def test_short_section_is_padded_to_floor(job_with_section, repository):
    job, article = job_with_section(planned_chars=400)
    gateway = DummyGateway(text_rules=[(DRAFT_PROMPT, "本文" * 80)])

    section = SectionDrafter(gateway, repository, backoff=NO_WAIT).draft_section(job, article, 0)

    assert count_chars(section.content) >= 200
    assert section.is_complete


def test_prompt_carries_previous_sections_and_comparison_rules(create_article, repository):
    article = create_article(
        mode=ArticleMode.comparison_research,
        comparison_candidates=[{"name": "HubSpot", "pricing": "無料プランあり"}],
    )
    job = repository.create_job(article.id)
    repository.create_sections(
        [
            Section(job_id=job.id, article_id=article.id, index=idx, heading=f"見出し{idx}", planned_chars=400,
                    content=f"前節{idx}の本文" if idx < 3 else None,
                    status=SectionStatus.reviewed if idx < 3 else SectionStatus.pending)
            for idx in range(4)
        ]
    )
    gateway = DummyGateway(text_rules=[(DRAFT_PROMPT, japanese_text(400))])

    SectionDrafter(gateway, repository, backoff=NO_WAIT).draft_section(job, article, 3)

    prompt = gateway.calls_with(DRAFT_PROMPT)[0]
    assert "# Prev section 2" in prompt and "# Prev section 1" in prompt
    assert "# Prev section 0" not in prompt
    assert "- HubSpot | 料金: 無料プランあり" in prompt
    assert "Never invent products" in prompt


def test_missing_section_is_structural(job_with_section, repository):
    job, article = job_with_section()
    with pytest.raises(StructuralError):
        SectionDrafter(DummyGateway(), repository, backoff=NO_WAIT).draft_section(job, article, 7)
