from drafter.models import Outline, OutlineSection
from drafter.tasks.outline import (
    MAX_PLANNED_CHARS,
    MIN_PLANNED_CHARS,
    OutlineSynthesizer,
    compute_min_sections,
    ensure_min_sections,
    parse_markdown_outline,
    scale_planned_chars,
)
from drafter.tasks.retry import NO_WAIT

from .fakes import DummyGateway, outline_payload


def test_compute_min_sections_steps():
    assert compute_min_sections(3000) == 3
    assert compute_min_sections(10000) >= 5
    assert compute_min_sections(20000) == 8
    assert compute_min_sections(50000) <= 60
    assert compute_min_sections(1_000_000) == 60
    assert compute_min_sections(4000) <= compute_min_sections(15000) <= compute_min_sections(45000)


def test_parse_markdown_outline_builds_hierarchy():
    markdown = "\n".join(
        [
            "# タイトル",
            "## 1. CRMとは",
            "### 基本機能",
            "#### 顧客管理",
            "#### 商談管理",
            "### 導入メリット",
            "## 2. 選び方（意図: 比較）",
            "本文は無視されます",
        ]
    )
    outline = parse_markdown_outline(markdown)
    assert [section.h2 for section in outline.sections] == ["CRMとは", "選び方"]
    assert outline.sections[0].h3 == ["基本機能", "導入メリット"]
    assert outline.sections[0].h4 == {"基本機能": ["顧客管理", "商談管理"]}


def test_outline_from_raw_coerces_loose_output():
    outline = Outline.from_raw(
        {
            "sections": [
                {"h2": "## 料金", "plannedChars": "99999", "h3": [{"text": "月額"}, None, "年額"]},
                {"h2": ""},
                "not a section",
            ],
            "faq": [{"q": "無料プランは？"}],
        }
    )
    assert len(outline.sections) == 1
    assert outline.sections[0].h2 == "料金"
    assert outline.sections[0].planned_chars == 3500
    assert outline.sections[0].h3 == ["月額", "年額"]
    assert outline.faq == ["無料プランは？"]


def test_ensure_min_sections_appends_unique_fillers():
    outline = Outline(sections=[OutlineSection(h2="概要")])
    filled = ensure_min_sections(outline, 8)
    headings = [section.h2 for section in filled.sections]
    assert len(headings) == 8
    assert headings[0] == "概要"
    assert len(set(headings)) == 8
    assert any("チェックリスト" in heading for heading in headings)


def test_scale_planned_chars_tracks_target_and_clamps():
    outline = Outline(sections=[OutlineSection(h2=f"見出し{idx}", planned_chars=2000) for idx in range(5)])
    planned = scale_planned_chars(outline, 5000)
    assert planned == [1000] * 5

    wide = Outline(sections=[OutlineSection(h2=f"見出し{idx}") for idx in range(3)])
    assert scale_planned_chars(wide, 60000) == [MAX_PLANNED_CHARS] * 3

    many = Outline(sections=[OutlineSection(h2=f"見出し{idx}") for idx in range(40)])
    assert set(scale_planned_chars(many, 3000)) == {MIN_PLANNED_CHARS}


def test_build_outline_uses_structured_output(create_article, repository):
    article = create_article(target_chars=5000)
    gateway = DummyGateway(json_rules=[("Output JSON with keys: sections", outline_payload(6))])
    synthesizer = OutlineSynthesizer(gateway, repository, backoff=NO_WAIT)

    outline = synthesizer.build_outline(article, "")

    assert len(outline.sections) == 6
    assert outline.glossary == ["CRM"]
    assert gateway.calls_with("Markdown headings only") == []


def test_build_outline_falls_back_to_markdown_then_fillers(create_article, repository):
    article = create_article(target_chars=20000)
    gateway = DummyGateway(
        json_rules=[("Output JSON with keys: sections", {"sections": []})],
        text_rules=[("Markdown headings only", "## 導入\n### 背景\n## 手順\n")],
    )
    synthesizer = OutlineSynthesizer(gateway, repository, backoff=NO_WAIT)

    outline = synthesizer.build_outline(article, "")

    headings = [section.h2 for section in outline.sections]
    assert headings[:2] == ["導入", "手順"]
    assert len(headings) == compute_min_sections(20000)


def test_intro_variants_record_failure_text(create_article, repository):
    article = create_article()
    gateway = DummyGateway(text_rules=[("intro drafts (A/B)", RuntimeError("quota"))])
    OutlineSynthesizer(gateway, repository, backoff=NO_WAIT).record_intro_variants(article)

    items = repository.list_knowledge_items(article.id, "intro_ab")
    assert len(items) == 1
    assert "生成に失敗しました" in items[0].content
