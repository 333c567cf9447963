import pytest

from drafter.core.config import get_settings
from drafter.errors import StructuralError, UpstreamError
from drafter.models import ArticleMode, ArticleStatus
from drafter.tasks.integrate import FAILED_TEXT, Integrator, padding_iteration_bound
from drafter.tasks.retry import NO_WAIT
from drafter_shared.text_utils import count_chars

from .fakes import DummyGateway, japanese_text

PADDING_PROMPT = "The article is shorter than required"
CLOSING_PROMPT = "Write the closing section"
TLDR_PROMPT = "Write a TL;DR"


def _contents(count, chars=1000, extra=""):
    return [f"## ポイント{idx + 1}の解説\n\n{extra}{japanese_text(chars)}" for idx in range(count)]


@pytest.fixture
def integrator_for(repository, storage):
    def _build(gateway, settings=None):
        return Integrator(gateway, repository, storage, settings=settings, backoff=NO_WAIT)

    return _build


def test_integrate_assembles_and_persists(create_article, repository, storage, seed_sections, integrator_for):
    article = create_article(target_chars=5000)
    job = repository.create_job(article.id)
    seed_sections(job.id, article.id, _contents(5))
    gateway = DummyGateway(text_rules=[(TLDR_PROMPT, "- 結論から言うと目的で選ぶ\n- 費用は総額で比較する")])

    artifact = integrator_for(gateway).integrate(job, article)

    markdown = artifact.markdown
    assert markdown.startswith("# CRMツールの選び方")
    assert "## この記事でわかること" in markdown
    assert "## TL;DR\n\n- 結論から言うと目的で選ぶ" in markdown
    assert "## まとめ" in markdown
    assert artifact.padding_iterations == 0
    assert artifact.char_count == count_chars(markdown) >= 4250
    stored = repository.get_article(article.id)
    assert stored.status == ArticleStatus.done
    assert stored.final_markdown == markdown
    saved = storage.list_local(article.id)
    assert [path for path in saved if path.endswith("final.md")]


def test_generated_closing_is_used(create_article, repository, seed_sections, integrator_for):
    article = create_article(target_chars=5000, reference_urls=["https://media.jp/crm"])
    job = repository.create_job(article.id)
    seed_sections(job.id, article.id, _contents(5))
    gateway = DummyGateway(text_rules=[(CLOSING_PROMPT, "## まとめ\n\n目的を決めてから比較を始めましょう。")])

    markdown = integrator_for(gateway).integrate(job, article).markdown

    assert "目的を決めてから比較を始めましょう。" in markdown
    assert markdown.rstrip().endswith("- https://media.jp/crm")
    assert markdown.index("## まとめ") < markdown.index("## 参考URL")


def test_placeholders_are_sanitized(create_article, repository, seed_sections, integrator_for):
    article = create_article(target_chars=5000)
    job = repository.create_job(article.id)
    seed_sections(job.id, article.id, _contents(5, extra="サービスAは料金が明確です。\n"))

    markdown = integrator_for(DummyGateway()).integrate(job, article).markdown

    assert "サービスA" not in markdown
    assert "各サービスは料金が明確です。" in markdown


def test_padding_reaches_length_floor(create_article, repository, seed_sections, integrator_for):
    article = create_article(target_chars=10000)
    job = repository.create_job(article.id)
    seed_sections(job.id, article.id, _contents(2))
    calls = []

    def pad(prompt):
        calls.append(prompt)
        return f"## 追加の観点{len(calls)}\n\n{japanese_text(2500)}"

    artifact = integrator_for(DummyGateway(text_rules=[(PADDING_PROMPT, pad)])).integrate(job, article)

    assert artifact.char_count >= 8500
    assert 1 <= artifact.padding_iterations <= padding_iteration_bound(10000)
    assert "## 追加の観点1" in artifact.markdown


def test_padding_failures_leave_article_below_floor(create_article, repository, seed_sections, integrator_for):
    article = create_article(target_chars=10000)
    job = repository.create_job(article.id)
    seed_sections(job.id, article.id, _contents(2))
    gateway = DummyGateway(text_rules=[(PADDING_PROMPT, UpstreamError("rate limited"))])

    with pytest.raises(UpstreamError):
        integrator_for(gateway).integrate(job, article)

    assert len(gateway.calls_with(PADDING_PROMPT)) == padding_iteration_bound(10000)
    assert repository.get_article(article.id).status != ArticleStatus.done


def test_unreviewed_sections_are_structural(create_article, repository, seed_sections, integrator_for):
    article = create_article(target_chars=5000)
    job = repository.create_job(article.id)
    seed_sections(job.id, article.id, [*_contents(2), None])

    with pytest.raises(StructuralError):
        integrator_for(DummyGateway()).integrate(job, article)


def test_comparison_without_candidates_is_structural(create_article, repository, seed_sections, integrator_for):
    article = create_article(target_chars=5000, mode=ArticleMode.comparison_research)
    job = repository.create_job(article.id)
    seed_sections(job.id, article.id, _contents(5))

    with pytest.raises(StructuralError):
        integrator_for(DummyGateway()).integrate(job, article)


def test_comparison_adds_coverage_gap_section(create_article, repository, seed_sections, integrator_for):
    article = create_article(
        target_chars=5000,
        mode=ArticleMode.comparison_research,
        comparison_candidates=[
            {"name": "HubSpot", "pricing": "無料プランあり"},
            {"name": "Zoho CRM", "pricing": "月額1,680円〜", "website_url": "https://www.zoho.com/jp/crm/"},
        ],
    )
    job = repository.create_job(article.id)
    seed_sections(job.id, article.id, _contents(5, extra="HubSpotの活用法を紹介します。\n"))

    artifact = integrator_for(DummyGateway()).integrate(job, article)

    assert artifact.uncovered_candidates == ["Zoho CRM"]
    assert "## 比較早見表" in artifact.markdown
    assert "## その他の比較対象" in artifact.markdown
    assert "### Zoho CRM" in artifact.markdown
    assert "- 料金: 月額1,680円〜" in artifact.markdown
    assert "### HubSpot" not in artifact.markdown


def test_record_extras_stores_knowledge_items(create_article, repository, integrator_for):
    article = create_article()
    gateway = DummyGateway(
        text_rules=[
            ("propose internal links", "- 料金ページへのリンク"),
            ("social media editor", RuntimeError("model overloaded")),
        ]
    )

    integrator_for(gateway).record_extras(article, "# 記事\n\n本文")

    links = repository.list_knowledge_items(article.id, "internal_link")
    sns = repository.list_knowledge_items(article.id, "sns")
    assert links[0].content == "- 料金ページへのリンク"
    assert sns[0].content == FAILED_TEXT
    assert gateway.image_calls == []


def test_record_extras_stores_banner_when_enabled(monkeypatch, create_article, repository, storage, integrator_for):
    monkeypatch.setenv("GENERATE_BANNER", "true")
    get_settings.cache_clear()
    article = create_article()
    gateway = DummyGateway()

    integrator_for(gateway, settings=get_settings()).record_extras(article, "# 記事")

    banner_path = repository.get_article(article.id).banner_path
    assert banner_path.endswith("banner.png")
    assert storage.read(banner_path) == b"\x89PNG fake"
    assert len(gateway.image_calls) == 1
