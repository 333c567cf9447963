from drafter.tasks.research import ReferenceResearcher, render_research_context
from drafter.tasks.retry import NO_WAIT

from .fakes import DummyExtractor, DummyGateway, make_page

SUMMARY_PROMPT = "Summarize and analyze this page"


def _summary(prompt):
    return {
        "summary": "CRM導入の要点を整理したページ",
        "insights": {
            "claims": ["小さく始めるべき", {"text": "定着には運用設計が必要"}],
            "structure": ["定義", "比較"],
            "faq": [{"q": "費用は？"}],
            "internalLinks": None,
        },
    }


def test_research_stores_each_url_once(create_article, repository):
    urls = ["https://media.jp/crm-guide", "https://blog.jp/crm-tips", "https://dead.jp/404"]
    article = create_article(reference_urls=urls)
    extractor = DummyExtractor({url: make_page(url) for url in urls[:2]})
    gateway = DummyGateway(json_rules=[(SUMMARY_PROMPT, _summary)])
    researcher = ReferenceResearcher(gateway, repository, extractor, backoff=NO_WAIT)

    assert researcher.research(article) == 2
    assert researcher.research(article) == 0

    references = repository.list_references(article.id)
    assert sorted(reference.url for reference in references) == sorted(urls[:2])
    assert references[0].insights.claims == ["小さく始めるべき", "定着には運用設計が必要"]
    assert references[0].insights.internal_links == []
    assert len(gateway.calls_with(SUMMARY_PROMPT)) == 2
    assert len(repository.list_knowledge_items(article.id, "insight")) == 2


def test_research_skips_failed_summaries(create_article, repository):
    url = "https://media.jp/crm-guide"
    article = create_article(reference_urls=[url])
    extractor = DummyExtractor({url: make_page(url)})
    gateway = DummyGateway(json_rules=[(SUMMARY_PROMPT, RuntimeError("upstream 500"))])

    stored = ReferenceResearcher(gateway, repository, extractor, backoff=NO_WAIT).research(article)

    assert stored == 0
    assert repository.list_references(article.id) == []


def test_render_research_context(create_article, repository):
    url = "https://media.jp/crm-guide"
    article = create_article(reference_urls=[url])
    extractor = DummyExtractor({url: make_page(url, title="CRM導入ガイド")})
    gateway = DummyGateway(json_rules=[(SUMMARY_PROMPT, _summary)])
    researcher = ReferenceResearcher(gateway, repository, extractor, backoff=NO_WAIT)
    researcher.research(article)

    context = researcher.build_context(article.id)

    assert "=== RESEARCH (summarized) ===" in context
    assert f"URL: {url}" in context
    assert "TITLE: CRM導入ガイド" in context
    assert "CLAIMS: 小さく始めるべき / 定着には運用設計が必要" in context
    assert "FAQ: 費用は？" in context
    assert render_research_context([]) == ""
