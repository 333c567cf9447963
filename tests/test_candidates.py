import httpx
import openai

from drafter.errors import UpstreamError
from drafter.models import ArticleCreate, ArticleMode, Candidate, CandidateSource
from drafter.services.search import SearchResult
from drafter.tasks.candidates import CandidateCollector, derive_search_query, merge_manual_candidates
from drafter.tasks.retry import NO_WAIT

from .fakes import DummyExtractor, DummyGateway, DummySearch, make_page

PAGE_PROMPT = "From the page below, list the real"
KNOWLEDGE_PROMPT = "List up to"
DETAILS_PROMPT = "extract pricing and key features"


class FailingSearch(DummySearch):
    def search(self, query, locale="ja", count=10):
        self.queries.append(query)
        raise UpstreamError("search HTTP 429")


def _comparison_article(create_article, **overrides):
    payload = {
        "title": "CRMツールおすすめ比較",
        "keywords": ["CRM"],
        "mode": ArticleMode.comparison_research,
    }
    payload.update(overrides)
    return create_article(**payload)


def test_derive_search_query_strips_noise():
    assert derive_search_query("CRMツールおすすめ10選【2025年】比較", ["CRM"]) == "CRMツール CRM"
    assert derive_search_query("Best project management tools comparison", []) == "project management tools"


def test_derive_search_query_rejects_stop_word_only_input():
    assert derive_search_query("おすすめ比較ランキング", []) is None
    assert derive_search_query("人気の10選", ["の"]) is None


def test_existing_candidates_short_circuit(create_article, repository):
    article = _comparison_article(
        create_article,
        comparison_config={"desired_count": 2},
        comparison_candidates=[{"name": "HubSpot"}, {"name": "Zoho CRM"}],
    )
    gateway = DummyGateway()
    collector = CandidateCollector(gateway, repository, DummyExtractor(), DummySearch(), backoff=NO_WAIT)

    candidates = collector.ensure_candidates(article)

    assert [candidate.name for candidate in candidates] == ["HubSpot", "Zoho CRM"]
    assert gateway.json_calls == []


def test_without_search_uses_reference_pages_then_tagged_knowledge(create_article, repository):
    reference = "https://media.jp/crm-ranking"
    article = _comparison_article(create_article, reference_urls=[reference])
    gateway = DummyGateway(
        json_rules=[
            (
                PAGE_PROMPT,
                {
                    "candidates": [
                        {"name": "Alpha CRM", "websiteUrl": "https://alpha-crm.jp"},
                        {"name": "サービスA"},
                        {"name": "alpha crm"},
                    ]
                },
            ),
            (KNOWLEDGE_PROMPT, {"candidates": [{"name": "Beta CRM"}, {"name": "Alpha CRM"}, {"name": "XXX"}]}),
        ]
    )
    extractor = DummyExtractor({reference: make_page(reference)})
    labels = []
    collector = CandidateCollector(gateway, repository, extractor, None, backoff=NO_WAIT)

    candidates = collector.ensure_candidates(article, on_update=lambda items, label: labels.append(label))

    assert [candidate.name for candidate in candidates] == ["Alpha CRM", "Beta CRM"]
    assert candidates[0].source == CandidateSource.reference_page
    assert candidates[0].source_url == reference
    assert candidates[1].source == CandidateSource.ai_knowledge
    assert "Exclude these names: Alpha CRM" in gateway.calls_with(KNOWLEDGE_PROMPT)[0]
    stored = repository.get_article(article.id)
    assert [candidate.name for candidate in stored.comparison_candidates] == ["Alpha CRM", "Beta CRM"]
    assert "reference_urls" in labels
    assert "ai_knowledge" in labels


def test_search_path_extracts_and_enriches(create_article, repository):
    listing = "https://media.jp/crm-hikaku"
    official = "https://alpha-crm.jp/"
    article = _comparison_article(create_article, comparison_config={"desired_count": 3})
    search = DummySearch(
        {
            "Alpha CRM 公式": [
                SearchResult(title="Alpha CRMの評判", url="https://www.itreview.jp/products/alpha"),
                SearchResult(title="Alpha CRM公式", url=official),
            ],
            "比較": [
                SearchResult(title="CRM比較", url=listing),
                SearchResult(title="CRM", url="https://ja.wikipedia.org/wiki/CRM"),
            ],
        }
    )
    gateway = DummyGateway(
        json_rules=[
            (
                PAGE_PROMPT,
                {
                    "candidates": [
                        {"name": "Alpha CRM"},
                        {"name": "Beta CRM", "websiteUrl": "https://beta-crm.jp"},
                        {"name": "Gamma CRM"},
                    ]
                },
            ),
            (DETAILS_PROMPT, {"pricing": "月額1,200円〜", "features": ["名刺管理", "メール配信"]}),
        ]
    )
    extractor = DummyExtractor({listing: make_page(listing), official: make_page(official, title="Alpha CRM")})
    collector = CandidateCollector(gateway, repository, extractor, search, backoff=NO_WAIT)

    candidates = collector.ensure_candidates(article)

    by_name = {candidate.name: candidate for candidate in candidates}
    assert list(by_name) == ["Alpha CRM", "Beta CRM", "Gamma CRM"]
    assert by_name["Alpha CRM"].website_url == official
    assert by_name["Alpha CRM"].pricing == "月額1,200円〜"
    assert by_name["Alpha CRM"].features == ["名刺管理", "メール配信"]
    assert by_name["Gamma CRM"].website_url is None
    assert all(candidate.source == CandidateSource.web_extraction for candidate in candidates)
    assert by_name["Beta CRM"].source_url == listing
    assert "CRMツール CRM 比較" in search.queries
    assert "https://ja.wikipedia.org/wiki/CRM" not in extractor.fetched
    assert gateway.calls_with(KNOWLEDGE_PROMPT) == []


def test_search_failures_degrade_to_knowledge(create_article, repository):
    article = _comparison_article(create_article)
    search = FailingSearch()
    gateway = DummyGateway(json_rules=[(KNOWLEDGE_PROMPT, [{"name": "HubSpot"}, {"name": "Zoho CRM"}])])
    collector = CandidateCollector(gateway, repository, DummyExtractor(), search, backoff=NO_WAIT)

    candidates = collector.ensure_candidates(article)

    assert [candidate.name for candidate in candidates] == ["HubSpot", "Zoho CRM"]
    assert all(candidate.source == CandidateSource.ai_knowledge for candidate in candidates)
    assert len(search.queries) >= NO_WAIT.attempts


def test_noise_only_query_skips_search(create_article, repository):
    article = _comparison_article(create_article, title="おすすめ比較ランキング", keywords=[])
    search = DummySearch()
    gateway = DummyGateway(json_rules=[(KNOWLEDGE_PROMPT, {"candidates": [{"name": "HubSpot"}]})])
    collector = CandidateCollector(gateway, repository, DummyExtractor(), search, backoff=NO_WAIT)

    candidates = collector.ensure_candidates(article)

    assert search.queries == []
    assert [candidate.name for candidate in candidates] == ["HubSpot"]


def test_merge_manual_candidates_tags_and_dedups(create_article, repository):
    article = _comparison_article(create_article, comparison_candidates=[{"name": "HubSpot"}])

    merged = merge_manual_candidates(
        repository,
        article,
        [{"name": "hubspot"}, {"name": "Zoho CRM", "source": "ai_knowledge"}, {"name": "サービスB"}],
    )

    assert [candidate.name for candidate in merged] == ["HubSpot", "Zoho CRM"]
    assert merged[0].source == CandidateSource.existing
    assert merged[1].source == CandidateSource.manual
    assert len(repository.get_article(article.id).comparison_candidates) == 2


def test_sdk_error_on_one_page_skips_only_that_page(create_article, repository):
    broken = "https://media.jp/crm-broken"
    listing = "https://media.jp/crm-hikaku"
    article = _comparison_article(
        create_article,
        comparison_config={
            "desired_count": 2,
            "include_official_url": False,
            "include_pricing": False,
            "include_features": False,
        },
    )
    search = DummySearch({"比較": [SearchResult(title="CRM比較A", url=broken), SearchResult(title="CRM比較B", url=listing)]})

    def extract(prompt):
        if f"URL: {broken}" in prompt:
            raise openai.APIConnectionError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
        return {"candidates": [{"name": "HubSpot"}, {"name": "Zoho CRM"}]}

    gateway = DummyGateway(json_rules=[(PAGE_PROMPT, extract)])
    extractor = DummyExtractor({broken: make_page(broken), listing: make_page(listing)})
    collector = CandidateCollector(gateway, repository, extractor, search, backoff=NO_WAIT)

    candidates = collector.ensure_candidates(article)

    assert [candidate.name for candidate in candidates] == ["HubSpot", "Zoho CRM"]
    assert all(candidate.source_url == listing for candidate in candidates)
    assert len([prompt for prompt in gateway.calls_with(PAGE_PROMPT) if broken in prompt]) == NO_WAIT.attempts


def test_article_candidates_drop_placeholders_and_duplicates():
    payload = ArticleCreate(
        title="CRM比較",
        comparison_candidates=[{"name": "HubSpot"}, {"name": "hubspot"}, {"name": "サービスA"}, Candidate(name="ツールB")],
    )

    assert [candidate.name for candidate in payload.comparison_candidates] == ["HubSpot"]
    assert payload.comparison_candidates[0].source == CandidateSource.existing


def test_existing_candidates_are_stored_clean(create_article, repository):
    article = _comparison_article(
        create_article,
        comparison_config={"desired_count": 2},
        comparison_candidates=[{"name": "HubSpot"}, {"name": "hubspot"}, {"name": "サービスA"}, {"name": "Zoho CRM"}],
    )
    collector = CandidateCollector(DummyGateway(), repository, DummyExtractor(), DummySearch(), backoff=NO_WAIT)

    candidates = collector.ensure_candidates(article)

    stored = repository.get_article(article.id).comparison_candidates
    assert [candidate.name for candidate in candidates] == ["HubSpot", "Zoho CRM"]
    assert [candidate.name for candidate in stored] == ["HubSpot", "Zoho CRM"]
