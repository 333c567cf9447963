from __future__ import annotations

from typing import Any, Callable, List, Optional, Sequence

import pytest

from drafter.core.config import get_settings
from drafter.models import ArticleCreate, Section, SectionStatus
from drafter.services.firestore import FirestoreRepository
from drafter.services.gcs import AssetStorage
from drafter.tasks.pipeline import build_driver
from drafter.tasks.retry import NO_WAIT

from .fakes import DummyExtractor, DummyGateway


@pytest.fixture(autouse=True)
def configure_test_environment(monkeypatch):
    monkeypatch.setenv("FIRESTORE_ENABLED", "false")
    monkeypatch.setenv("STORAGE_ENABLED", "false")
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("LOG_PROMPTS", "false")
    monkeypatch.delenv("SEARCH_API_KEY", raising=False)
    monkeypatch.delenv("SEARCH_ENGINE_ID", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def repository() -> FirestoreRepository:
    return FirestoreRepository(use_firestore=False)


@pytest.fixture
def storage() -> AssetStorage:
    return AssetStorage(use_storage=False)


@pytest.fixture
def create_article(repository) -> Callable[..., Any]:
    def _create(**overrides: Any):
        payload = {"title": "CRMツールの選び方", "keywords": ["CRM", "顧客管理"], "target_chars": 5000}
        payload.update(overrides)
        return repository.create_article(ArticleCreate(**payload))

    return _create


@pytest.fixture
def seed_sections(repository) -> Callable[..., List[Section]]:
    def _seed(job_id: str, article_id: str, contents: Sequence[Optional[str]], *, reviewed: bool = True) -> List[Section]:
        sections = [
            Section(
                job_id=job_id,
                article_id=article_id,
                index=idx,
                heading=f"ポイント{idx + 1}の解説",
                planned_chars=1000,
                content=content,
                status=SectionStatus.reviewed if reviewed and content else SectionStatus.pending,
            )
            for idx, content in enumerate(contents)
        ]
        repository.create_sections(sections)
        return repository.list_sections(job_id)

    return _seed


@pytest.fixture
def make_driver(repository, storage) -> Callable[..., Any]:
    def _make(gateway: DummyGateway, *, search_client: Any = None, extractor: Any = None):
        return build_driver(
            get_settings(),
            repository=repository,
            gateway=gateway,
            search_client=search_client,
            extractor=extractor or DummyExtractor(),
            storage=storage,
            backoff=NO_WAIT,
        )

    return _make
