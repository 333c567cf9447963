from __future__ import annotations

import hashlib
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from google.cloud import firestore
from google.cloud.firestore_v1.base_query import FieldFilter

from ..core.config import get_settings
from ..errors import NotFoundError
from ..models import (
    Article,
    ArticleCreate,
    Job,
    JobEvent,
    JobStatus,
    KnowledgeItem,
    Reference,
    Section,
    utcnow,
)

logger = logging.getLogger(__name__)


def reference_doc_id(article_id: str, url: str) -> str:
    return hashlib.sha1(f"{article_id}|{url}".encode("utf-8")).hexdigest()


def section_doc_id(job_id: str, index: int) -> str:
    return f"{job_id}_{index:04d}"


class FirestoreRepository:
    """Firestore backed persistence with in-memory fallback for local dev."""

    def __init__(self, *, use_firestore: Optional[bool] = None) -> None:
        settings = get_settings()
        self._namespace = settings.firestore_namespace
        self._event_log_size = max(int(settings.event_log_size or 1), 1)
        enabled = settings.firestore_enabled if use_firestore is None else use_firestore
        self._client = firestore.Client(project=settings.project_id) if enabled else None
        self._articles: Dict[str, Article] = {}
        self._jobs: Dict[str, Job] = {}
        self._sections: Dict[Tuple[str, int], Section] = {}
        self._references: Dict[Tuple[str, str], Reference] = {}
        self._knowledge: List[KnowledgeItem] = []

    def _collection_name(self, name: str) -> str:
        if self._namespace:
            return f"{self._namespace}_{name}"
        return name

    def _doc_path(self, collection: str, doc_id: str) -> str:
        return f"{self._collection_name(collection)}/{doc_id}"

    def _collection(self, name: str):
        return self._client.collection(self._collection_name(name))

    def _get_doc(self, collection: str, doc_id: str) -> Optional[Dict[str, Any]]:
        snapshot = self._client.document(self._doc_path(collection, doc_id)).get()
        if not snapshot.exists:
            return None
        return snapshot.to_dict() or {}

    def _set_doc(self, collection: str, doc_id: str, data: Dict[str, Any]) -> None:
        self._client.document(self._doc_path(collection, doc_id)).set(data)

    # Articles
    def create_article(self, payload: ArticleCreate, article_id: Optional[str] = None) -> Article:
        article = Article(id=article_id or uuid.uuid4().hex, **payload.model_dump())
        self._save_article(article)
        return article

    def get_article(self, article_id: str) -> Optional[Article]:
        if self._client:
            data = self._get_doc("articles", article_id)
            return Article.model_validate(data) if data else None
        article = self._articles.get(article_id)
        return article.model_copy(deep=True) if article else None

    def require_article(self, article_id: str) -> Article:
        article = self.get_article(article_id)
        if not article:
            raise NotFoundError(f"article not found: {article_id}")
        return article

    def update_article(self, article_id: str, **updates: Any) -> Article:
        current = self.require_article(article_id)
        data = current.model_dump()
        data.update(updates)
        data["updated_at"] = utcnow()
        article = Article.model_validate(data)
        self._save_article(article)
        return article

    def _save_article(self, article: Article) -> None:
        if self._client:
            self._set_doc("articles", article.id, article.model_dump(mode="json"))
        else:
            self._articles[article.id] = article.model_copy(deep=True)

    # Jobs
    def create_job(self, article_id: str, job_id: Optional[str] = None) -> Job:
        job = Job(id=job_id or uuid.uuid4().hex, article_id=article_id, status=JobStatus.pending)
        self._save_job(job)
        return job

    def get_job(self, job_id: str) -> Optional[Job]:
        if self._client:
            data = self._get_doc("jobs", job_id)
            return Job.model_validate(data) if data else None
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    def require_job(self, job_id: str) -> Job:
        job = self.get_job(job_id)
        if not job:
            raise NotFoundError(f"job not found: {job_id}")
        return job

    def update_job(self, job_id: str, **updates: Any) -> Job:
        try:
            current = self.require_job(job_id)
            data = current.model_dump()
            data.update(updates)
            data["updated_at"] = utcnow()
            job = Job.model_validate(data)
            self._save_job(job)
            return job
        except NotFoundError:
            logger.warning("update_job: Job %s not found", job_id)
            raise
        except Exception as exc:
            logger.exception("update_job: Failed to update job %s: %s", job_id, exc)
            raise

    def append_job_event(self, job_id: str, step: str, message: str, *, level: str = "info") -> Job:
        """Append to the job's event log, keeping only the newest entries."""
        job = self.require_job(job_id)
        events = list(job.events)
        events.append(JobEvent(step=step, level=level, message=message))
        return self.update_job(job_id, events=events[-self._event_log_size:])

    def _save_job(self, job: Job) -> None:
        if self._client:
            self._set_doc("jobs", job.id, job.model_dump(mode="json"))
        else:
            self._jobs[job.id] = job.model_copy(deep=True)

    # Sections
    def list_sections(self, job_id: str) -> List[Section]:
        if self._client:
            query = self._collection("sections").where(filter=FieldFilter("job_id", "==", job_id))
            sections = [Section.model_validate(doc.to_dict() or {}) for doc in query.stream()]
        else:
            sections = [
                section.model_copy(deep=True)
                for (owner, _index), section in self._sections.items()
                if owner == job_id
            ]
        return sorted(sections, key=lambda item: item.index)

    def create_sections(self, sections: List[Section]) -> int:
        """Insert sections, skipping any whose (job_id, index) already exists."""
        existing = {}
        created = 0
        for section in sections:
            if section.job_id not in existing:
                existing[section.job_id] = {item.index for item in self.list_sections(section.job_id)}
            if section.index in existing[section.job_id]:
                continue
            self._save_section(section)
            existing[section.job_id].add(section.index)
            created += 1
        return created

    def update_section(self, job_id: str, index: int, **updates: Any) -> Section:
        current = self.get_section(job_id, index)
        if not current:
            raise NotFoundError(f"section not found: {job_id}#{index}")
        data = current.model_dump()
        data.update(updates)
        data["updated_at"] = utcnow()
        section = Section.model_validate(data)
        self._save_section(section)
        return section

    def get_section(self, job_id: str, index: int) -> Optional[Section]:
        if self._client:
            data = self._get_doc("sections", section_doc_id(job_id, index))
            return Section.model_validate(data) if data else None
        section = self._sections.get((job_id, index))
        return section.model_copy(deep=True) if section else None

    def _save_section(self, section: Section) -> None:
        if self._client:
            self._set_doc("sections", section_doc_id(section.job_id, section.index), section.model_dump(mode="json"))
        else:
            self._sections[(section.job_id, section.index)] = section.model_copy(deep=True)

    # References
    def list_references(self, article_id: str) -> List[Reference]:
        if self._client:
            query = self._collection("references").where(filter=FieldFilter("article_id", "==", article_id))
            references = [Reference.model_validate(doc.to_dict() or {}) for doc in query.stream()]
        else:
            references = [
                reference.model_copy(deep=True)
                for (owner, _url), reference in self._references.items()
                if owner == article_id
            ]
        return sorted(references, key=lambda item: item.fetched_at)

    def upsert_reference(self, reference: Reference) -> Reference:
        if self._client:
            self._set_doc(
                "references",
                reference_doc_id(reference.article_id, reference.url),
                reference.model_dump(mode="json"),
            )
        else:
            self._references[(reference.article_id, reference.url)] = reference.model_copy(deep=True)
        return reference

    # Knowledge items
    def add_knowledge_item(
        self,
        article_id: str,
        *,
        item_type: str,
        title: str,
        content: str,
        user_id: Optional[str] = None,
        source_urls: Optional[List[str]] = None,
    ) -> KnowledgeItem:
        item = KnowledgeItem(
            id=uuid.uuid4().hex,
            article_id=article_id,
            user_id=user_id,
            type=item_type,
            title=title,
            content=content,
            source_urls=list(source_urls or []),
        )
        if self._client:
            self._set_doc("knowledge_items", item.id, item.model_dump(mode="json"))
        else:
            self._knowledge.append(item)
        return item

    def list_knowledge_items(self, article_id: str, item_type: Optional[str] = None) -> List[KnowledgeItem]:
        if self._client:
            query = self._collection("knowledge_items").where(filter=FieldFilter("article_id", "==", article_id))
            items = [KnowledgeItem.model_validate(doc.to_dict() or {}) for doc in query.stream()]
        else:
            items = [item.model_copy(deep=True) for item in self._knowledge if item.article_id == article_id]
        if item_type:
            items = [item for item in items if item.type == item_type]
        return sorted(items, key=lambda item: item.created_at)
