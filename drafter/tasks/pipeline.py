from __future__ import annotations

import json
import logging
import time
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.config import Settings, get_settings
from ..errors import ErrorKind, NotFoundError, PipelineError, StructuralError, UpstreamError
from ..models import (
    HALTED_JOB_STATUSES,
    Article,
    ArticleStatus,
    Candidate,
    Job,
    JobStats,
    JobStatus,
    Section,
    SectionStatus,
    utcnow,
)
from ..services.extract import build_page_extractor
from ..services.firestore import FirestoreRepository
from ..services.gcs import AssetStorage
from ..services.llm import build_gateway
from ..services.search import build_search_client
from .candidates import CandidateCollector
from .integrate import Integrator
from .outline import OutlineSynthesizer, scale_planned_chars
from .research import ReferenceResearcher
from .retry import BackoffPolicy
from .sections import SectionDrafter

logger = logging.getLogger(__name__)

StopCheck = Callable[[], bool]


def section_progress(reviewed: int, total: int) -> int:
    """Sections phase maps onto 15..75."""
    return min(75, round(reviewed / max(1, total) * 70) + 15)


class PipelineDriver:
    """Advances one job a bounded amount per call; safe to invoke repeatedly."""

    def __init__(
        self,
        repository: FirestoreRepository,
        researcher: ReferenceResearcher,
        collector: CandidateCollector,
        outline_synthesizer: OutlineSynthesizer,
        drafter: SectionDrafter,
        integrator: Integrator,
        *,
        settings: Optional[Settings] = None,
    ) -> None:
        self.repository = repository
        self.researcher = researcher
        self.collector = collector
        self.outline_synthesizer = outline_synthesizer
        self.drafter = drafter
        self.integrator = integrator
        self.settings = settings or get_settings()

    def advance(self, job_id: str, should_stop: Optional[StopCheck] = None) -> JobStatus:
        job = self.repository.require_job(job_id)
        if job.status in HALTED_JOB_STATUSES:
            logger.info("Job %s is %s; nothing to do", job_id, job.status.value)
            return job.status

        try:
            article = self.repository.require_article(job.article_id)
            if job.status == JobStatus.pending:
                job = self.repository.update_job(job_id, status=JobStatus.running, started_at=job.started_at or utcnow())
                self.repository.update_article(article.id, status=ArticleStatus.running)
                self.repository.append_job_event(job_id, "start", "job started")

            prepared = self.ensure_outline_and_sections(job, article)
            if prepared:
                article = self.repository.require_article(article.id)
            if should_stop and should_stop():
                self._mark_progress(job_id, clear_error=prepared)
                return JobStatus.running

            remaining, drafted, failed = self._draft_sections(job, article, should_stop)
            if remaining:
                if failed and not drafted:
                    raise UpstreamError(f"no section could be drafted (failed: {failed})")
                self._mark_progress(job_id, clear_error=prepared or drafted > 0)
                logger.info("Job %s paused with %d sections remaining", job_id, remaining)
                return JobStatus.running

            return self._integrate(job_id, article)
        except PipelineError as exc:
            return self._fail(job_id, exc)
        except NotFoundError as exc:
            return self._fail(job_id, StructuralError(str(exc)))
        except Exception as exc:
            logger.exception("Job %s: unexpected failure", job_id)
            return self._fail(job_id, UpstreamError(f"{type(exc).__name__}: {exc}"))

    # ------------------------------------------------------------------ #
    # Phases
    # ------------------------------------------------------------------ #
    def ensure_outline_and_sections(self, job: Job, article: Article) -> bool:
        """Build research, candidates, outline and sections unless they already exist.

        Returns True when work was done.
        """
        sections = self.repository.list_sections(job.id)
        if article.outline and sections:
            return False

        self._step(job.id, "research", 5, "researching reference URLs")
        self.researcher.research(article)

        if article.is_comparison:
            self._step(job.id, "candidates", 8, "collecting comparison candidates")
            candidates = self.collector.ensure_candidates(article, on_update=self._candidate_hook(job.id))
            if not candidates:
                raise StructuralError("no comparison candidates collected")
            article = self.repository.require_article(article.id)

        self._step(job.id, "outline", 10, "building outline")
        research_context = self.researcher.build_context(article.id)
        outline = self.outline_synthesizer.build_outline(article, research_context)
        planned = scale_planned_chars(outline, article.target_chars)
        self.repository.update_article(article.id, outline=outline.to_markdown())

        created = self.repository.create_sections(
            [
                Section(
                    job_id=job.id,
                    article_id=article.id,
                    index=idx,
                    heading=entry.h2,
                    intent_tag=entry.intent_tag,
                    planned_chars=planned[idx],
                )
                for idx, entry in enumerate(outline.sections)
            ]
        )
        self.repository.append_job_event(job.id, "outline", f"outline ready: {created} sections created")
        self.outline_synthesizer.record_intro_variants(article)
        self._refresh_stats(job.id, article.id)
        return True

    def _draft_sections(
        self, job: Job, article: Article, should_stop: Optional[StopCheck]
    ) -> Tuple[int, int, List[int]]:
        """Draft up to the per-advance ceiling.

        Returns the number of sections still incomplete, the number drafted
        in this call and the indices that failed.
        """
        research_context = self.researcher.build_context(article.id)
        failed: List[int] = []
        drafted = 0
        for _ in range(max(1, self.settings.max_sections_per_advance)):
            if should_stop and should_stop():
                logger.info("Job %s: deadline reached between sections", job.id)
                break
            pending = [
                section
                for section in self.repository.list_sections(job.id)
                if not section.is_complete and section.index not in failed
            ]
            if not pending:
                break
            target = pending[0]
            try:
                self.drafter.draft_section(job, article, target.index, research_context)
            except StructuralError:
                raise
            except Exception as exc:
                logger.warning("Job %s: drafting section %d failed: %s", job.id, target.index, exc)
                self.repository.append_job_event(job.id, "sections", f"section {target.index} failed: {exc}", level="warning")
                failed.append(target.index)
                continue
            drafted += 1
            sections = self.repository.list_sections(job.id)
            reviewed = sum(1 for section in sections if section.is_complete)
            self.repository.update_job(
                job.id,
                status=JobStatus.running,
                step="sections",
                cursor=target.index + 1,
                progress=section_progress(reviewed, len(sections)),
            )
            self.repository.append_job_event(job.id, "sections", f"section {target.index} reviewed ({reviewed}/{len(sections)})")
        remaining = sum(1 for section in self.repository.list_sections(job.id) if not section.is_complete)
        return remaining, drafted, failed

    def _integrate(self, job_id: str, article: Article) -> JobStatus:
        self._step(job_id, "integrate", 85, "integrating sections")
        job = self.repository.require_job(job_id)
        artifact = self.integrator.integrate(job, article)
        self.integrator.record_extras(article, artifact.markdown)
        self._refresh_stats(job_id, article.id, artifact_chars=artifact.char_count, padding_iterations=artifact.padding_iterations)
        self.repository.update_job(
            job_id,
            status=JobStatus.done,
            step="done",
            progress=100,
            finished_at=utcnow(),
            error=None,
            error_kind=None,
            retry_count=0,
        )
        self.repository.append_job_event(job_id, "done", f"article completed ({artifact.char_count} chars)")
        logger.info("Job %s done", job_id)
        return JobStatus.done

    # ------------------------------------------------------------------ #
    # Bookkeeping
    # ------------------------------------------------------------------ #
    def _step(self, job_id: str, step: str, progress: int, message: str) -> None:
        self.repository.update_job(job_id, status=JobStatus.running, step=step, progress=progress)
        self.repository.append_job_event(job_id, step, message)
        logger.info("Job %s: %s", job_id, message)

    def _mark_progress(self, job_id: str, *, clear_error: bool) -> None:
        """Persist stats; the stored error is cleared only when this advance made progress."""
        job = self.repository.require_job(job_id)
        self._refresh_stats(job_id, job.article_id)
        if clear_error and (job.error or job.retry_count):
            self.repository.update_job(job_id, error=None, error_kind=None, retry_count=0)

    def _candidate_hook(self, job_id: str) -> Callable[[List[Candidate], str], None]:
        def on_update(candidates: List[Candidate], label: str) -> None:
            job = self.repository.require_job(job_id)
            stats = job.stats.model_copy(
                update={
                    "candidates": len(candidates),
                    "candidate_sources": dict(Counter(candidate.source.value for candidate in candidates)),
                }
            )
            self.repository.update_job(job_id, stats=stats)
            self.repository.append_job_event(job_id, "candidates", f"{label}: {len(candidates)} candidates")

        return on_update

    def _refresh_stats(self, job_id: str, article_id: str, **extra: Any) -> JobStats:
        job = self.repository.require_job(job_id)
        article = self.repository.require_article(article_id)
        sections = self.repository.list_sections(job_id)
        stats = job.stats.model_copy(
            update={
                "sections_total": len(sections),
                "sections_reviewed": sum(1 for section in sections if section.status == SectionStatus.reviewed),
                "candidates": len(article.comparison_candidates),
                "candidate_sources": dict(Counter(candidate.source.value for candidate in article.comparison_candidates)),
                "references": len(self.repository.list_references(article_id)),
                **extra,
            }
        )
        self.repository.update_job(job_id, stats=stats)
        return stats

    def _fail(self, job_id: str, error: PipelineError) -> JobStatus:
        job = self.repository.require_job(job_id)
        kind = error.kind
        retry_count = job.retry_count
        if not error.terminal:
            retry_count += 1
            if job.error == error.message and job.error_kind is not None:
                kind = ErrorKind.repeated
            elif retry_count >= self.settings.max_transient_retries:
                kind = ErrorKind.repeated

        if kind is ErrorKind.transient:
            status = JobStatus.running
            logger.warning("Job %s: transient failure (%d/%d): %s", job_id, retry_count, self.settings.max_transient_retries, error.message)
            self.repository.update_job(job_id, status=status, error=error.message, error_kind=kind, retry_count=retry_count)
        else:
            status = JobStatus.error
            logger.error("Job %s: %s failure, stopping: %s", job_id, kind.value, error.message)
            self.repository.update_job(
                job_id,
                status=status,
                error=error.message,
                error_kind=kind,
                retry_count=retry_count,
                finished_at=utcnow(),
            )
            try:
                self.repository.update_article(job.article_id, status=ArticleStatus.error)
            except NotFoundError:
                logger.warning("Job %s: article %s missing while recording failure", job_id, job.article_id)
        self.repository.append_job_event(job_id, job.step, f"{kind.value}: {error.message}", level="error")
        return status


def run_until_timeout(
    driver: PipelineDriver,
    job_id: str,
    budget_seconds: Optional[float] = None,
    *,
    clock: Callable[[], float] = time.monotonic,
) -> JobStatus:
    """Call ``advance`` until the job halts or the wall-clock budget is spent.

    A transient failure ends the run; the retry belongs to the next invocation.
    """
    budget = driver.settings.run_budget_seconds if budget_seconds is None else budget_seconds
    deadline = clock() + budget

    def expired() -> bool:
        return clock() >= deadline

    while True:
        status = driver.advance(job_id, should_stop=expired)
        if status in HALTED_JOB_STATUSES:
            return status
        job = driver.repository.require_job(job_id)
        if job.error:
            logger.info("Job %s: transient failure recorded (%s); leaving retry to the next run", job_id, job.error)
            return status
        if expired():
            logger.info("Job %s: run budget of %.0fs spent; status=%s", job_id, budget, status.value)
            return status


def build_driver(
    settings: Optional[Settings] = None,
    *,
    repository: Optional[FirestoreRepository] = None,
    gateway: Optional[Any] = None,
    search_client: Optional[Any] = None,
    extractor: Optional[Any] = None,
    storage: Optional[AssetStorage] = None,
    backoff: Optional[BackoffPolicy] = None,
) -> PipelineDriver:
    settings = settings or get_settings()
    repository = repository or FirestoreRepository()
    gateway = gateway or build_gateway(settings)
    extractor = extractor or build_page_extractor(settings)
    if search_client is None:
        search_client = build_search_client(settings)
    storage = storage or AssetStorage()
    backoff = backoff or BackoffPolicy.from_settings(settings)

    options = {"settings": settings, "backoff": backoff}
    return PipelineDriver(
        repository,
        ReferenceResearcher(gateway, repository, extractor, **options),
        CandidateCollector(gateway, repository, extractor, search_client, **options),
        OutlineSynthesizer(gateway, repository, **options),
        SectionDrafter(gateway, repository, **options),
        Integrator(gateway, repository, storage, **options),
        settings=settings,
    )


def handle_pubsub_message(event, _context) -> Dict:
    # Expected to be Pub/Sub triggered Cloud Run job
    data = json.loads(event["data"]) if isinstance(event, dict) and "data" in event else event
    job_id = data.get("job_id") or data.get("jobId")
    if not job_id:
        raise ValueError("job_id is required")
    driver = build_driver()
    status = run_until_timeout(driver, job_id, data.get("budget_seconds"))
    job = driver.repository.require_job(job_id)
    return {"job_id": job_id, "status": status.value, "step": job.step, "progress": job.progress}
