from __future__ import annotations

import logging
from functools import lru_cache
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from ..errors import NotFoundError
from ..models import (
    AdvanceResponse,
    Article,
    ArticleCreate,
    ArticleCreateResponse,
    Candidate,
    CandidatesAddRequest,
    Job,
    JobStatus,
    RunRequest,
)
from ..services.firestore import FirestoreRepository
from ..tasks.candidates import merge_manual_candidates
from ..tasks.pipeline import PipelineDriver, build_driver, run_until_timeout

logger = logging.getLogger(__name__)

router = APIRouter()


@lru_cache
def get_repository() -> FirestoreRepository:
    return FirestoreRepository()


@lru_cache
def _driver_for(store: FirestoreRepository) -> PipelineDriver:
    # One driver per store, so HTTP and SDK clients are reused across requests.
    return build_driver(repository=store)


def get_driver(store: FirestoreRepository = Depends(get_repository)) -> PipelineDriver:
    try:
        return _driver_for(store)
    except ValueError as exc:
        logger.error("Pipeline initialization failed: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Pipeline initialization failed. Check configuration.",
        ) from exc


def _advance_response(store: FirestoreRepository, job_id: str, result: JobStatus) -> AdvanceResponse:
    job = store.require_job(job_id)
    return AdvanceResponse(job_id=job.id, status=result, step=job.step, progress=job.progress, error=job.error)


@router.post("/articles", response_model=ArticleCreateResponse)
def create_article(
    payload: ArticleCreate,
    store: FirestoreRepository = Depends(get_repository),
) -> ArticleCreateResponse:
    article = store.create_article(payload)
    job = store.create_job(article.id)
    logger.info("Created article %s (mode=%s) with job %s", article.id, article.mode.value, job.id)
    return ArticleCreateResponse(article_id=article.id, job_id=job.id)


@router.get("/articles/{article_id}", response_model=Article)
def get_article(article_id: str, store: FirestoreRepository = Depends(get_repository)) -> Article:
    article = store.get_article(article_id)
    if not article:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Article not found")
    return article


@router.post("/articles/{article_id}/candidates", response_model=List[Candidate])
def add_candidates(
    article_id: str,
    payload: CandidatesAddRequest,
    store: FirestoreRepository = Depends(get_repository),
) -> List[Candidate]:
    article = store.get_article(article_id)
    if not article:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Article not found")
    return merge_manual_candidates(store, article, payload.candidates)


@router.get("/jobs/{job_id}", response_model=Job)
def get_job(job_id: str, store: FirestoreRepository = Depends(get_repository)) -> Job:
    job = store.get_job(job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


@router.post("/jobs/{job_id}/advance", response_model=AdvanceResponse)
def advance_job(
    job_id: str,
    store: FirestoreRepository = Depends(get_repository),
    driver: PipelineDriver = Depends(get_driver),
) -> AdvanceResponse:
    try:
        result = driver.advance(job_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found") from exc
    return _advance_response(store, job_id, result)


@router.post("/jobs/{job_id}/run", response_model=AdvanceResponse)
def run_job(
    job_id: str,
    payload: Optional[RunRequest] = None,
    store: FirestoreRepository = Depends(get_repository),
    driver: PipelineDriver = Depends(get_driver),
) -> AdvanceResponse:
    budget = payload.budget_seconds if payload else None
    try:
        result = run_until_timeout(driver, job_id, budget)
    except NotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found") from exc
    return _advance_response(store, job_id, result)
