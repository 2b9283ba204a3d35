import logging
import sqlite3
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query

from jobengine.api.deps import Caller, get_caller, verify_token
from jobengine.core.errors import UnknownWorkflowError
from jobengine.db import jobs_repo
from jobengine.schemas.jobs import (
    JobAccepted,
    JobCreate,
    JobEventList,
    JobList,
    JobProgress,
    JobRecord,
)
from jobengine.services import progress
from jobengine.services.jobs import submit_job
from jobengine.services.workflows import resolve_workflow

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(verify_token)])

STORE_ERRORS = (sqlite3.Error, RuntimeError)


def _store_unavailable(exc: Exception) -> HTTPException:
    logger.error("job store unavailable: %s", exc)
    return HTTPException(status_code=503, detail="job store unavailable")


async def _snapshot_or_404(caller: Caller, job_id: str) -> Dict[str, Any]:
    try:
        snapshot = await progress.get_progress(caller.tenant_id, job_id)
    except STORE_ERRORS as exc:
        raise _store_unavailable(exc) from exc
    if snapshot is None:
        raise HTTPException(status_code=404, detail="job not found")
    return snapshot


@router.post("/jobs", response_model=JobAccepted, status_code=202)
async def create_job_api(
    request: JobCreate, caller: Caller = Depends(get_caller)
) -> JobAccepted:
    try:
        work = resolve_workflow(request.kind, request.payload)
    except UnknownWorkflowError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (TypeError, ValueError) as exc:
        raise HTTPException(status_code=400, detail=f"invalid payload: {exc}") from exc
    try:
        handle = await submit_job(
            caller.tenant_id, caller.user_id, request.kind, request.total_items, work
        )
    except STORE_ERRORS as exc:
        raise _store_unavailable(exc) from exc
    return JobAccepted(**handle)


@router.get("/jobs", response_model=JobList)
async def list_jobs(
    kind: Optional[str] = None,
    limit: int = Query(50, ge=1, le=200),
    caller: Caller = Depends(get_caller),
) -> JobList:
    try:
        jobs = await jobs_repo.fetch_jobs(caller.tenant_id, kind=kind, limit=limit)
    except STORE_ERRORS as exc:
        raise _store_unavailable(exc) from exc
    return JobList(jobs=[JobRecord(**job) for job in jobs])


@router.get("/jobs/{job_id}", response_model=JobProgress)
async def get_job(job_id: str, caller: Caller = Depends(get_caller)) -> JobProgress:
    return JobProgress(**await _snapshot_or_404(caller, job_id))


@router.get("/jobs/{job_id}/progress")
async def get_job_progress(
    job_id: str, caller: Caller = Depends(get_caller)
) -> Dict[str, Any]:
    snapshot = await _snapshot_or_404(caller, job_id)
    return {
        "status": snapshot["status"],
        "percent": snapshot["percent"],
        "completed_items": snapshot["completed_items"],
        "failed_items": snapshot["failed_items"],
        "total_items": snapshot["total_items"],
    }


@router.get("/jobs/{job_id}/events", response_model=JobEventList)
async def get_job_events(
    job_id: str, caller: Caller = Depends(get_caller)
) -> JobEventList:
    await _snapshot_or_404(caller, job_id)
    try:
        events = await jobs_repo.fetch_events(job_id)
    except STORE_ERRORS as exc:
        raise _store_unavailable(exc) from exc
    return JobEventList(job_id=job_id, events=events)
