import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Coroutine, Dict, List, Optional, Tuple

from jobengine.core.config import JOB_ITEM_CONCURRENCY
from jobengine.core.errors import InvalidTransitionError, JobNotFoundError
from jobengine.db import jobs_repo
from jobengine.db.jobs_repo import COMPLETED, FAILED
from jobengine.websocket.manager import manager

logger = logging.getLogger(__name__)

# Per-item work: receives the item index, returns a JSON-serialisable
# reference to the produced artifact, raises on failure.
WorkFn = Callable[[int], Awaitable[Any]]

active_jobs: Dict[str, Tuple[str, asyncio.Task]] = {}
started_at = time.time()


@dataclass
class ItemOutcome:
    index: int
    ref: Any = None
    error: Optional[str] = None


def _spawn(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    return asyncio.create_task(coro, name=name)


async def submit_job(
    tenant_id: str,
    owner_id: Optional[str],
    kind: str,
    total_items: int,
    work: WorkFn,
    item_concurrency: Optional[int] = None,
) -> Dict[str, Any]:
    """Persist a pending job and start its runner without waiting for it."""
    job = await jobs_repo.create_job(tenant_id, owner_id, kind, total_items)
    job_id = job["job_id"]
    runner = run_job(tenant_id, job_id, work, item_concurrency)
    try:
        task = _spawn(runner, name=f"job:{job_id}")
    except Exception as exc:
        runner.close()
        logger.error("job %s could not be dispatched: %s", job_id, exc)
        await jobs_repo.finalize(
            tenant_id,
            job_id,
            FAILED,
            {"error": {"message": f"dispatch failed: {exc}", "type": "dispatch"}},
        )
        await jobs_repo.record_event(job_id, "error", "job dispatch failed")
        raise

    active_jobs[job_id] = (tenant_id, task)
    task.add_done_callback(lambda _: active_jobs.pop(job_id, None))
    await manager.emit_log("info", f"job queued {job_id} ({kind})")
    return {
        "job_id": job_id,
        "status": job["status"],
        "total_items": job["total_items"],
    }


async def run_job(
    tenant_id: str,
    job_id: str,
    work: WorkFn,
    item_concurrency: Optional[int] = None,
) -> Optional[Dict[str, Any]]:
    """Drive one job from pending to a terminal state.

    Item failures are counted and never abort the loop. Anything escaping the
    per-item boundary fails the whole job.
    """
    try:
        job = await jobs_repo.transition_to_processing(tenant_id, job_id)
    except (InvalidTransitionError, JobNotFoundError) as exc:
        await manager.emit_log("warn", f"job {job_id} not started: {exc}")
        return None
    except Exception as exc:
        return await _fail_job(tenant_id, job_id, exc)

    try:
        await manager.job_status(job)
        await jobs_repo.record_event(
            job_id, "info", "job started", {"total_items": job["total_items"]}
        )
        outcomes = await _run_items(
            tenant_id, job, work, item_concurrency or JOB_ITEM_CONCURRENCY
        )
        job = await jobs_repo.finalize(
            tenant_id, job_id, COMPLETED, _build_result(outcomes)
        )
        await jobs_repo.record_event(
            job_id,
            "info",
            "job completed",
            {
                "completed_items": job["completed_items"],
                "failed_items": job["failed_items"],
            },
        )
    except Exception as exc:
        return await _fail_job(tenant_id, job_id, exc)

    await manager.job_status(job)
    await manager.emit_log(
        "info",
        f"job completed {job_id} "
        f"({job['completed_items']} ok, {job['failed_items']} failed)",
    )
    return job


async def _run_items(
    tenant_id: str, job: Dict[str, Any], work: WorkFn, concurrency: int
) -> List[ItemOutcome]:
    job_id = job["job_id"]
    semaphore = asyncio.Semaphore(max(1, concurrency))
    stop = asyncio.Event()

    async def attempt_item(index: int) -> ItemOutcome:
        try:
            ref = await work(index)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.warning("job %s item %d failed: %s", job_id, index, message)
            updated = await jobs_repo.increment_failed(tenant_id, job_id)
            await jobs_repo.record_event(
                job_id,
                "warn",
                f"item {index} failed",
                {"index": index, "error": message},
            )
            await manager.job_progress(updated)
            return ItemOutcome(index=index, error=message)
        updated = await jobs_repo.increment_completed(tenant_id, job_id)
        await manager.job_progress(updated)
        return ItemOutcome(index=index, ref=ref)

    async def run_item(index: int) -> Optional[ItemOutcome]:
        async with semaphore:
            if stop.is_set():
                return None
            try:
                return await attempt_item(index)
            except Exception:
                stop.set()
                raise

    tasks = [
        asyncio.create_task(run_item(index)) for index in range(job["total_items"])
    ]
    try:
        done, pending = await asyncio.wait(
            tasks, return_when=asyncio.FIRST_EXCEPTION
        )
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise
    if pending:
        # a store-level fault escaped an item; abandon everything still running
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
    for task in tasks:
        if task in done and task.exception() is not None:
            raise task.exception()
    return [task.result() for task in tasks]


def _build_result(outcomes: List[ItemOutcome]) -> Dict[str, Any]:
    ordered = sorted(outcomes, key=lambda outcome: outcome.index)
    artifacts = [
        {"index": outcome.index, "ref": outcome.ref}
        for outcome in ordered
        if outcome.error is None
    ]
    errors = [
        {"index": outcome.index, "error": outcome.error}
        for outcome in ordered
        if outcome.error is not None
    ]
    return {
        "artifacts": artifacts,
        "errors": errors,
        "completed_items": len(artifacts),
        "failed_items": len(errors),
    }


async def _fail_job(
    tenant_id: str, job_id: str, exc: BaseException
) -> Optional[Dict[str, Any]]:
    message = str(exc) or exc.__class__.__name__
    await manager.emit_log("error", f"job failed {job_id}: {message}")
    try:
        job = await jobs_repo.finalize(
            tenant_id,
            job_id,
            FAILED,
            {"error": {"message": message, "type": exc.__class__.__name__}},
        )
        await jobs_repo.record_event(job_id, "error", "job failed", {"error": message})
    except Exception as finalize_exc:  # pragma: no cover - safety net
        logger.error("job %s could not be finalized: %s", job_id, finalize_exc)
        return None
    await manager.job_status(job)
    return job


async def wait_for_jobs() -> None:
    """Wait until every job started by this process has finished."""
    while active_jobs:
        tasks = [task for _, task in list(active_jobs.values())]
        await asyncio.gather(*tasks, return_exceptions=True)


async def shutdown_jobs() -> None:
    """Cancel running jobs and mark them failed so none stay pending."""
    running = list(active_jobs.items())
    for _, (_, task) in running:
        task.cancel()
    await asyncio.gather(*(task for _, (_, task) in running), return_exceptions=True)
    for job_id, (tenant_id, _) in running:
        # finalize is a no-op for jobs that already reached a terminal state
        await jobs_repo.finalize(
            tenant_id,
            job_id,
            FAILED,
            {"error": {"message": "job interrupted by shutdown", "type": "shutdown"}},
        )


def status_snapshot() -> Dict[str, Any]:
    return {
        "uptime_sec": int(time.time() - started_at),
        "jobs": {
            "active": len(active_jobs),
            "item_concurrency": JOB_ITEM_CONCURRENCY,
        },
    }
