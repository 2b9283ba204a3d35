import json
import uuid
from typing import Any, Dict, List, Optional

from jobengine.core.errors import (
    CounterOverflowError,
    InvalidTransitionError,
    JobNotFoundError,
)
from jobengine.db.connection import execute, fetchall, fetchone
from jobengine.utils.time import utc_now

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
TERMINAL_STATUSES = frozenset({COMPLETED, FAILED})


def _row_to_job(row: Any) -> Dict[str, Any]:
    return {
        "job_id": row["job_id"],
        "tenant_id": row["tenant_id"],
        "owner_id": row["owner_id"],
        "kind": row["kind"],
        "status": row["status"],
        "total_items": row["total_items"],
        "completed_items": row["completed_items"],
        "failed_items": row["failed_items"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "started_at": row["started_at"],
        "completed_at": row["completed_at"],
        "result": json.loads(row["result_json"]) if row["result_json"] else None,
    }


async def create_job(
    tenant_id: str, owner_id: Optional[str], kind: str, total_items: int
) -> Dict[str, Any]:
    if total_items < 1:
        raise ValueError("total_items must be at least 1")
    job_id = f"job_{uuid.uuid4().hex}"
    now = utc_now()
    await execute(
        """
        insert into jobs (
          job_id, tenant_id, owner_id, kind, status, total_items,
          completed_items, failed_items, created_at, updated_at
        )
        values (?, ?, ?, ?, ?, ?, 0, 0, ?, ?)
        """,
        (job_id, tenant_id, owner_id, kind, PENDING, total_items, now, now),
    )
    return {
        "job_id": job_id,
        "tenant_id": tenant_id,
        "owner_id": owner_id,
        "kind": kind,
        "status": PENDING,
        "total_items": total_items,
        "completed_items": 0,
        "failed_items": 0,
        "created_at": now,
        "updated_at": now,
        "started_at": None,
        "completed_at": None,
        "result": None,
    }


async def fetch_job(tenant_id: str, job_id: str) -> Optional[Dict[str, Any]]:
    row = await fetchone(
        "select * from jobs where job_id = ? and tenant_id = ?",
        (job_id, tenant_id),
    )
    if row is None:
        return None
    return _row_to_job(row)


async def _require_job(tenant_id: str, job_id: str) -> Dict[str, Any]:
    job = await fetch_job(tenant_id, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


async def fetch_jobs(
    tenant_id: str, kind: Optional[str] = None, limit: int = 200
) -> List[Dict[str, Any]]:
    if kind:
        rows = await fetchall(
            """
            select * from jobs where tenant_id = ? and kind = ?
            order by created_at desc limit ?
            """,
            (tenant_id, kind, limit),
        )
    else:
        rows = await fetchall(
            "select * from jobs where tenant_id = ? order by created_at desc limit ?",
            (tenant_id, limit),
        )
    return [_row_to_job(row) for row in rows]


async def transition_to_processing(tenant_id: str, job_id: str) -> Dict[str, Any]:
    now = utc_now()
    updated = await execute(
        """
        update jobs set status = ?, started_at = ?, updated_at = ?
        where job_id = ? and tenant_id = ? and status = ?
        """,
        (PROCESSING, now, now, job_id, tenant_id, PENDING),
    )
    job = await _require_job(tenant_id, job_id)
    if not updated:
        raise InvalidTransitionError(job_id, job["status"], PROCESSING)
    return job


async def _increment(
    tenant_id: str, job_id: str, column: str, n: int
) -> Dict[str, Any]:
    if n < 1:
        raise ValueError("increment must be at least 1")
    # The guard and the increment are one statement, so concurrent item
    # workers can neither lose an update nor overshoot total_items.
    updated = await execute(
        f"""
        update jobs set {column} = {column} + ?, updated_at = ?
        where job_id = ? and tenant_id = ? and status = ?
          and completed_items + failed_items + ? <= total_items
        """,
        (n, utc_now(), job_id, tenant_id, PROCESSING, n),
    )
    job = await _require_job(tenant_id, job_id)
    if updated:
        return job
    if job["status"] != PROCESSING:
        raise InvalidTransitionError(job_id, job["status"], PROCESSING)
    raise CounterOverflowError(
        job_id,
        job["completed_items"] + job["failed_items"] + n,
        job["total_items"],
    )


async def increment_completed(
    tenant_id: str, job_id: str, n: int = 1
) -> Dict[str, Any]:
    return await _increment(tenant_id, job_id, "completed_items", n)


async def increment_failed(tenant_id: str, job_id: str, n: int = 1) -> Dict[str, Any]:
    return await _increment(tenant_id, job_id, "failed_items", n)


async def finalize(
    tenant_id: str, job_id: str, status: str, result: Dict[str, Any]
) -> Dict[str, Any]:
    """Seal the job in a terminal state.

    Only the first call takes effect; later calls return the stored terminal
    record unchanged. ``failed`` is also accepted straight from ``pending`` so
    a job whose runner never started is not left pending.
    """
    if status not in TERMINAL_STATUSES:
        raise ValueError(f"not a terminal status: {status}")
    if not result:
        raise ValueError("terminal result must not be empty")
    allowed = (PROCESSING,) if status == COMPLETED else (PROCESSING, PENDING)
    placeholders = ", ".join("?" for _ in allowed)
    now = utc_now()
    updated = await execute(
        f"""
        update jobs set status = ?, result_json = ?, completed_at = ?, updated_at = ?
        where job_id = ? and tenant_id = ? and status in ({placeholders})
        """,
        (status, json.dumps(result), now, now, job_id, tenant_id, *allowed),
    )
    job = await _require_job(tenant_id, job_id)
    if not updated and job["status"] not in TERMINAL_STATUSES:
        raise InvalidTransitionError(job_id, job["status"], status)
    return job


async def record_event(
    job_id: str, level: str, message: str, meta: Optional[Dict[str, Any]] = None
) -> None:
    await execute(
        """
        insert into job_events (job_id, created_at, level, message, meta_json)
        values (?, ?, ?, ?, ?)
        """,
        (job_id, utc_now(), level, message, json.dumps(meta) if meta else None),
    )


async def fetch_events(job_id: str, limit: int = 200) -> List[Dict[str, Any]]:
    rows = await fetchall(
        """
        select * from job_events where job_id = ?
        order by event_id asc limit ?
        """,
        (job_id, limit),
    )
    return [
        {
            "event_id": row["event_id"],
            "created_at": row["created_at"],
            "level": row["level"],
            "message": row["message"],
            "meta": json.loads(row["meta_json"]) if row["meta_json"] else None,
        }
        for row in rows
    ]
