"""Progress snapshots for polling clients.

Multi-item jobs report the share of attempted items. Single-item jobs have no
sub-steps to count, so while they run the percent is a heuristic derived from
elapsed wall-clock time against a per-kind expected duration
(``EXPECTED_DURATION_SEC``). That estimate is not a measurement; it only keeps
a polling client's indicator moving. It is clamped to 5..95 so a started job
never shows 0% and only a finished job shows 100%.

The count-based percent departs from a plain floor of attempted/total: it is
held at 99 while the job is still processing, so 100 only follows the
terminal transition.
"""

import math
import time
from typing import Any, Dict, Optional

from jobengine.core.config import expected_duration_for
from jobengine.db import jobs_repo
from jobengine.db.jobs_repo import COMPLETED, FAILED, PROCESSING
from jobengine.utils.time import seconds_since

MIN_ESTIMATED_PERCENT = 5
MAX_ESTIMATED_PERCENT = 95
MAX_COUNTED_PERCENT = 99


def estimate_percent(elapsed_sec: float, expected_sec: float) -> int:
    if expected_sec <= 0:
        return MAX_ESTIMATED_PERCENT
    raw = math.floor(100 * max(0.0, elapsed_sec) / expected_sec)
    return max(MIN_ESTIMATED_PERCENT, min(MAX_ESTIMATED_PERCENT, raw))


def counted_percent(completed: int, failed: int, total: int) -> int:
    if total <= 0:
        return 0
    return math.floor(100 * (completed + failed) / total)


def compute_percent(job: Dict[str, Any], now: Optional[float] = None) -> int:
    status = job["status"]
    if status == COMPLETED:
        return 100
    if status != PROCESSING:
        return 0
    total = job["total_items"]
    if total > 1:
        # held below 100 until the runner has sealed the job
        return min(
            MAX_COUNTED_PERCENT,
            counted_percent(job["completed_items"], job["failed_items"], total),
        )
    elapsed = seconds_since(job.get("started_at"), now=now)
    return estimate_percent(elapsed, expected_duration_for(job["kind"]))


def build_snapshot(job: Dict[str, Any], now: Optional[float] = None) -> Dict[str, Any]:
    status = job["status"]
    return {
        "job_id": job["job_id"],
        "kind": job["kind"],
        "status": status,
        "percent": compute_percent(job, now=now),
        "estimated": status == PROCESSING and job["total_items"] == 1,
        "completed_items": job["completed_items"],
        "failed_items": job["failed_items"],
        "total_items": job["total_items"],
        "created_at": job["created_at"],
        "started_at": job["started_at"],
        "completed_at": job["completed_at"],
        "result": job["result"] if status in (COMPLETED, FAILED) else None,
    }


async def get_progress(tenant_id: str, job_id: str) -> Optional[Dict[str, Any]]:
    job = await jobs_repo.fetch_job(tenant_id, job_id)
    if job is None:
        return None
    return build_snapshot(job, now=time.time())
