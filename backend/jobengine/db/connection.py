import asyncio
import os
import sqlite3
from typing import Any, Optional

from jobengine.core.config import DB_PATH

# One connection, one lock: every statement runs to completion before the
# next starts, so single-statement conditional updates are atomic.
db_lock = asyncio.Lock()
db_conn: sqlite3.Connection | None = None


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        create table if not exists jobs (
          job_id text primary key,
          tenant_id text not null,
          owner_id text,
          kind text not null,
          status text not null,
          total_items integer not null check (total_items > 0),
          completed_items integer not null default 0,
          failed_items integer not null default 0,
          created_at text not null,
          updated_at text not null,
          started_at text,
          completed_at text,
          result_json text,
          check (completed_items + failed_items <= total_items)
        );
        """
    )
    conn.execute(
        """
        create table if not exists job_events (
          event_id integer primary key,
          job_id text not null,
          created_at text not null,
          level text not null,
          message text not null,
          meta_json text
        );
        """
    )
    conn.execute(
        """
        create index if not exists idx_jobs_tenant_kind
        on jobs (tenant_id, kind, created_at);
        """
    )
    conn.execute(
        """
        create index if not exists idx_job_events_job
        on job_events (job_id, event_id);
        """
    )
    conn.commit()


async def connect_db(path: Optional[str] = None) -> None:
    global db_conn, db_lock
    db_path = path or DB_PATH
    db_lock = asyncio.Lock()
    if db_path != ":memory:":
        os.makedirs(os.path.dirname(os.path.abspath(db_path)), exist_ok=True)
    db_conn = sqlite3.connect(db_path, check_same_thread=False)
    db_conn.row_factory = sqlite3.Row
    init_db(db_conn)


async def close_db() -> None:
    global db_conn
    if db_conn:
        db_conn.close()
        db_conn = None


def _ensure_conn() -> sqlite3.Connection:
    if db_conn is None:
        raise RuntimeError("database not initialized")
    return db_conn


async def execute(query: str, params: tuple[Any, ...] = ()) -> int:
    """Run one write statement and return the number of affected rows."""
    async with db_lock:
        return await asyncio.to_thread(_execute_sync, query, params)


def _execute_sync(query: str, params: tuple[Any, ...]) -> int:
    conn = _ensure_conn()
    cur = conn.execute(query, params)
    conn.commit()
    return cur.rowcount


async def fetchone(
    query: str, params: tuple[Any, ...] = ()
) -> Optional[sqlite3.Row]:
    async with db_lock:
        return await asyncio.to_thread(_fetchone_sync, query, params)


def _fetchone_sync(
    query: str, params: tuple[Any, ...]
) -> Optional[sqlite3.Row]:
    conn = _ensure_conn()
    cur = conn.execute(query, params)
    return cur.fetchone()


async def fetchall(
    query: str, params: tuple[Any, ...] = ()
) -> list[sqlite3.Row]:
    async with db_lock:
        return await asyncio.to_thread(_fetchall_sync, query, params)


def _fetchall_sync(
    query: str, params: tuple[Any, ...]
) -> list[sqlite3.Row]:
    conn = _ensure_conn()
    cur = conn.execute(query, params)
    return cur.fetchall()
