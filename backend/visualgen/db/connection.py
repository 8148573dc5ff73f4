import asyncio
import sqlite3
from typing import Any, Callable, Optional, TypeVar

from visualgen.core.config import DB_PATH

T = TypeVar("T")

db_lock = asyncio.Lock()
db_conn: sqlite3.Connection | None = None


def init_db(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        create table if not exists jobs (
          job_id text primary key,
          scope text not null,
          status text not null,
          created_at text not null,
          updated_at text not null,
          started_at text,
          completed_at text,
          stop_requested integer default 0,
          options_json text,
          error text
        );
        """
    )
    conn.execute(
        """
        create table if not exists job_items (
          job_id text not null,
          position integer not null,
          word_id text not null,
          visual_type text not null,
          stage text not null,
          item_json text not null,
          primary key (job_id, position)
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
        create index if not exists idx_jobs_created
        on jobs (created_at);
        """
    )
    conn.execute(
        """
        create index if not exists idx_job_events_job
        on job_events (job_id);
        """
    )
    conn.commit()


async def connect_db(path: Optional[str] = None) -> None:
    global db_conn, db_lock
    db_lock = asyncio.Lock()
    db_conn = sqlite3.connect(path or DB_PATH, check_same_thread=False)
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


async def execute(query: str, params: tuple[Any, ...] = ()) -> None:
    async with db_lock:
        await asyncio.to_thread(_execute_sync, query, params)


def _execute_sync(query: str, params: tuple[Any, ...]) -> None:
    conn = _ensure_conn()
    conn.execute(query, params)
    conn.commit()


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


async def run(fn: Callable[[sqlite3.Connection], T]) -> T:
    """Run several statements as one unit under the database lock."""
    async with db_lock:
        return await asyncio.to_thread(_run_sync, fn)


def _run_sync(fn: Callable[[sqlite3.Connection], T]) -> T:
    conn = _ensure_conn()
    try:
        result = fn(conn)
    except Exception:
        conn.rollback()
        raise
    conn.commit()
    return result
