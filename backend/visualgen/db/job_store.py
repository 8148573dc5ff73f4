import json
import sqlite3
from typing import Any, Dict, List, Optional, Protocol

from visualgen.db import connection
from visualgen.schemas.jobs import TERMINAL_STATUSES, BatchOptions, Job, JobItem, JobStatus
from visualgen.utils.time import utc_now

_TERMINAL_VALUES = tuple(status.value for status in TERMINAL_STATUSES)


class JobStore(Protocol):
    async def get(self, job_id: str) -> Optional[Job]: ...

    async def put(self, job: Job) -> None: ...

    async def put_item(self, job_id: str, position: int, item: JobItem) -> None: ...

    async def list(self, limit: int = 200) -> List[Job]: ...

    async def record_event(
        self, job_id: str, level: str, message: str, meta: Optional[Dict[str, Any]] = None
    ) -> None: ...

    async def events(self, job_id: str) -> List[Dict[str, Any]]: ...

    async def prune(self, keep: int) -> int: ...


class MemoryJobStore:
    """Process-local store; every read and write goes through a deep copy."""

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._events: Dict[str, List[Dict[str, Any]]] = {}

    async def get(self, job_id: str) -> Optional[Job]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def put(self, job: Job) -> None:
        self._jobs[job.job_id] = job.model_copy(deep=True)

    async def put_item(self, job_id: str, position: int, item: JobItem) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(job_id)
        job.items[position] = item.model_copy(deep=True)
        job.updated_at = utc_now()

    async def list(self, limit: int = 200) -> List[Job]:
        # newest first; same-second jobs by reverse insertion order
        jobs = sorted(
            reversed(list(self._jobs.values())), key=lambda job: job.created_at, reverse=True
        )
        return [job.model_copy(deep=True) for job in jobs[:limit]]

    async def record_event(
        self, job_id: str, level: str, message: str, meta: Optional[Dict[str, Any]] = None
    ) -> None:
        self._events.setdefault(job_id, []).append(
            {"created_at": utc_now(), "level": level, "message": message, "meta": meta}
        )

    async def events(self, job_id: str) -> List[Dict[str, Any]]:
        return list(self._events.get(job_id, []))

    async def prune(self, keep: int) -> int:
        finished = sorted(
            (job for job in self._jobs.values() if job.status in TERMINAL_STATUSES),
            key=lambda job: job.created_at,
        )
        expired = finished[: max(len(finished) - keep, 0)]
        for job in expired:
            self._jobs.pop(job.job_id, None)
            self._events.pop(job.job_id, None)
        return len(expired)


def _row_to_job(row: Any, item_rows: List[Any]) -> Job:
    return Job(
        job_id=row["job_id"],
        status=JobStatus(row["status"]),
        items=[JobItem.model_validate_json(item["item_json"]) for item in item_rows],
        options=(
            BatchOptions.model_validate_json(row["options_json"])
            if row["options_json"]
            else BatchOptions(scope=row["scope"])
        ),
        stop_requested=bool(row["stop_requested"]),
        error=row["error"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
    )


def _item_params(job_id: str, position: int, item: JobItem) -> tuple[Any, ...]:
    return (
        job_id,
        position,
        item.word_id,
        item.visual_type.value,
        item.stage.value,
        item.model_dump_json(),
    )


_UPSERT_ITEM = """
    insert into job_items (job_id, position, word_id, visual_type, stage, item_json)
    values (?, ?, ?, ?, ?, ?)
    on conflict (job_id, position) do update set
      word_id = excluded.word_id,
      visual_type = excluded.visual_type,
      stage = excluded.stage,
      item_json = excluded.item_json
"""


def _load_job(conn: sqlite3.Connection, job_id: str) -> Optional[Job]:
    row = conn.execute("select * from jobs where job_id = ?", (job_id,)).fetchone()
    if row is None:
        return None
    item_rows = conn.execute(
        "select item_json from job_items where job_id = ? order by position",
        (job_id,),
    ).fetchall()
    return _row_to_job(row, item_rows)


class SqliteJobStore:
    """Job store backed by the shared sqlite connection."""

    async def get(self, job_id: str) -> Optional[Job]:
        return await connection.run(lambda conn: _load_job(conn, job_id))

    async def put(self, job: Job) -> None:
        def _write(conn: sqlite3.Connection) -> None:
            conn.execute(
                """
                insert into jobs (
                  job_id, scope, status, created_at, updated_at, started_at,
                  completed_at, stop_requested, options_json, error
                )
                values (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                on conflict (job_id) do update set
                  status = excluded.status,
                  updated_at = excluded.updated_at,
                  started_at = excluded.started_at,
                  completed_at = excluded.completed_at,
                  stop_requested = excluded.stop_requested,
                  options_json = excluded.options_json,
                  error = excluded.error
                """,
                (
                    job.job_id,
                    job.options.scope,
                    job.status.value,
                    job.created_at,
                    job.updated_at,
                    job.started_at,
                    job.completed_at,
                    int(job.stop_requested),
                    job.options.model_dump_json(),
                    job.error,
                ),
            )
            conn.executemany(
                _UPSERT_ITEM,
                [
                    _item_params(job.job_id, position, item)
                    for position, item in enumerate(job.items)
                ],
            )

        await connection.run(_write)

    async def put_item(self, job_id: str, position: int, item: JobItem) -> None:
        def _write(conn: sqlite3.Connection) -> None:
            conn.execute(_UPSERT_ITEM, _item_params(job_id, position, item))
            conn.execute(
                "update jobs set updated_at = ? where job_id = ?",
                (utc_now(), job_id),
            )

        await connection.run(_write)

    async def list(self, limit: int = 200) -> List[Job]:
        def _read(conn: sqlite3.Connection) -> List[Job]:
            rows = conn.execute(
                "select job_id from jobs order by created_at desc, rowid desc limit ?",
                (limit,),
            ).fetchall()
            jobs = [_load_job(conn, row["job_id"]) for row in rows]
            return [job for job in jobs if job is not None]

        return await connection.run(_read)

    async def record_event(
        self, job_id: str, level: str, message: str, meta: Optional[Dict[str, Any]] = None
    ) -> None:
        await connection.execute(
            """
            insert into job_events (job_id, created_at, level, message, meta_json)
            values (?, ?, ?, ?, ?)
            """,
            (job_id, utc_now(), level, message, json.dumps(meta) if meta else None),
        )

    async def events(self, job_id: str) -> List[Dict[str, Any]]:
        rows = await connection.fetchall(
            "select * from job_events where job_id = ? order by event_id", (job_id,)
        )
        return [
            {
                "created_at": row["created_at"],
                "level": row["level"],
                "message": row["message"],
                "meta": json.loads(row["meta_json"]) if row["meta_json"] else None,
            }
            for row in rows
        ]

    async def prune(self, keep: int) -> int:
        def _delete(conn: sqlite3.Connection) -> int:
            placeholders = ", ".join("?" for _ in _TERMINAL_VALUES)
            rows = conn.execute(
                f"""
                select job_id from jobs
                where status in ({placeholders})
                order by created_at desc, rowid desc
                limit -1 offset ?
                """,
                (*_TERMINAL_VALUES, keep),
            ).fetchall()
            expired = [(row["job_id"],) for row in rows]
            for table in ("job_items", "job_events", "jobs"):
                conn.executemany(f"delete from {table} where job_id = ?", expired)
            return len(expired)

        return await connection.run(_delete)
