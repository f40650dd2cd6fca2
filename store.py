"""
Durable job record store backed by SQLite.

Every public method opens its own short-lived connection and commits a single
transaction, so no partial write of a record is ever observable. Status
changes go through compare-and-set updates (``transition``/``claim_next_pending``)
which is what keeps two callers from claiming or mutating the same job twice.
"""

import asyncio
import functools
import json
import logging
import os
import sqlite3
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from errors import InvalidState, NotFound, SystemFailure
from models import (
    TERMINAL_STATUSES,
    Job,
    JobStatus,
    JobType,
    PlaylistItem,
)
from utils import parse_legacy_options

logger = logging.getLogger(__name__)

_JOB_COLUMNS = {
    "url",
    "type",
    "status",
    "progress",
    "error",
    "options",
    "title",
    "file_path",
    "attempts",
}
_ITEM_COLUMNS = {"url", "title", "status", "progress", "file_path", "error"}


def ensure_download_queue_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS download_queue (
            id TEXT PRIMARY KEY,
            url TEXT NOT NULL,
            type TEXT NOT NULL,
            status TEXT NOT NULL,
            progress INTEGER NOT NULL DEFAULT 0,
            error TEXT,
            options TEXT,
            title TEXT,
            file_path TEXT,
            attempts INTEGER NOT NULL DEFAULT 0,
            created_at REAL NOT NULL,
            updated_at REAL NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_download_queue_status_created "
        "ON download_queue (status, created_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_download_queue_status_updated "
        "ON download_queue (status, updated_at)"
    )


def ensure_playlist_items_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS playlist_items (
            job_id TEXT NOT NULL,
            position INTEGER NOT NULL,
            url TEXT NOT NULL,
            title TEXT NOT NULL,
            status TEXT NOT NULL,
            progress INTEGER NOT NULL DEFAULT 0,
            file_path TEXT,
            error TEXT,
            updated_at REAL NOT NULL,
            PRIMARY KEY (job_id, position)
        )
        """
    )


def _encode(column: str, value: Any) -> Any:
    if column in ("status", "type") and hasattr(value, "value"):
        return value.value
    if column == "options":
        return json.dumps(value or {}, ensure_ascii=False)
    return value


class JobStore:
    """Table of download jobs keyed by id, plus ordered playlist items."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    def ensure_schema(self) -> None:
        directory = os.path.dirname(os.path.abspath(self.db_path))
        os.makedirs(directory, exist_ok=True)
        conn = self._connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            ensure_download_queue_table(conn)
            ensure_playlist_items_table(conn)
            conn.commit()
        finally:
            conn.close()

    async def run(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run a blocking store call in the default executor."""
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, functools.partial(fn, *args, **kwargs))
        except sqlite3.Error as exc:
            logger.error("Job store call %s failed: %s", getattr(fn, "__name__", fn), exc)
            raise SystemFailure("Job store is unavailable") from exc

    # -- row mapping --------------------------------------------------------

    @staticmethod
    def _row_to_job(row: Optional[sqlite3.Row]) -> Optional[Job]:
        if row is None:
            return None
        error = row["error"]
        options: Dict[str, Any] = {}
        if row["options"]:
            try:
                decoded = json.loads(row["options"])
                options = decoded if isinstance(decoded, dict) else {}
            except ValueError:
                options = {}
        else:
            legacy = parse_legacy_options(error)
            if legacy is not None:
                options = legacy
                error = None
        return Job(
            id=row["id"],
            url=row["url"],
            type=JobType(row["type"]),
            status=JobStatus(row["status"]),
            progress=row["progress"],
            error=error,
            options=options,
            title=row["title"],
            file_path=row["file_path"],
            attempts=row["attempts"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_item(row: sqlite3.Row) -> PlaylistItem:
        return PlaylistItem(
            job_id=row["job_id"],
            position=row["position"],
            url=row["url"],
            title=row["title"],
            status=JobStatus(row["status"]),
            progress=row["progress"],
            file_path=row["file_path"],
            error=row["error"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _assignments(fields: Dict[str, Any], allowed: set) -> tuple:
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unknown columns: {sorted(unknown)}")
        names = sorted(fields)
        clause = ", ".join(f"{name}=?" for name in names)
        values = [_encode(name, fields[name]) for name in names]
        return clause, values

    # -- jobs ---------------------------------------------------------------

    def create_job(self, job: Job, items: Optional[Sequence[PlaylistItem]] = None) -> Job:
        """Insert a job and, for playlists, its ordered items in one transaction."""
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO download_queue
                        (id, url, type, status, progress, error, options, title,
                         file_path, attempts, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.url,
                        job.type.value,
                        job.status.value,
                        job.progress,
                        job.error,
                        json.dumps(job.options or {}, ensure_ascii=False),
                        job.title,
                        job.file_path,
                        job.attempts,
                        job.created_at,
                        job.updated_at,
                    ),
                )
                if items:
                    self._insert_items(conn, job.id, items)
            return job
        finally:
            conn.close()

    def find_job(self, job_id: str) -> Optional[Job]:
        conn = self._connect()
        try:
            row = conn.execute("SELECT * FROM download_queue WHERE id=?", (job_id,)).fetchone()
            return self._row_to_job(row)
        finally:
            conn.close()

    def get_job(self, job_id: str) -> Job:
        job = self.find_job(job_id)
        if job is None:
            raise NotFound(job_id)
        return job

    def list_jobs(
        self,
        statuses: Optional[Iterable[JobStatus]] = None,
        updated_since: Optional[float] = None,
        created_before: Optional[float] = None,
        limit: Optional[int] = None,
        order_by: str = "created_at",
        newest_first: bool = False,
    ) -> List[Job]:
        if order_by not in ("created_at", "updated_at"):
            raise ValueError(f"Cannot order by {order_by}")
        clauses: List[str] = []
        params: List[Any] = []
        if statuses is not None:
            status_values = [status.value for status in statuses]
            if not status_values:
                return []
            clauses.append(f"status IN ({', '.join('?' for _ in status_values)})")
            params.extend(status_values)
        if updated_since is not None:
            clauses.append("updated_at >= ?")
            params.append(updated_since)
        if created_before is not None:
            clauses.append("created_at < ?")
            params.append(created_before)

        direction = "DESC" if newest_first else "ASC"
        sql = "SELECT * FROM download_queue"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += f" ORDER BY {order_by} {direction}, rowid {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))

        conn = self._connect()
        try:
            return [self._row_to_job(row) for row in conn.execute(sql, params).fetchall()]
        finally:
            conn.close()

    def update_job(self, job_id: str, **fields: Any) -> Job:
        """Unconditional partial update. Raises NotFound for unknown ids."""
        clause, values = self._assignments(fields, _JOB_COLUMNS)
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    f"UPDATE download_queue SET {clause}, updated_at=? WHERE id=?",
                    (*values, time.time(), job_id),
                )
                if cur.rowcount != 1:
                    raise NotFound(job_id)
                row = conn.execute("SELECT * FROM download_queue WHERE id=?", (job_id,)).fetchone()
            return self._row_to_job(row)
        finally:
            conn.close()

    def transition(
        self,
        job_id: str,
        from_statuses: Iterable[JobStatus],
        to_status: JobStatus,
        **fields: Any,
    ) -> Optional[Job]:
        """
        Compare-and-set status change.

        Returns the updated job, or None when the job is missing or its current
        status is not one of ``from_statuses``.
        """
        expected = [status.value for status in from_statuses]
        fields["status"] = to_status
        clause, values = self._assignments(fields, _JOB_COLUMNS)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            cur = conn.execute(
                f"UPDATE download_queue SET {clause}, updated_at=? "
                f"WHERE id=? AND status IN ({', '.join('?' for _ in expected)})",
                (*values, time.time(), job_id, *expected),
            )
            if cur.rowcount != 1:
                conn.commit()
                return None
            row = conn.execute("SELECT * FROM download_queue WHERE id=?", (job_id,)).fetchone()
            conn.commit()
            return self._row_to_job(row)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def transition_all(
        self,
        from_statuses: Iterable[JobStatus],
        to_status: JobStatus,
        **fields: Any,
    ) -> List[Job]:
        """Move every job in ``from_statuses`` to ``to_status``; returns the updated jobs."""
        expected = [status.value for status in from_statuses]
        fields["status"] = to_status
        clause, values = self._assignments(fields, _JOB_COLUMNS)
        placeholders = ", ".join("?" for _ in expected)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            ids = [
                row["id"]
                for row in conn.execute(
                    f"SELECT id FROM download_queue WHERE status IN ({placeholders}) "
                    "ORDER BY created_at ASC, rowid ASC",
                    expected,
                ).fetchall()
            ]
            jobs: List[Job] = []
            if ids:
                conn.execute(
                    f"UPDATE download_queue SET {clause}, updated_at=? "
                    f"WHERE id IN ({', '.join('?' for _ in ids)})",
                    (*values, time.time(), *ids),
                )
                rows = conn.execute(
                    f"SELECT * FROM download_queue WHERE id IN ({', '.join('?' for _ in ids)}) "
                    "ORDER BY created_at ASC, rowid ASC",
                    ids,
                ).fetchall()
                jobs = [self._row_to_job(row) for row in rows]
            conn.commit()
            return jobs
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def claim_next_pending(self, exclude: Iterable[str] = ()) -> Optional[Job]:
        """Atomically move the oldest pending job to processing and return it."""
        excluded = list(exclude)
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            sql = "SELECT id FROM download_queue WHERE status=?"
            params: List[Any] = [JobStatus.PENDING.value]
            if excluded:
                sql += f" AND id NOT IN ({', '.join('?' for _ in excluded)})"
                params.extend(excluded)
            sql += " ORDER BY created_at ASC, rowid ASC LIMIT 1"
            row = conn.execute(sql, params).fetchone()
            if row is None:
                conn.commit()
                return None
            job_id = row["id"]
            cur = conn.execute(
                """
                UPDATE download_queue
                SET status=?, attempts=attempts + 1, updated_at=?
                WHERE id=? AND status=?
                """,
                (JobStatus.PROCESSING.value, time.time(), job_id, JobStatus.PENDING.value),
            )
            if cur.rowcount != 1:
                conn.commit()
                return None
            claimed = conn.execute("SELECT * FROM download_queue WHERE id=?", (job_id,)).fetchone()
            conn.commit()
            return self._row_to_job(claimed)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def update_progress(self, job_id: str, progress: int) -> bool:
        """Write progress only while the job is still processing."""
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    "UPDATE download_queue SET progress=?, updated_at=? WHERE id=? AND status=?",
                    (int(progress), time.time(), job_id, JobStatus.PROCESSING.value),
                )
            return cur.rowcount == 1
        finally:
            conn.close()

    def delete_job(self, job_id: str) -> bool:
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute("DELETE FROM download_queue WHERE id=?", (job_id,))
                conn.execute("DELETE FROM playlist_items WHERE job_id=?", (job_id,))
            return cur.rowcount == 1
        finally:
            conn.close()

    def delete_terminal_jobs(self, job_ids: Sequence[str]) -> int:
        """
        Delete all listed jobs, or none of them.

        Raises InvalidState with the offending ids when any listed job that
        exists is not in a terminal status. Unknown ids are ignored.
        """
        ids = list(dict.fromkeys(job_ids))
        if not ids:
            return 0
        placeholders = ", ".join("?" for _ in ids)
        terminal = [status.value for status in TERMINAL_STATUSES]
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            rows = conn.execute(
                f"SELECT id, status FROM download_queue WHERE id IN ({placeholders})",
                ids,
            ).fetchall()
            active = [row["id"] for row in rows if row["status"] not in terminal]
            if active:
                conn.rollback()
                raise InvalidState(
                    f"{len(active)} job(s) are still active; cancel them first",
                    conflicting_ids=active,
                )
            cur = conn.execute(f"DELETE FROM download_queue WHERE id IN ({placeholders})", ids)
            conn.execute(f"DELETE FROM playlist_items WHERE job_id IN ({placeholders})", ids)
            conn.commit()
            return cur.rowcount
        except InvalidState:
            raise
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def delete_older_than(self, statuses: Iterable[JobStatus], cutoff: float) -> int:
        """Delete jobs in ``statuses`` whose last update is older than cutoff."""
        values = [status.value for status in statuses]
        placeholders = ", ".join("?" for _ in values)
        conn = self._connect()
        try:
            with conn:
                ids = [
                    row["id"]
                    for row in conn.execute(
                        f"SELECT id FROM download_queue WHERE status IN ({placeholders}) AND updated_at < ?",
                        (*values, cutoff),
                    ).fetchall()
                ]
                for job_id in ids:
                    conn.execute("DELETE FROM download_queue WHERE id=?", (job_id,))
                    conn.execute("DELETE FROM playlist_items WHERE job_id=?", (job_id,))
            return len(ids)
        finally:
            conn.close()

    def count_by_status(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in JobStatus}
        conn = self._connect()
        try:
            for row in conn.execute(
                "SELECT status, COUNT(*) AS total FROM download_queue GROUP BY status"
            ).fetchall():
                counts[row["status"]] = row["total"]
            return counts
        finally:
            conn.close()

    # -- playlist items -----------------------------------------------------

    @staticmethod
    def _insert_items(conn: sqlite3.Connection, job_id: str, items: Sequence[PlaylistItem]) -> None:
        now = time.time()
        conn.executemany(
            """
            INSERT INTO playlist_items
                (job_id, position, url, title, status, progress, file_path, error, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    job_id,
                    item.position,
                    item.url,
                    item.title,
                    item.status.value,
                    item.progress,
                    item.file_path,
                    item.error,
                    now,
                )
                for item in items
            ],
        )

    def replace_items(self, job_id: str, items: Sequence[PlaylistItem]) -> List[PlaylistItem]:
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM playlist_items WHERE job_id=?", (job_id,))
                self._insert_items(conn, job_id, items)
            return self.get_items(job_id)
        finally:
            conn.close()

    def get_items(self, job_id: str) -> List[PlaylistItem]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT * FROM playlist_items WHERE job_id=? ORDER BY position ASC",
                (job_id,),
            ).fetchall()
            return [self._row_to_item(row) for row in rows]
        finally:
            conn.close()

    def update_item(self, job_id: str, position: int, **fields: Any) -> None:
        clause, values = self._assignments(fields, _ITEM_COLUMNS)
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    f"UPDATE playlist_items SET {clause}, updated_at=? WHERE job_id=? AND position=?",
                    (*values, time.time(), job_id, position),
                )
        finally:
            conn.close()

    def update_item_progress(self, job_id: str, position: int, progress: int) -> bool:
        """Raise an item's progress while it is processing; never lowers it."""
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    """
                    UPDATE playlist_items SET progress=?, updated_at=?
                    WHERE job_id=? AND position=? AND status=? AND progress < ?
                    """,
                    (int(progress), time.time(), job_id, position, JobStatus.PROCESSING.value, int(progress)),
                )
            return cur.rowcount == 1
        finally:
            conn.close()

    def reset_unfinished_items(
        self,
        job_id: str,
        to_status: JobStatus = JobStatus.PENDING,
        error: Optional[str] = None,
        include_failed: bool = False,
    ) -> int:
        """Move items that did not finish to ``to_status``. Completed items are kept."""
        keep = [JobStatus.COMPLETED.value]
        if not include_failed:
            keep.append(JobStatus.FAILED.value)
        conn = self._connect()
        try:
            with conn:
                cur = conn.execute(
                    "UPDATE playlist_items SET status=?, progress=0, error=?, updated_at=? "
                    f"WHERE job_id=? AND status NOT IN ({', '.join('?' for _ in keep)})",
                    (to_status.value, error, time.time(), job_id, *keep),
                )
            return cur.rowcount
        finally:
            conn.close()
