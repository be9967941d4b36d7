"""
Job State Store - Persistent storage for optimization job state.

The queue survives process restarts: every job record, its progress and its
result live in the store. A single worker claims jobs one at a time.
"""

import sqlite3
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List, Dict, Any, Iterable, Tuple

from sku_optimizer.errors import JobError, ValidationError
from sku_optimizer.schemas import OPTIMIZATION_METHODS
from sku_optimizer.utils.logging_utils import log_io

logger = logging.getLogger(__name__)


class JobStatus(Enum):
    """Optimization job status states."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED, JobStatus.SKIPPED)

STALE_RUNNING_ERROR = "Worker restarted while job was running"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class OptimizationJob:
    """One unit of work: tune one model for one SKU of one dataset."""

    # Identity
    job_id: int
    dataset_ref: str
    sku: str
    model_id: str
    method: str = "grid"

    # Configuration
    payload: Dict[str, Any] = field(default_factory=dict)
    reason: str = ""
    batch_id: Optional[str] = None
    priority: int = 3

    # State
    status: JobStatus = JobStatus.PENDING
    progress: int = 0

    # Results
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None

    # Timing
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'job_id': self.job_id,
            'dataset_ref': self.dataset_ref,
            'sku': self.sku,
            'model_id': self.model_id,
            'method': self.method,
            'payload': self.payload,
            'reason': self.reason,
            'batch_id': self.batch_id,
            'priority': self.priority,
            'status': self.status.value,
            'progress': self.progress,
            'result': self.result,
            'error': self.error,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'completed_at': self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass
class JobFilter:
    """Optional equality filters shared by list/count/reset queries."""
    dataset_ref: Optional[str] = None
    sku: Optional[str] = None
    model_id: Optional[str] = None
    method: Optional[str] = None
    status: Optional[JobStatus] = None
    batch_id: Optional[str] = None

    def where_clause(self) -> Tuple[str, List[Any]]:
        conditions = []
        params: List[Any] = []
        for column in ('dataset_ref', 'sku', 'model_id', 'method', 'batch_id'):
            value = getattr(self, column)
            if value is not None:
                conditions.append(f"{column} = ?")
                params.append(value)
        if self.status is not None:
            conditions.append("status = ?")
            params.append(JobStatus(self.status).value)
        return (" AND ".join(conditions) if conditions else "1=1"), params


class JobStateStore(ABC):
    """Abstract base class for job state persistence."""

    @abstractmethod
    def create_job(
        self,
        dataset_ref: str,
        sku: str,
        model_id: str,
        method: str,
        payload: Dict[str, Any],
        reason: str,
        batch_id: Optional[str],
        priority: int,
    ) -> int:
        """Insert a pending job and return its id."""
        pass

    @abstractmethod
    def claim_next_pending(self) -> Optional[OptimizationJob]:
        """Atomically move the next pending job to running; None if nothing to do."""
        pass

    @abstractmethod
    def update_job_progress(self, job_id: int, progress: int) -> bool:
        """Raise a running job's progress. Lower values are ignored."""
        pass

    @abstractmethod
    def complete_job(self, job_id: int, result: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    def fail_job(self, job_id: int, error: str) -> None:
        pass

    @abstractmethod
    def recover_stale_running(self, error: str = STALE_RUNNING_ERROR) -> int:
        """Fail jobs left running by a worker that died; returns how many."""
        pass

    @abstractmethod
    def get(self, job_id: int) -> Optional[OptimizationJob]:
        pass

    @abstractmethod
    def list_jobs(self, job_filter: Optional[JobFilter] = None, limit: Optional[int] = None) -> List[OptimizationJob]:
        pass

    @abstractmethod
    def count_by_status(self, job_filter: Optional[JobFilter] = None) -> Dict[str, int]:
        pass

    @abstractmethod
    def reset_jobs(self, job_filter: Optional[JobFilter] = None) -> int:
        """Delete matching jobs and return how many were removed."""
        pass

    @abstractmethod
    def set_status(self, job_ids: Iterable[int], status: JobStatus) -> int:
        """Mark pending jobs cancelled or skipped; returns the number updated."""
        pass

    def list_completed_jobs(self, job_filter: Optional[JobFilter] = None) -> List[OptimizationJob]:
        """Completed jobs matching the filter, oldest first."""
        base = job_filter or JobFilter()
        completed = JobFilter(
            dataset_ref=base.dataset_ref,
            sku=base.sku,
            model_id=base.model_id,
            method=base.method,
            status=JobStatus.COMPLETED,
            batch_id=base.batch_id,
        )
        return self.list_jobs(completed)


class SQLiteJobStateStore(JobStateStore):
    """
    SQLite-based state store for job persistence.

    Opens a connection per call, so it is safe to use from the worker
    thread and the caller's thread at once. The claim runs inside a
    BEGIN IMMEDIATE transaction, which serializes competing claimers.
    """

    def __init__(self, db_path: str = "optimization_jobs.db"):
        self.db_path = db_path
        self._init_db()

    @log_io
    def _init_db(self) -> None:
        """Initialize database schema."""
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS optimization_jobs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    dataset_ref TEXT NOT NULL,
                    sku TEXT NOT NULL,
                    model_id TEXT NOT NULL,
                    method TEXT NOT NULL DEFAULT 'grid',
                    payload TEXT NOT NULL,
                    reason TEXT,
                    batch_id TEXT,
                    priority INTEGER NOT NULL DEFAULT 3,
                    status TEXT NOT NULL,
                    progress INTEGER DEFAULT 0,
                    result TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    completed_at TEXT,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_status_priority
                ON optimization_jobs(status, priority, created_at)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_dataset_sku
                ON optimization_jobs(dataset_ref, sku)
            """)
            conn.commit()
            logger.info(f"SQLite job state store initialized at {self.db_path}")
        finally:
            conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        return conn

    @log_io
    def create_job(
        self,
        dataset_ref: str,
        sku: str,
        model_id: str,
        method: str = "grid",
        payload: Optional[Dict[str, Any]] = None,
        reason: str = "",
        batch_id: Optional[str] = None,
        priority: int = 3,
    ) -> int:
        if method not in OPTIMIZATION_METHODS:
            raise ValidationError(f"Unknown optimization method: {method}")
        now = _utcnow().isoformat()
        conn = self._get_connection()
        try:
            cursor = conn.execute("""
                INSERT INTO optimization_jobs (
                    dataset_ref, sku, model_id, method, payload, reason,
                    batch_id, priority, status, progress, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?)
            """, (
                dataset_ref,
                sku,
                model_id,
                method,
                json.dumps(payload or {}),
                reason,
                batch_id,
                priority,
                JobStatus.PENDING.value,
                now,
                now,
            ))
            conn.commit()
            job_id = cursor.lastrowid
            logger.debug(f"Created job {job_id}: {model_id}/{method} for SKU {sku} (priority {priority})")
            return job_id
        finally:
            conn.close()

    @log_io
    def claim_next_pending(self) -> Optional[OptimizationJob]:
        conn = self._get_connection()
        conn.isolation_level = None  # explicit transaction control
        try:
            conn.execute("BEGIN IMMEDIATE")
            running = conn.execute(
                "SELECT COUNT(*) FROM optimization_jobs WHERE status = ?",
                (JobStatus.RUNNING.value,)
            ).fetchone()[0]
            if running:
                conn.execute("ROLLBACK")
                logger.debug(f"Not claiming: {running} job(s) already running")
                return None

            row = conn.execute(
                """SELECT id FROM optimization_jobs
                   WHERE status = ?
                   ORDER BY priority ASC, created_at ASC, id ASC LIMIT 1""",
                (JobStatus.PENDING.value,)
            ).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                return None

            now = _utcnow().isoformat()
            cursor = conn.execute(
                """UPDATE optimization_jobs
                   SET status = ?, progress = 0, started_at = ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (JobStatus.RUNNING.value, now, now, row["id"], JobStatus.PENDING.value)
            )
            if cursor.rowcount != 1:
                conn.execute("ROLLBACK")
                return None
            claimed = conn.execute(
                "SELECT * FROM optimization_jobs WHERE id = ?", (row["id"],)
            ).fetchone()
            conn.execute("COMMIT")
            logger.info(f"Claimed job {row['id']}")
            return self._row_to_job(claimed)
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def update_job_progress(self, job_id: int, progress: int) -> bool:
        progress = max(0, min(100, int(progress)))
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """UPDATE optimization_jobs SET progress = ?, updated_at = ?
                   WHERE id = ? AND status = ? AND progress < ?""",
                (progress, _utcnow().isoformat(), job_id, JobStatus.RUNNING.value, progress)
            )
            conn.commit()
            return cursor.rowcount == 1
        finally:
            conn.close()

    @log_io(log_args=False)
    def complete_job(self, job_id: int, result: Dict[str, Any]) -> None:
        now = _utcnow().isoformat()
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """UPDATE optimization_jobs
                   SET status = ?, progress = 100, result = ?, error = NULL,
                       completed_at = ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (JobStatus.COMPLETED.value, json.dumps(result), now, now, job_id, JobStatus.RUNNING.value)
            )
            conn.commit()
            if cursor.rowcount != 1:
                raise JobError(f"Cannot complete job {job_id}: it is not running")
            logger.info(f"Job {job_id} completed")
        finally:
            conn.close()

    @log_io
    def fail_job(self, job_id: int, error: str) -> None:
        now = _utcnow().isoformat()
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """UPDATE optimization_jobs
                   SET status = ?, result = NULL, error = ?, completed_at = ?, updated_at = ?
                   WHERE id = ? AND status = ?""",
                (JobStatus.FAILED.value, error or "Unknown error", now, now, job_id, JobStatus.RUNNING.value)
            )
            conn.commit()
            if cursor.rowcount != 1:
                raise JobError(f"Cannot fail job {job_id}: it is not running")
            logger.warning(f"Job {job_id} failed: {error}")
        finally:
            conn.close()

    @log_io
    def recover_stale_running(self, error: str = STALE_RUNNING_ERROR) -> int:
        now = _utcnow().isoformat()
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                """UPDATE optimization_jobs
                   SET status = ?, result = NULL, error = ?, completed_at = ?, updated_at = ?
                   WHERE status = ?""",
                (JobStatus.FAILED.value, error, now, now, JobStatus.RUNNING.value)
            )
            conn.commit()
            if cursor.rowcount:
                logger.warning(f"Marked {cursor.rowcount} stale running job(s) as failed")
            return cursor.rowcount
        finally:
            conn.close()

    def get(self, job_id: int) -> Optional[OptimizationJob]:
        """Get a job by ID."""
        conn = self._get_connection()
        try:
            row = conn.execute(
                "SELECT * FROM optimization_jobs WHERE id = ?",
                (job_id,)
            ).fetchone()
            if row:
                return self._row_to_job(row)
            return None
        finally:
            conn.close()

    @log_io(log_result=False)
    def list_jobs(self, job_filter: Optional[JobFilter] = None, limit: Optional[int] = None) -> List[OptimizationJob]:
        """List jobs with optional filters, oldest first."""
        where_clause, params = (job_filter or JobFilter()).where_clause()
        sql = f"""SELECT * FROM optimization_jobs
                  WHERE {where_clause}
                  ORDER BY created_at ASC, id ASC"""
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        conn = self._get_connection()
        try:
            rows = conn.execute(sql, params).fetchall()
            return [self._row_to_job(row) for row in rows]
        finally:
            conn.close()

    @log_io
    def count_by_status(self, job_filter: Optional[JobFilter] = None) -> Dict[str, int]:
        where_clause, params = (job_filter or JobFilter()).where_clause()
        counts = {status.value: 0 for status in JobStatus}
        conn = self._get_connection()
        try:
            rows = conn.execute(
                f"""SELECT status, COUNT(*) AS n FROM optimization_jobs
                    WHERE {where_clause} GROUP BY status""",
                params
            ).fetchall()
            for row in rows:
                counts[row["status"]] = row["n"]
            return counts
        finally:
            conn.close()

    @log_io
    def reset_jobs(self, job_filter: Optional[JobFilter] = None) -> int:
        where_clause, params = (job_filter or JobFilter()).where_clause()
        conn = self._get_connection()
        try:
            cursor = conn.execute(f"DELETE FROM optimization_jobs WHERE {where_clause}", params)
            conn.commit()
            logger.info(f"Deleted {cursor.rowcount} job(s)")
            return cursor.rowcount
        finally:
            conn.close()

    @log_io
    def set_status(self, job_ids: Iterable[int], status: JobStatus) -> int:
        status = JobStatus(status)
        if status not in (JobStatus.CANCELLED, JobStatus.SKIPPED):
            raise ValidationError(f"Only cancelled or skipped can be set externally, not {status.value}")
        ids = list(job_ids)
        if not ids:
            return 0

        now = _utcnow().isoformat()
        placeholders = ", ".join("?" for _ in ids)
        conn = self._get_connection()
        try:
            cursor = conn.execute(
                f"""UPDATE optimization_jobs
                    SET status = ?, completed_at = ?, updated_at = ?
                    WHERE status = ? AND id IN ({placeholders})""",
                [status.value, now, now, JobStatus.PENDING.value, *ids]
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def _row_to_job(self, row: sqlite3.Row) -> OptimizationJob:
        """Convert a database row to OptimizationJob."""
        return OptimizationJob(
            job_id=row["id"],
            dataset_ref=row["dataset_ref"],
            sku=row["sku"],
            model_id=row["model_id"],
            method=row["method"],
            payload=json.loads(row["payload"]) if row["payload"] else {},
            reason=row["reason"] or "",
            batch_id=row["batch_id"],
            priority=row["priority"],
            status=JobStatus(row["status"]),
            progress=row["progress"] or 0,
            result=json.loads(row["result"]) if row["result"] else None,
            error=row["error"],
            created_at=_parse_ts(row["created_at"]),
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )
