"""
Persistence and status transitions for job records.

The lifecycle is strictly one-directional:

    queued -> processing -> completed
    queued -> processing -> failed

There is no cancelled state and no retry. Each transition is a conditional
UPDATE on the expected current status, so a row can never move backwards or
skip a state even if two scopes race on it.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Dict, List, Optional

from .errors import JobStateError, NotFoundError
from .models import JobStatus, JobType
from .records import JobRecord
from .utils import new_id, serialize_datetime, utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[JobStatus, frozenset] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class JobStore:
    """Job repository bound to one open transaction."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def create(self, job_type: JobType, associated_entity_id: str, parameters: Dict[str, Any]) -> JobRecord:
        record = JobRecord(
            id=new_id(),
            type=job_type,
            status=JobStatus.QUEUED,
            associated_entity_id=associated_entity_id,
            parameters=dict(parameters),
            submitted_at=utcnow(),
        )
        self._conn.execute(
            """
            INSERT INTO jobs (id, type, status, associated_entity_id, parameters, submitted_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.type.value,
                record.status.value,
                record.associated_entity_id,
                json.dumps(record.parameters),
                serialize_datetime(record.submitted_at),
            ),
        )
        return record

    def get(self, job_id: str) -> Optional[JobRecord]:
        row = self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return JobRecord.from_row(row) if row else None

    def list_recent(self, limit: int = 50, user_id: Optional[str] = None) -> List[JobRecord]:
        if user_id is None:
            rows = self._conn.execute(
                "SELECT * FROM jobs ORDER BY submitted_at DESC LIMIT ?", (limit,)
            ).fetchall()
        else:
            rows = self._conn.execute(
                """
                SELECT * FROM jobs WHERE json_extract(parameters, '$.user_id') = ?
                ORDER BY submitted_at DESC LIMIT ?
                """,
                (user_id, limit),
            ).fetchall()
        return [JobRecord.from_row(row) for row in rows]

    def ids_with_status(self, status: JobStatus) -> List[str]:
        rows = self._conn.execute(
            "SELECT id FROM jobs WHERE status = ? ORDER BY submitted_at ASC", (status.value,)
        ).fetchall()
        return [row["id"] for row in rows]

    def _transition(self, job_id: str, new_status: JobStatus, **fields: Optional[str]) -> JobRecord:
        record = self.get(job_id)
        if record is None:
            raise NotFoundError(f"No job found with ID: {job_id}")
        if new_status not in ALLOWED_TRANSITIONS[record.status]:
            raise JobStateError(f"Job {job_id} cannot move from {record.status.value} to {new_status.value}")

        assignments = ["status = ?"] + [f"{column} = ?" for column in fields]
        values: List[Any] = [new_status.value, *fields.values(), job_id, record.status.value]
        cursor = self._conn.execute(
            f"UPDATE jobs SET {', '.join(assignments)} WHERE id = ? AND status = ?",
            values,
        )
        if cursor.rowcount == 0:
            raise JobStateError(f"Job {job_id} changed status concurrently")

        logger.info("Job %s status updated to %s.", job_id, new_status.value)
        return self.get(job_id)  # type: ignore[return-value]

    def mark_processing(self, job_id: str) -> JobRecord:
        return self._transition(job_id, JobStatus.PROCESSING, started_at=serialize_datetime(utcnow()))

    def mark_completed(self, job_id: str) -> JobRecord:
        return self._transition(job_id, JobStatus.COMPLETED, completed_at=serialize_datetime(utcnow()))

    def mark_failed(self, job_id: str, error_message: str) -> JobRecord:
        return self._transition(
            job_id,
            JobStatus.FAILED,
            completed_at=serialize_datetime(utcnow()),
            error_message=error_message,
        )
