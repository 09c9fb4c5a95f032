"""
Persistence of processing jobs.

The store is the only place job status and progress are written. Status
changes are conditional updates (``WHERE status = ...``) so a job can only
move queued -> processing -> completed/failed; anything else raises
:class:`InvalidTransition`. When a job mirrors its state onto its document,
both rows are written in one transaction so a reader never sees the job and
the document disagree.
"""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from .database import Database, deserialize_datetime, dump_json, load_json, serialize_datetime, utcnow
from .errors import InvalidTransition, NotFoundError
from .models import DocumentStatus, DocumentType, JobHistoryItem, JobKind, JobStatus, JobView, Pagination

logger = logging.getLogger(__name__)

MAX_PROGRESS = 100


@dataclass
class JobRecord:
    """
    Internal representation of a job row.

    Attributes:
        id: Unique job identifier (hex UUID)
        document_id: Owning document
        user_id: Owner of the document at creation time
        kind: Which step table the job runs
        status: Current lifecycle status
        progress: Integer percentage, 0-100
        features: Requested features for process jobs
        options: Caller-supplied options (question count, difficulty, ...)
        result: Payload stored on completion
        error: Failure message
        document_title: Joined from the documents table when available
    """

    id: str
    document_id: str
    user_id: str
    kind: JobKind
    status: JobStatus
    progress: int
    created_at: datetime
    updated_at: datetime
    features: List[str] = field(default_factory=list)
    options: Dict[str, Any] = field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    document_title: Optional[str] = None
    document_type: Optional[str] = None

    @property
    def mirrors_document(self) -> bool:
        # Question generation reads a finished document and must not reset its state.
        return self.kind == JobKind.PROCESS

    def to_view(self) -> JobView:
        return JobView(
            id=self.id,
            document_id=self.document_id,
            kind=self.kind,
            status=self.status,
            progress=self.progress,
            result=self.result,
            error=self.error,
            document_title=self.document_title,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_history_item(self) -> JobHistoryItem:
        return JobHistoryItem(
            id=self.id,
            status=self.status,
            job_type=self.kind,
            progress=self.progress,
            document_title=self.document_title,
            document_type=DocumentType(self.document_type) if self.document_type else None,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


def _row_to_record(row: sqlite3.Row) -> JobRecord:
    keys = row.keys()
    return JobRecord(
        id=row["id"],
        document_id=row["document_id"],
        user_id=row["user_id"],
        kind=JobKind(row["kind"]),
        status=JobStatus(row["status"]),
        progress=row["progress"],
        created_at=deserialize_datetime(row["created_at"]),
        updated_at=deserialize_datetime(row["updated_at"]),
        features=load_json(row["features"], []),
        options=load_json(row["options"], {}),
        result=load_json(row["result"], None),
        error=row["error_message"],
        document_title=row["document_title"] if "document_title" in keys else None,
        document_type=row["document_type"] if "document_type" in keys else None,
    )


_SELECT_WITH_DOCUMENT = """
    SELECT j.*, d.title AS document_title, d.type AS document_type
    FROM jobs j
    JOIN documents d ON j.document_id = d.id
"""


class JobStore:
    """Job persistence with transition-checked mutations."""

    def __init__(self, database: Database):
        self.database = database

    def create_job(
        self,
        document_id: str,
        user_id: str,
        kind: JobKind,
        features: Optional[List[str]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> JobRecord:
        """
        Insert a queued job. Process jobs also reset the document to processing/0.

        Raises:
            NotFoundError: If the document no longer exists
        """
        now = utcnow()
        record = JobRecord(
            id=uuid4().hex,
            document_id=document_id,
            user_id=user_id,
            kind=kind,
            status=JobStatus.QUEUED,
            progress=0,
            created_at=now,
            updated_at=now,
            features=list(features or []),
            options=dict(options or {}),
        )
        with self.database.connection() as conn:
            title = conn.execute("SELECT title FROM documents WHERE id = ?", (document_id,)).fetchone()
            if not title:
                raise NotFoundError("Document not found")
            record.document_title = title["title"]

            conn.execute(
                """
                INSERT INTO jobs (
                    id, document_id, user_id, kind, features, options,
                    status, progress, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    document_id,
                    user_id,
                    kind.value,
                    dump_json(record.features),
                    dump_json(record.options),
                    record.status.value,
                    0,
                    serialize_datetime(now),
                    serialize_datetime(now),
                ),
            )
            if record.mirrors_document:
                conn.execute(
                    """
                    UPDATE documents
                    SET status = ?, processing_progress = 0, error_message = NULL, updated_at = ?
                    WHERE id = ?
                    """,
                    (DocumentStatus.PROCESSING.value, serialize_datetime(now), document_id),
                )
        return record

    def fetch(self, job_id: str) -> JobRecord:
        """Load a job regardless of owner (runner use only)."""
        with self.database.connection() as conn:
            row = conn.execute(f"{_SELECT_WITH_DOCUMENT} WHERE j.id = ?", (job_id,)).fetchone()
        if not row:
            raise NotFoundError("Job not found")
        return _row_to_record(row)

    def get(self, job_id: str, owner_id: str) -> JobRecord:
        """Load a job owned by ``owner_id``; other owners get the same NotFoundError."""
        with self.database.connection() as conn:
            row = conn.execute(
                f"{_SELECT_WITH_DOCUMENT} WHERE j.id = ? AND j.user_id = ?",
                (job_id, owner_id),
            ).fetchone()
        if not row:
            raise NotFoundError("Job not found")
        return _row_to_record(row)

    def active_job_for_document(self, document_id: str) -> Optional[JobRecord]:
        with self.database.connection() as conn:
            row = conn.execute(
                f"{_SELECT_WITH_DOCUMENT} WHERE j.document_id = ? AND j.status IN (?, ?) ORDER BY j.created_at DESC LIMIT 1",
                (document_id, JobStatus.QUEUED.value, JobStatus.PROCESSING.value),
            ).fetchone()
        return _row_to_record(row) if row else None

    def list_jobs(
        self,
        owner_id: str,
        page: int = 1,
        limit: int = 20,
        status: Optional[JobStatus] = None,
    ) -> Tuple[List[JobRecord], Pagination]:
        """
        Page through a user's jobs, newest first.

        Args:
            owner_id: Whose jobs to list
            page: 1-indexed page number
            limit: Page size
            status: Optional status filter

        Returns:
            The page of jobs and pagination info computed from a separate count query
        """
        where = "WHERE j.user_id = ?"
        params: List[Any] = [owner_id]
        if status is not None:
            where += " AND j.status = ?"
            params.append(status.value)

        offset = (page - 1) * limit
        with self.database.connection() as conn:
            rows = conn.execute(
                f"{_SELECT_WITH_DOCUMENT} {where} ORDER BY j.created_at DESC LIMIT ? OFFSET ?",
                (*params, limit, offset),
            ).fetchall()
            total = conn.execute(f"SELECT COUNT(*) AS total FROM jobs j {where}", params).fetchone()["total"]

        pagination = Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit))
        return [_row_to_record(row) for row in rows], pagination

    def _load_for_update(self, conn: sqlite3.Connection, job_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT id, document_id, kind, status, progress FROM jobs WHERE id = ?", (job_id,)).fetchone()
        if not row:
            raise NotFoundError("Job not found")
        return row

    def mark_processing(self, job_id: str) -> None:
        """queued -> processing."""
        now = serialize_datetime(utcnow())
        with self.database.connection() as conn:
            row = self._load_for_update(conn, job_id)
            cursor = conn.execute(
                "UPDATE jobs SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (JobStatus.PROCESSING.value, now, job_id, JobStatus.QUEUED.value),
            )
            if cursor.rowcount == 0:
                raise InvalidTransition(f"Job {job_id} cannot start from status '{row['status']}'")

    def update_progress(self, job_id: str, delta: int) -> int:
        """
        Add ``delta`` to a processing job's progress, clamped to [0, 100].

        Returns:
            The stored progress after the update

        Raises:
            ValueError: If delta is negative (progress never decreases)
            InvalidTransition: If the job is not processing
        """
        if delta < 0:
            raise ValueError("Progress delta must not be negative")

        now = serialize_datetime(utcnow())
        with self.database.connection() as conn:
            row = self._load_for_update(conn, job_id)
            if row["status"] != JobStatus.PROCESSING.value:
                raise InvalidTransition(f"Job {job_id} is '{row['status']}', progress can only move while processing")

            requested = row["progress"] + delta
            progress = min(MAX_PROGRESS, requested)
            if requested > MAX_PROGRESS:
                logger.warning(f"Job {job_id} progress {requested} exceeds {MAX_PROGRESS}; clamping")

            conn.execute(
                "UPDATE jobs SET progress = ?, updated_at = ? WHERE id = ? AND status = ?",
                (progress, now, job_id, JobStatus.PROCESSING.value),
            )
            if JobKind(row["kind"]) == JobKind.PROCESS:
                conn.execute(
                    "UPDATE documents SET processing_progress = ?, updated_at = ? WHERE id = ?",
                    (progress, now, row["document_id"]),
                )
        return progress

    def complete(self, job_id: str, result: Dict[str, Any]) -> None:
        """processing -> completed, progress 100."""
        now = serialize_datetime(utcnow())
        with self.database.connection() as conn:
            row = self._load_for_update(conn, job_id)
            cursor = conn.execute(
                "UPDATE jobs SET status = ?, progress = ?, result = ?, updated_at = ? WHERE id = ? AND status = ?",
                (JobStatus.COMPLETED.value, MAX_PROGRESS, dump_json(result), now, job_id, JobStatus.PROCESSING.value),
            )
            if cursor.rowcount == 0:
                raise InvalidTransition(f"Job {job_id} cannot complete from status '{row['status']}'")
            if JobKind(row["kind"]) == JobKind.PROCESS:
                conn.execute(
                    """
                    UPDATE documents
                    SET status = ?, processing_progress = ?, error_message = NULL, updated_at = ?
                    WHERE id = ?
                    """,
                    (DocumentStatus.COMPLETED.value, MAX_PROGRESS, now, row["document_id"]),
                )

    def fail(self, job_id: str, error_message: str) -> None:
        """queued/processing -> failed; progress is left where it was."""
        now = serialize_datetime(utcnow())
        with self.database.connection() as conn:
            row = self._load_for_update(conn, job_id)
            cursor = conn.execute(
                "UPDATE jobs SET status = ?, error_message = ?, updated_at = ? WHERE id = ? AND status IN (?, ?)",
                (
                    JobStatus.FAILED.value,
                    error_message,
                    now,
                    job_id,
                    JobStatus.QUEUED.value,
                    JobStatus.PROCESSING.value,
                ),
            )
            if cursor.rowcount == 0:
                raise InvalidTransition(f"Job {job_id} cannot fail from status '{row['status']}'")
            if JobKind(row["kind"]) == JobKind.PROCESS:
                conn.execute(
                    "UPDATE documents SET status = ?, error_message = ?, updated_at = ? WHERE id = ?",
                    (DocumentStatus.FAILED.value, error_message, now, row["document_id"]),
                )
