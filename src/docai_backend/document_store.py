"""
Persistence of documents, their extracted pages and generated questions.

User edits go through :meth:`DocumentStore.update_metadata`, which never
touches ``status`` or ``processing_progress``; those columns belong to the
job store.
"""

from __future__ import annotations

import math
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from .database import Database, deserialize_datetime, dump_json, load_json, serialize_datetime, utcnow
from .errors import NotFoundError
from .models import (
    DocumentStatus,
    DocumentType,
    DocumentView,
    PageView,
    Pagination,
    SharedDocumentView,
    SharePermission,
)

_EDITABLE_FIELDS = ("title", "description", "language", "metadata")


@dataclass
class DocumentRecord:
    id: str
    user_id: str
    title: str
    description: str
    language: str
    type: DocumentType
    status: DocumentStatus
    processing_progress: int
    file_path: Path
    file_size: int
    original_filename: str
    created_at: datetime
    updated_at: datetime
    error_message: Optional[str] = None
    features: List[str] = field(default_factory=list)
    processing_options: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    s3_key: Optional[str] = None

    def to_view(self, pages: Optional[List[PageView]] = None) -> DocumentView:
        return DocumentView(
            id=self.id,
            title=self.title,
            description=self.description,
            language=self.language,
            type=self.type,
            status=self.status,
            processing_progress=self.processing_progress,
            error_message=self.error_message,
            file_size=self.file_size,
            original_filename=self.original_filename,
            features=self.features,
            processing_options=self.processing_options,
            metadata=self.metadata,
            created_at=self.created_at,
            updated_at=self.updated_at,
            pages=pages,
        )


def _row_to_document(row: sqlite3.Row) -> DocumentRecord:
    return DocumentRecord(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        description=row["description"],
        language=row["language"],
        type=DocumentType(row["type"]),
        status=DocumentStatus(row["status"]),
        processing_progress=row["processing_progress"],
        error_message=row["error_message"],
        file_path=Path(row["file_path"]),
        file_size=row["file_size"],
        original_filename=row["original_filename"],
        features=load_json(row["features"], []),
        processing_options=load_json(row["processing_options"], {}),
        metadata=load_json(row["metadata"], {}),
        s3_key=row["s3_key"],
        created_at=deserialize_datetime(row["created_at"]),
        updated_at=deserialize_datetime(row["updated_at"]),
    )


def _row_to_page(row: sqlite3.Row) -> PageView:
    return PageView(
        id=row["id"],
        document_id=row["document_id"],
        page_number=row["page_number"],
        text=row["text"],
        confidence=row["confidence"],
        created_at=deserialize_datetime(row["created_at"]),
    )


def _row_to_question(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "document_id": row["document_id"],
        "job_id": row["job_id"],
        "question_text": row["question_text"],
        "question_type": row["question_type"],
        "difficulty": row["difficulty"],
        "options": load_json(row["options"], []),
        "correct_answer": load_json(row["correct_answer"], None),
        "explanation": row["explanation"],
        "language": row["language"],
        "created_at": deserialize_datetime(row["created_at"]),
    }


class DocumentStore:
    def __init__(self, database: Database):
        self.database = database

    def create_document(
        self,
        user_id: str,
        title: str,
        file_path: Path,
        file_size: int,
        original_filename: str,
        document_type: DocumentType,
        description: str = "",
        language: str = "en",
        features: Optional[List[str]] = None,
        processing_options: Optional[Dict[str, Any]] = None,
        s3_key: Optional[str] = None,
    ) -> DocumentRecord:
        now = utcnow()
        record = DocumentRecord(
            id=uuid4().hex,
            user_id=user_id,
            title=title,
            description=description,
            language=language,
            type=document_type,
            status=DocumentStatus.UPLOADED,
            processing_progress=0,
            file_path=file_path,
            file_size=file_size,
            original_filename=original_filename,
            created_at=now,
            updated_at=now,
            features=list(features or []),
            processing_options=dict(processing_options or {}),
            s3_key=s3_key,
        )
        with self.database.connection() as conn:
            conn.execute(
                """
                INSERT INTO documents (
                    id, user_id, title, description, language, type, status,
                    processing_progress, file_path, file_size, original_filename,
                    features, processing_options, metadata, s3_key, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.id,
                    user_id,
                    title,
                    description,
                    language,
                    document_type.value,
                    record.status.value,
                    0,
                    str(file_path),
                    file_size,
                    original_filename,
                    dump_json(record.features),
                    dump_json(record.processing_options),
                    dump_json(record.metadata),
                    s3_key,
                    serialize_datetime(now),
                    serialize_datetime(now),
                ),
            )
        return record

    def get(self, document_id: str, owner_id: str) -> DocumentRecord:
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE id = ? AND user_id = ?",
                (document_id, owner_id),
            ).fetchone()
        if not row:
            raise NotFoundError("Document not found")
        return _row_to_document(row)

    def fetch(self, document_id: str) -> DocumentRecord:
        with self.database.connection() as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone()
        if not row:
            raise NotFoundError("Document not found")
        return _row_to_document(row)

    def list_documents(
        self,
        owner_id: str,
        page: int = 1,
        limit: int = 20,
        status: Optional[DocumentStatus] = None,
        document_type: Optional[DocumentType] = None,
        search: Optional[str] = None,
    ) -> Tuple[List[DocumentRecord], Pagination]:
        where = "WHERE user_id = ?"
        params: List[Any] = [owner_id]
        if status is not None:
            where += " AND status = ?"
            params.append(status.value)
        if document_type is not None:
            where += " AND type = ?"
            params.append(document_type.value)
        if search:
            where += " AND (title LIKE ? OR description LIKE ?)"
            params.extend([f"%{search}%", f"%{search}%"])

        with self.database.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM documents {where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                (*params, limit, (page - 1) * limit),
            ).fetchall()
            total = conn.execute(f"SELECT COUNT(*) AS total FROM documents {where}", params).fetchone()["total"]

        pagination = Pagination(page=page, limit=limit, total=total, pages=math.ceil(total / limit))
        return [_row_to_document(row) for row in rows], pagination

    def update_metadata(self, document_id: str, owner_id: str, changes: Dict[str, Any]) -> DocumentRecord:
        """
        Apply user edits. Only title, description, language and metadata are writable.

        Raises:
            NotFoundError: If the document does not exist or belongs to someone else
            ValueError: If ``changes`` contains no editable field
        """
        updates = {key: value for key, value in changes.items() if key in _EDITABLE_FIELDS}
        if not updates:
            raise ValueError("No fields to update")

        assignments = [f"{key} = ?" for key in updates]
        values = [dump_json(value) if key == "metadata" else value for key, value in updates.items()]
        assignments.append("updated_at = ?")
        values.append(serialize_datetime(utcnow()))

        with self.database.connection() as conn:
            cursor = conn.execute(
                f"UPDATE documents SET {', '.join(assignments)} WHERE id = ? AND user_id = ?",
                (*values, document_id, owner_id),
            )
            if cursor.rowcount == 0:
                raise NotFoundError("Document not found")
        return self.get(document_id, owner_id)

    def delete(self, document_id: str, owner_id: str) -> DocumentRecord:
        """Delete a document; pages, jobs and questions go with it."""
        record = self.get(document_id, owner_id)
        with self.database.connection() as conn:
            conn.execute("DELETE FROM documents WHERE id = ? AND user_id = ?", (document_id, owner_id))
        return record

    # ---------- Sharing ----------
    def share(
        self,
        document_id: str,
        owner_id: str,
        emails: List[str],
        permission: SharePermission,
        expires_at: datetime,
    ) -> int:
        """
        Grant other users access to a document until ``expires_at``.

        Sharing again with the same user replaces the earlier grant. Unknown
        emails and the owner's own address are ignored.

        Returns:
            Number of users the document is now shared with by this call

        Raises:
            NotFoundError: If the document does not exist or belongs to someone else
        """
        self.get(document_id, owner_id)
        placeholders = ", ".join("?" for _ in emails)
        now = serialize_datetime(utcnow())
        with self.database.connection() as conn:
            rows = conn.execute(
                f"SELECT id FROM users WHERE email IN ({placeholders}) AND id != ?",
                (*emails, owner_id),
            ).fetchall()
            conn.executemany(
                """
                INSERT INTO document_sharing (
                    document_id, shared_with_user_id, shared_by_user_id, permission, expires_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (document_id, shared_with_user_id) DO UPDATE SET
                    permission = excluded.permission,
                    expires_at = excluded.expires_at
                """,
                [
                    (document_id, row["id"], owner_id, permission.value, serialize_datetime(expires_at), now)
                    for row in rows
                ],
            )
        return len(rows)

    def list_shared_with(self, user_id: str) -> List[SharedDocumentView]:
        """Documents other users shared with ``user_id`` whose grant has not expired."""
        with self.database.connection() as conn:
            rows = conn.execute(
                """
                SELECT d.*, u.name AS owner_name, s.permission AS share_permission,
                       s.expires_at AS share_expires_at
                FROM documents d
                JOIN document_sharing s ON d.id = s.document_id
                JOIN users u ON d.user_id = u.id
                WHERE s.shared_with_user_id = ?
                ORDER BY d.created_at DESC
                """,
                (user_id,),
            ).fetchall()

        now = utcnow()
        shared = []
        for row in rows:
            expires_at = deserialize_datetime(row["share_expires_at"])
            if expires_at <= now:
                continue
            view = _row_to_document(row).to_view()
            shared.append(
                SharedDocumentView(
                    **view.model_dump(),
                    owner_name=row["owner_name"],
                    permission=SharePermission(row["share_permission"]),
                    shared_until=expires_at,
                )
            )
        return shared

    # ---------- Pages ----------
    def save_page(self, document_id: str, page_number: int, text: str, confidence: Optional[float] = None) -> None:
        """Insert or replace the text of one page."""
        with self.database.connection() as conn:
            conn.execute(
                """
                INSERT INTO document_pages (id, document_id, page_number, text, confidence, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT (document_id, page_number)
                DO UPDATE SET text = excluded.text, confidence = excluded.confidence
                """,
                (uuid4().hex, document_id, page_number, text, confidence, serialize_datetime(utcnow())),
            )

    def list_pages(self, document_id: str) -> List[PageView]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM document_pages WHERE document_id = ? ORDER BY page_number",
                (document_id,),
            ).fetchall()
        return [_row_to_page(row) for row in rows]

    def document_text(self, document_id: str) -> str:
        return "\n\n".join(page.text for page in self.list_pages(document_id) if page.text)

    # ---------- Questions ----------
    def save_questions(self, document_id: str, job_id: str, language: str, questions: List[Dict[str, Any]]) -> int:
        now = serialize_datetime(utcnow())
        with self.database.connection() as conn:
            conn.executemany(
                """
                INSERT INTO questions (
                    id, document_id, job_id, question_text, question_type, difficulty,
                    options, correct_answer, explanation, language, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        uuid4().hex,
                        document_id,
                        job_id,
                        question["question"],
                        question["type"],
                        question["difficulty"],
                        dump_json(question.get("options", [])),
                        dump_json(question.get("correct_answer")),
                        question.get("explanation"),
                        language,
                        now,
                    )
                    for question in questions
                ],
            )
        return len(questions)

    def list_questions(self, document_id: str) -> List[Dict[str, Any]]:
        with self.database.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM questions WHERE document_id = ? ORDER BY created_at, rowid",
                (document_id,),
            ).fetchall()
        return [_row_to_question(row) for row in rows]
