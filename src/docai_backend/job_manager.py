"""
Job creation and background execution.

This module is the seam between the HTTP layer and the pipeline:
- Ownership and prerequisite checks before a job exists
- Job creation (status=queued) and step resolution
- Fire-and-forget submission of the runner to a thread pool
- Read access for status polling and history

The JobManager never waits on a job. Creation returns as soon as the job row
is written and the runner has been submitted.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from omegaconf import DictConfig

from .document_store import DocumentStore
from .errors import ConflictError, ValidationError
from .job_runner import JobRunner
from .job_store import JobRecord, JobStore
from .models import DocumentStatus, JobKind, JobStatus, Pagination, QuestionJobRequest
from .steps import build_steps, dedupe_features

logger = logging.getLogger(__name__)


class JobManager:
    """
    Central coordinator for job lifecycle management.

    Thread Safety:
        Job state lives in SQLite and is only mutated through JobStore's
        transactional methods, so any number of runners may execute at once.
        At most one queued or processing job is allowed per document.

    Attributes:
        settings: Runtime configuration (step tables, default features)
        jobs: Job persistence
        documents: Document persistence
        runner: Executes jobs on the executor's threads
    """

    def __init__(
        self,
        settings: DictConfig,
        jobs: JobStore,
        documents: DocumentStore,
        runner: JobRunner,
        max_workers: int = 4,
    ) -> None:
        """
        Args:
            settings: Runtime configuration
            jobs: Job store shared with the runner
            documents: Document store
            runner: Job runner
            max_workers: Number of jobs that can run concurrently
        """
        self.settings = settings
        self.jobs = jobs
        self.documents = documents
        self.runner = runner
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="docai-job")
        # Serialises the active-job check with job creation.
        self._lock = Lock()

    def _ensure_no_active_job(self, document_id: str) -> None:
        active = self.jobs.active_job_for_document(document_id)
        if active:
            raise ConflictError(f"Document already has an active job ({active.id})")

    def _submit(self, record: JobRecord, features: Optional[List[str]] = None) -> None:
        steps = build_steps(self.settings, record.kind, features)
        self._executor.submit(self.runner.run, record.id, steps)

    def create_process_job(
        self,
        user_id: str,
        document_id: str,
        features: Optional[List[str]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> JobRecord:
        """
        Queue processing of a document.

        Args:
            user_id: Caller; must own the document
            document_id: Document to process
            features: Processing features in execution order; repeats are dropped.
                Defaults to the features stored with the document at upload.
            options: Free-form options stored with the job

        Returns:
            The queued job

        Raises:
            NotFoundError: If the document does not exist or is not owned by the caller
            ConflictError: If the document already has a queued or processing job
            ValidationError: If a feature is unknown
        """
        document = self.documents.get(document_id, user_id)
        requested = dedupe_features(features or document.features or list(self.settings.pipeline.default_features))
        try:
            build_steps(self.settings, JobKind.PROCESS, requested)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        with self._lock:
            self._ensure_no_active_job(document_id)
            record = self.jobs.create_job(document_id, user_id, JobKind.PROCESS, requested, options)
        self._submit(record, requested)
        logger.info(f"Processing job {record.id} queued for document {document_id} with features {requested}")
        return record

    def create_question_job(self, user_id: str, request: QuestionJobRequest) -> JobRecord:
        """
        Queue question generation for a fully processed document.

        Raises:
            NotFoundError: If the document does not exist or is not owned by the caller
            ValidationError: If the document has not completed processing
            ConflictError: If the document already has a queued or processing job
        """
        document = self.documents.get(request.document_id, user_id)
        if document.status != DocumentStatus.COMPLETED:
            raise ValidationError("Document must be fully processed before generating questions")
        options = request.model_dump(mode="json", include={"count", "difficulty", "types", "language"})
        with self._lock:
            self._ensure_no_active_job(document.id)
            record = self.jobs.create_job(document.id, user_id, JobKind.QUESTION_GENERATION, ["question_generation"], options)
        self._submit(record)
        logger.info(f"Question generation job {record.id} queued for document {document.id}")
        return record

    def get_job(self, job_id: str, user_id: str) -> JobRecord:
        return self.jobs.get(job_id, user_id)

    def list_jobs(
        self,
        user_id: str,
        page: int = 1,
        limit: int = 20,
        status: Optional[JobStatus] = None,
    ) -> Tuple[List[JobRecord], Pagination]:
        return self.jobs.list_jobs(user_id, page=page, limit=limit, status=status)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
