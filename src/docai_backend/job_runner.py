"""
Sequential execution of a job's steps.

The runner is the only writer of a job's status, progress and result once the
job exists. It runs on an executor thread, so nothing it raises can reach the
HTTP request that created the job: failures are recorded on the job (and, for
process jobs, on the document) and surface through status polling.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List

from .document_store import DocumentRecord, DocumentStore
from .errors import InvalidTransition, NotFoundError
from .generation import GenerationAdapter
from .job_store import JobRecord, JobStore
from .models import Difficulty, DocumentType, JobKind, QuestionType
from .steps import Step

logger = logging.getLogger(__name__)

PAGE_BREAK = "\f"


@dataclass
class StepContext:
    job: JobRecord
    document: DocumentRecord
    results: Dict[str, Any] = field(default_factory=dict)
    completed: List[str] = field(default_factory=list)


StepHandler = Callable[[StepContext], None]


class JobRunner:
    """
    Drives one job at a time through its steps.

    Args:
        jobs: Job persistence
        documents: Document, page and question persistence
        adapter: Generation adapter used by question jobs
        sleep: Called with each step's simulated duration
    """

    def __init__(
        self,
        jobs: JobStore,
        documents: DocumentStore,
        adapter: GenerationAdapter,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.jobs = jobs
        self.documents = documents
        self.adapter = adapter
        self.sleep = sleep
        self.handlers: Dict[str, StepHandler] = {
            "ocr": self._extract_pages,
            "hwr": self._extract_pages,
            "text_extraction": self._extract_pages,
            "language_detection": self._detect_language,
            "finalize": self._finalize,
            "load_content": self._load_content,
            "generate_questions": self._generate_questions,
            "store_questions": self._store_questions,
        }

    def run(self, job_id: str, steps: List[Step]) -> None:
        try:
            self.jobs.mark_processing(job_id)
            job = self.jobs.fetch(job_id)
            document = self.documents.fetch(job.document_id)
        except (InvalidTransition, NotFoundError) as exc:
            logger.warning(f"Job {job_id} not started: {exc}")
            return

        logger.info(f"Job {job_id} started ({job.kind.value}, {len(steps)} steps)")
        context = StepContext(job=job, document=document)

        try:
            for step in steps:
                self._run_step(step, context)
                progress = self.jobs.update_progress(job_id, step.progress_delta)
                context.completed.append(step.name)
                logger.info(f"Job {job_id} finished step '{step.name}' ({progress}%)")

            self.jobs.complete(job_id, self._result(context))
            logger.info(f"Job {job_id} completed")
        except Exception as exc:
            logger.error(f"Job {job_id} failed: {exc}", exc_info=True)
            try:
                self.jobs.fail(job_id, str(exc) or exc.__class__.__name__)
            except (InvalidTransition, NotFoundError) as record_exc:
                # The document (and its jobs) may have been deleted mid-run.
                logger.warning(f"Could not record failure for job {job_id}: {record_exc}")

    def _run_step(self, step: Step, context: StepContext) -> None:
        handler = self.handlers.get(step.feature)
        if handler is None:
            raise LookupError(f"No handler for step '{step.feature}'")
        if step.duration > 0:
            self.sleep(step.duration)
        handler(context)

    # ---------- process steps ----------
    def _extract_pages(self, context: StepContext) -> None:
        if "pages" in context.results:
            return
        document = context.document
        if not document.file_path.exists():
            raise FileNotFoundError(f"Stored file for document {document.id} is missing")

        if document.type == DocumentType.TEXT:
            text = document.file_path.read_text(encoding="utf-8", errors="replace")
            pages = text.split(PAGE_BREAK)
            confidence = 1.0
        else:
            pages = [""]
            confidence = None

        for number, page_text in enumerate(pages, start=1):
            self.documents.save_page(document.id, number, page_text.strip(), confidence)
        context.results["pages"] = len(pages)
        context.results["characters"] = sum(len(page) for page in pages)

    def _detect_language(self, context: StepContext) -> None:
        context.results["language"] = context.document.language

    def _finalize(self, context: StepContext) -> None:
        context.results["message"] = "Processing completed successfully"

    # ---------- question steps ----------
    def _load_content(self, context: StepContext) -> None:
        document = context.document
        content = self.documents.document_text(document.id)
        if not content.strip():
            content = "\n".join(part for part in (document.title, document.description) if part)
        context.results["content"] = content

    def _generate_questions(self, context: StepContext) -> None:
        options = context.job.options
        context.results["question_set"] = self.adapter.generate_questions(
            context.results["content"],
            count=int(options.get("count", 10)),
            difficulty=Difficulty(options.get("difficulty", Difficulty.MEDIUM.value)),
            types=[QuestionType(t) for t in options.get("types", [QuestionType.MCQ.value])],
        )

    def _store_questions(self, context: StepContext) -> None:
        question_set = context.results["question_set"]
        context.results["questions_generated"] = self.documents.save_questions(
            context.document.id,
            context.job.id,
            context.job.options.get("language", "en"),
            [question.model_dump(mode="json") for question in question_set.questions],
        )

    def _result(self, context: StepContext) -> Dict[str, Any]:
        if context.job.kind == JobKind.QUESTION_GENERATION:
            question_set = context.results["question_set"]
            result = {
                "questions_generated": context.results.get("questions_generated", 0),
                "source": question_set.source.value,
                "questions": [question.model_dump(mode="json") for question in question_set.questions],
            }
            if question_set.warning:
                result["warning"] = question_set.warning
            return result

        return {
            "message": context.results.get("message", "Processing completed successfully"),
            "features": context.job.features,
            "steps": context.completed,
            "pages": context.results.get("pages", 0),
            "characters": context.results.get("characters", 0),
            "language": context.results.get("language", context.document.language),
        }
