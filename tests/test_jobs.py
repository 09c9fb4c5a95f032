"""
Tests for the job pipeline: store transitions, the step runner and the manager.
"""

import threading
import time
from pathlib import Path

import pytest

from conftest import TEXT_CONTENT, FakeProvider
from docai_backend.configuration import load_settings
from docai_backend.database import Database
from docai_backend.document_store import DocumentStore
from docai_backend.errors import ConflictError, InvalidTransition, NotFoundError, ValidationError
from docai_backend.generation import GenerationAdapter
from docai_backend.job_manager import JobManager
from docai_backend.job_runner import JobRunner
from docai_backend.job_store import JobStore
from docai_backend.models import AuthProvider, DocumentStatus, DocumentType, JobKind, JobStatus, QuestionJobRequest
from docai_backend.steps import Step, build_steps
from docai_backend.user_store import UserStore


class RecordingJobStore(JobStore):
    """JobStore that remembers every status/progress it wrote."""

    def __init__(self, database):
        super().__init__(database)
        self.progress_history = []
        self.status_history = []

    def mark_processing(self, job_id):
        super().mark_processing(job_id)
        self.status_history.append(JobStatus.PROCESSING)

    def update_progress(self, job_id, delta):
        progress = super().update_progress(job_id, delta)
        self.progress_history.append(progress)
        return progress

    def complete(self, job_id, result):
        super().complete(job_id, result)
        self.status_history.append(JobStatus.COMPLETED)

    def fail(self, job_id, error_message):
        super().fail(job_id, error_message)
        self.status_history.append(JobStatus.FAILED)


@pytest.fixture
def settings(tmp_path):
    return load_settings(
        {"storage": {"database": str(tmp_path / "jobs.db")}, "pipeline": {"time_scale": 0.0}},
        environ={},
    )


@pytest.fixture
def database(tmp_path):
    return Database(tmp_path / "jobs.db")


@pytest.fixture
def documents(database):
    return DocumentStore(database)


@pytest.fixture
def jobs(database):
    return RecordingJobStore(database)


@pytest.fixture
def user_id(database):
    user = UserStore(database).create_user(
        name="Runner", email="runner@example.com", institution="Test", auth_provider=AuthProvider.LOCAL
    )
    return user.id


@pytest.fixture
def document(tmp_path, documents, user_id):
    path = tmp_path / "notes.txt"
    path.write_text(TEXT_CONTENT, encoding="utf-8")
    return documents.create_document(
        user_id=user_id,
        title="Notes",
        file_path=path,
        file_size=path.stat().st_size,
        original_filename="notes.txt",
        document_type=DocumentType.TEXT,
    )


@pytest.fixture
def runner(jobs, documents):
    sleeps = []
    runner = JobRunner(jobs, documents, GenerationAdapter(FakeProvider(configured=False)), sleep=sleeps.append)
    runner.sleeps = sleeps
    return runner


class TestJobStore:
    def test_new_process_job_resets_document(self, jobs, documents, document, user_id):
        job = jobs.create_job(document.id, user_id, JobKind.PROCESS, ["ocr"])
        assert job.status == JobStatus.QUEUED
        assert job.progress == 0
        assert job.document_title == "Notes"

        stored = documents.fetch(document.id)
        assert stored.status == DocumentStatus.PROCESSING
        assert stored.processing_progress == 0

    def test_create_job_for_missing_document(self, jobs, user_id):
        with pytest.raises(NotFoundError):
            jobs.create_job("missing", user_id, JobKind.PROCESS, ["ocr"])

    def test_progress_requires_processing(self, jobs, document, user_id):
        job = jobs.create_job(document.id, user_id, JobKind.PROCESS, ["ocr"])
        with pytest.raises(InvalidTransition):
            jobs.update_progress(job.id, 10)

    def test_progress_never_decreases(self, jobs, document, user_id):
        job = jobs.create_job(document.id, user_id, JobKind.PROCESS, ["ocr"])
        jobs.mark_processing(job.id)
        with pytest.raises(ValueError):
            jobs.update_progress(job.id, -5)

    def test_progress_is_clamped_at_100(self, jobs, document, user_id, caplog):
        job = jobs.create_job(document.id, user_id, JobKind.PROCESS, ["ocr"])
        jobs.mark_processing(job.id)
        assert jobs.update_progress(job.id, 70) == 70
        assert jobs.update_progress(job.id, 70) == 100
        assert "clamping" in caplog.text

    def test_terminal_jobs_do_not_move(self, jobs, document, user_id):
        job = jobs.create_job(document.id, user_id, JobKind.PROCESS, ["ocr"])
        jobs.mark_processing(job.id)
        jobs.complete(job.id, {"message": "done"})

        with pytest.raises(InvalidTransition):
            jobs.mark_processing(job.id)
        with pytest.raises(InvalidTransition):
            jobs.fail(job.id, "late failure")
        with pytest.raises(InvalidTransition):
            jobs.complete(job.id, {})

        stored = jobs.fetch(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.progress == 100
        assert stored.result == {"message": "done"}

    def test_queued_job_can_fail(self, jobs, documents, document, user_id):
        job = jobs.create_job(document.id, user_id, JobKind.PROCESS, ["ocr"])
        jobs.fail(job.id, "could not start")

        assert jobs.fetch(job.id).status == JobStatus.FAILED
        assert documents.fetch(document.id).error_message == "could not start"

    def test_get_is_scoped_to_owner(self, jobs, document, user_id):
        job = jobs.create_job(document.id, user_id, JobKind.PROCESS, ["ocr"])
        assert jobs.get(job.id, user_id).id == job.id
        with pytest.raises(NotFoundError):
            jobs.get(job.id, "someone-else")


class TestJobRunner:
    def test_process_job_progress_is_monotonic(self, settings, runner, jobs, documents, document, user_id):
        steps = build_steps(settings, JobKind.PROCESS, ["ocr", "hwr", "text_extraction", "language_detection"])
        job = jobs.create_job(document.id, user_id, JobKind.PROCESS, [step.feature for step in steps])

        runner.run(job.id, steps)

        assert jobs.status_history == [JobStatus.PROCESSING, JobStatus.COMPLETED]
        assert jobs.progress_history == [30, 55, 75, 90, 100]
        assert jobs.progress_history == sorted(jobs.progress_history)

        finished = jobs.fetch(job.id)
        assert finished.status == JobStatus.COMPLETED
        assert finished.progress == 100
        assert finished.result["steps"][-1] == "Final Processing"
        assert finished.result["language"] == "en"
        assert documents.fetch(document.id).status == DocumentStatus.COMPLETED
        assert len(documents.list_pages(document.id)) == 2

    def test_step_durations_are_slept(self, tmp_path, jobs, documents, document, user_id):
        slow = load_settings({"pipeline": {"time_scale": 0.5}}, environ={})
        sleeps = []
        runner = JobRunner(jobs, documents, GenerationAdapter(FakeProvider(configured=False)), sleep=sleeps.append)
        job = jobs.create_job(document.id, user_id, JobKind.PROCESS, ["ocr"])

        runner.run(job.id, build_steps(slow, JobKind.PROCESS, ["ocr"]))

        assert sleeps == [0.5, 0.35]

    def test_failing_step_marks_job_and_document_failed(self, settings, runner, jobs, documents, document, user_id):
        Path(document.file_path).unlink()
        steps = build_steps(settings, JobKind.PROCESS, ["ocr"])
        job = jobs.create_job(document.id, user_id, JobKind.PROCESS, ["ocr"])

        runner.run(job.id, steps)

        failed = jobs.fetch(job.id)
        assert failed.status == JobStatus.FAILED
        assert failed.progress == 0
        assert "missing" in failed.error
        assert jobs.status_history == [JobStatus.PROCESSING, JobStatus.FAILED]
        assert documents.fetch(document.id).status == DocumentStatus.FAILED

    def test_unknown_step_fails_job(self, runner, jobs, document, user_id):
        job = jobs.create_job(document.id, user_id, JobKind.PROCESS, ["ocr"])
        runner.run(job.id, [Step(name="Mystery", feature="mystery", progress_delta=100, duration=0)])
        assert jobs.fetch(job.id).status == JobStatus.FAILED

    def test_job_that_already_ran_is_not_restarted(self, settings, runner, jobs, document, user_id):
        steps = build_steps(settings, JobKind.PROCESS, ["ocr"])
        job = jobs.create_job(document.id, user_id, JobKind.PROCESS, ["ocr"])
        runner.run(job.id, steps)
        runner.run(job.id, steps)

        assert jobs.status_history == [JobStatus.PROCESSING, JobStatus.COMPLETED]

    def test_question_job_does_not_touch_document_status(self, settings, runner, jobs, documents, document, user_id):
        process_steps = build_steps(settings, JobKind.PROCESS, ["text_extraction"])
        process = jobs.create_job(document.id, user_id, JobKind.PROCESS, ["text_extraction"])
        runner.run(process.id, process_steps)

        question = jobs.create_job(
            document.id, user_id, JobKind.QUESTION_GENERATION, [], {"count": 2, "types": ["short_answer"]}
        )
        runner.run(question.id, build_steps(settings, JobKind.QUESTION_GENERATION))

        finished = jobs.fetch(question.id)
        assert finished.status == JobStatus.COMPLETED
        assert finished.result["source"] == "Fallback"
        assert finished.result["questions_generated"] == 2
        assert len(documents.list_questions(document.id)) == 2
        assert documents.fetch(document.id).status == DocumentStatus.COMPLETED


class BlockingRunner:
    """Stands in for JobRunner; holds every job until released."""

    def __init__(self):
        self.release = threading.Event()
        self.started = []

    def run(self, job_id, steps):
        self.started.append((job_id, [step.feature for step in steps]))
        self.release.wait(timeout=5)


class TestJobManager:
    @pytest.fixture
    def manager(self, settings, jobs, documents):
        runner = BlockingRunner()
        manager = JobManager(settings, jobs, documents, runner, max_workers=2)
        yield manager
        runner.release.set()
        manager.shutdown(wait=True)

    def test_features_are_deduplicated(self, manager, document, user_id):
        job = manager.create_process_job(user_id, document.id, ["hwr", "ocr", "hwr"])
        assert job.features == ["hwr", "ocr"]

    def test_one_active_job_per_document(self, manager, document, user_id):
        manager.create_process_job(user_id, document.id, ["ocr"])
        with pytest.raises(ConflictError):
            manager.create_process_job(user_id, document.id, ["ocr"])

    def test_unknown_feature_is_validation_error(self, manager, document, user_id):
        with pytest.raises(ValidationError):
            manager.create_process_job(user_id, document.id, ["ocr", "finalize", "x-ray"])

    def test_question_job_requires_completed_document(self, manager, document, user_id):
        with pytest.raises(ValidationError):
            manager.create_question_job(user_id, QuestionJobRequest(documentId=document.id))

    def test_other_users_documents_are_not_found(self, manager, document):
        with pytest.raises(NotFoundError):
            manager.create_process_job("intruder", document.id, ["ocr"])

    def test_jobs_for_different_documents_run_concurrently(self, manager, documents, document, user_id):
        second = documents.create_document(
            user_id=user_id,
            title="More notes",
            file_path=document.file_path,
            file_size=document.file_size,
            original_filename="more.txt",
            document_type=DocumentType.TEXT,
        )
        first_job = manager.create_process_job(user_id, document.id, ["ocr"])
        second_job = manager.create_process_job(user_id, second.id, ["hwr"])

        runner = manager.runner
        deadline = time.monotonic() + 5
        while len(runner.started) < 2 and time.monotonic() < deadline:
            time.sleep(0.01)

        # Both are running while neither has been released
        assert not runner.release.is_set()
        assert {job_id for job_id, _ in runner.started} == {first_job.id, second_job.id}

    def test_process_defaults_to_features_stored_with_document(self, manager, documents, tmp_path, user_id):
        path = tmp_path / "handwritten.txt"
        path.write_text(TEXT_CONTENT, encoding="utf-8")
        stored = documents.create_document(
            user_id=user_id,
            title="Handwritten",
            file_path=path,
            file_size=path.stat().st_size,
            original_filename="handwritten.txt",
            document_type=DocumentType.TEXT,
            features=["hwr", "text_extraction"],
        )

        job = manager.create_process_job(user_id, stored.id)
        assert job.features == ["hwr", "text_extraction"]
