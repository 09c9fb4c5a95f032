from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from ..dependencies import Services, get_current_user, get_services, require_permission
from ..models import (
    AnswerSource,
    EnhanceImageRequest,
    GenerateQuestionsRequest,
    GenerateSummaryRequest,
    JobAccepted,
    JobHistory,
    JobStatus,
    OCRRequest,
    ProcessRequest,
    QuestionJobRequest,
)
from ..user_store import UserRecord

router = APIRouter(prefix="/api/ai", tags=["ai"])


def _envelope(result, action: str, total: Optional[int] = None) -> Dict[str, Any]:
    method = "using AI" if result.source == AnswerSource.AI else "using fallback method"
    payload = {"success": True, "message": f"{action} {method}", **result.model_dump(mode="json", exclude_none=True)}
    if total is not None:
        payload["total"] = total
    return payload


# ---------- Jobs ----------
@router.post("/process", response_model=JobAccepted)
def process_document(
    payload: ProcessRequest,
    user: UserRecord = Depends(require_permission("ai:process")),
    services: Services = Depends(get_services),
) -> JobAccepted:
    features = [feature.value for feature in payload.features] if payload.features else None
    record = services.job_manager.create_process_job(user.id, payload.document_id, features, payload.options)
    return JobAccepted(message="Document processing started", jobId=record.id, status=record.status)


@router.post("/questions", response_model=JobAccepted)
def generate_question_job(
    payload: QuestionJobRequest,
    user: UserRecord = Depends(require_permission("ai:process")),
    services: Services = Depends(get_services),
) -> JobAccepted:
    record = services.job_manager.create_question_job(user.id, payload)
    return JobAccepted(message="Question generation started", jobId=record.id, status=record.status)


@router.get("/status/{job_id}")
def get_job_status(
    job_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    record = services.job_manager.get_job(job_id, user.id)
    return {"success": True, "job": record.to_view()}


@router.get("/history", response_model=JobHistory)
def get_job_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[JobStatus] = None,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> JobHistory:
    records, pagination = services.job_manager.list_jobs(user.id, page=page, limit=limit, status=status)
    return JobHistory(jobs=[record.to_history_item() for record in records], pagination=pagination)


# ---------- Synchronous generation ----------
@router.post("/ocr")
def extract_text(
    payload: OCRRequest,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    result = services.adapter.extract_text(payload.image_data, payload.language.value, payload.context)
    return _envelope(result, "OCR processing completed")


@router.post("/generate-questions")
def generate_questions(
    payload: GenerateQuestionsRequest,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    result = services.adapter.generate_questions(
        payload.document_content,
        count=payload.count,
        difficulty=payload.difficulty,
        types=payload.question_types,
    )
    return _envelope(result, "Questions generated", total=len(result.questions))


@router.post("/generate-summary")
def generate_summary(
    payload: GenerateSummaryRequest,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    result = services.adapter.generate_summary(
        payload.document_content,
        summary_type=payload.summary_type,
        max_length=payload.max_length,
    )
    return _envelope(result, "Document summary generated")


@router.post("/enhance-image")
def enhance_image(
    payload: EnhanceImageRequest,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    result = services.adapter.enhance_image(payload.image_data, payload.enhancements, payload.context)
    return _envelope(result, "Image enhancement analysis completed")
