from __future__ import annotations

import json
import logging
from datetime import timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import FileResponse
from starlette.concurrency import run_in_threadpool

from ..database import utcnow
from ..dependencies import Services, get_current_user, get_services, require_permission
from ..document_store import DocumentRecord
from ..errors import NotFoundError, ValidationError
from ..models import DocumentStatus, DocumentType, DocumentUpdateRequest, Feature, Language, ShareRequest
from ..steps import dedupe_features
from ..user_store import UserRecord
from ..utils import document_type_for, ensure_directory, stored_filename

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/documents", tags=["documents"])

CHUNK_SIZE = 1024 * 1024
SHARE_TTL = timedelta(days=30)


def _parse_features(raw: str) -> List[str]:
    names = [name.strip() for name in raw.split(",") if name.strip()]
    try:
        return dedupe_features(Feature(name).value for name in names)
    except ValueError as exc:
        raise ValidationError(f"Invalid features: {raw}") from exc


def _parse_options(raw: str) -> Dict[str, Any]:
    try:
        parsed = json.loads(raw) if raw else {}
    except json.JSONDecodeError as exc:
        raise ValidationError(f"Invalid processingOptions JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValidationError("processingOptions must be a JSON object")
    return parsed


async def _store_upload(file: UploadFile, directory: Path, max_bytes: int) -> Path:
    destination = ensure_directory(directory) / stored_filename(uuid4().hex, file.filename or "")
    written = 0
    with destination.open("wb") as buffer:
        while chunk := await file.read(CHUNK_SIZE):
            written += len(chunk)
            if written > max_bytes:
                break
            buffer.write(chunk)
    await file.close()

    if written > max_bytes:
        destination.unlink(missing_ok=True)
        raise ValidationError(f"File exceeds the {max_bytes} byte upload limit")
    if written == 0:
        destination.unlink(missing_ok=True)
        raise ValidationError("Uploaded file is empty")
    return destination


def _register_upload(
    services: Services,
    user: UserRecord,
    path: Path,
    filename: str,
    title: str,
    description: str,
    language: Language,
    features: List[str],
    options: Dict[str, Any],
) -> DocumentRecord:
    s3_key = None
    if services.s3.enabled:
        key = services.s3.key_for(user.id, path.name)
        if services.s3.upload(path, key):
            s3_key = key

    return services.documents.create_document(
        user_id=user.id,
        title=title.strip() or Path(filename).stem or "Untitled",
        file_path=path,
        file_size=path.stat().st_size,
        original_filename=filename,
        document_type=document_type_for(filename),
        description=description,
        language=language.value,
        features=features,
        processing_options=options,
        s3_key=s3_key,
    )


@router.get("")
def list_documents(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[DocumentStatus] = None,
    document_type: Optional[DocumentType] = Query(None, alias="type"),
    search: Optional[str] = Query(None, max_length=200),
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    records, pagination = services.documents.list_documents(
        user.id, page=page, limit=limit, status=status, document_type=document_type, search=search
    )
    return {
        "success": True,
        "documents": [record.to_view() for record in records],
        "pagination": pagination,
    }


@router.post("", status_code=201)
async def upload_document(
    file: UploadFile = File(...),
    title: str = Form(""),
    description: str = Form(""),
    language: Language = Form(Language.EN),
    features: str = Form(""),
    processingOptions: str = Form("{}"),
    user: UserRecord = Depends(require_permission("documents:write")),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    if not file.filename:
        raise ValidationError("No file uploaded")

    requested = _parse_features(features) or list(services.settings.pipeline.default_features)
    options = _parse_options(processingOptions)
    max_bytes = int(services.settings.storage.max_upload_bytes)
    path = await _store_upload(file, services.upload_root / user.id, max_bytes)

    # S3 transfer and SQLite insert block; keep them off the event loop.
    record = await run_in_threadpool(
        _register_upload,
        services,
        user,
        path,
        file.filename,
        title,
        description,
        language,
        requested,
        options,
    )
    logger.info(f"Document uploaded successfully: {record.id} ({file.filename}) by {user.id}")
    return {"success": True, "message": "Document uploaded successfully", "document": record.to_view()}


@router.get("/shared")
def list_shared_documents(
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    return {"success": True, "documents": services.documents.list_shared_with(user.id)}


@router.get("/{document_id}")
def get_document(
    document_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    record = services.documents.get(document_id, user.id)
    return {"success": True, "document": record.to_view(pages=services.documents.list_pages(record.id))}


@router.put("/{document_id}")
def update_document(
    document_id: str,
    payload: DocumentUpdateRequest,
    user: UserRecord = Depends(require_permission("documents:write")),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    changes = payload.model_dump(mode="json", exclude_none=True)
    try:
        record = services.documents.update_metadata(document_id, user.id, changes)
    except ValueError as exc:
        raise ValidationError(str(exc)) from exc
    logger.info(f"Document updated: {document_id}")
    return {"success": True, "message": "Document updated successfully", "document": record.to_view()}


@router.delete("/{document_id}")
def delete_document(
    document_id: str,
    user: UserRecord = Depends(require_permission("documents:delete")),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    record = services.documents.delete(document_id, user.id)
    record.file_path.unlink(missing_ok=True)
    if record.s3_key:
        services.s3.delete(record.s3_key)
    logger.info(f"Document deleted: {document_id}")
    return {"success": True, "message": "Document deleted successfully"}


@router.post("/{document_id}/share")
def share_document(
    document_id: str,
    payload: ShareRequest,
    user: UserRecord = Depends(require_permission("documents:share")),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    if payload.expires_at is None:
        expires_at = utcnow() + SHARE_TTL
    elif payload.expires_at.tzinfo is None:
        expires_at = payload.expires_at.replace(tzinfo=timezone.utc)
    else:
        expires_at = payload.expires_at.astimezone(timezone.utc)
    if expires_at <= utcnow():
        raise ValidationError("expiresAt must be in the future")

    shared = services.documents.share(document_id, user.id, payload.user_emails, payload.permission, expires_at)
    if shared == 0:
        raise ValidationError("No valid users found")
    logger.info(f"Document shared: {document_id} with {shared} users by {user.id}")
    return {"success": True, "message": f"Document shared with {shared} users"}


@router.get("/{document_id}/status")
def get_processing_status(
    document_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    record = services.documents.get(document_id, user.id)
    return {
        "success": True,
        "status": {
            "id": record.id,
            "status": record.status,
            "processing_progress": record.processing_progress,
            "error_message": record.error_message,
            "updated_at": record.updated_at,
        },
    }


@router.get("/{document_id}/pages")
def get_document_pages(
    document_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    record = services.documents.get(document_id, user.id)
    return {"success": True, "pages": services.documents.list_pages(record.id)}


@router.get("/{document_id}/questions")
def get_document_questions(
    document_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    record = services.documents.get(document_id, user.id)
    return {"success": True, "questions": services.documents.list_questions(record.id)}


@router.get("/{document_id}/download")
def download_document(
    document_id: str,
    user: UserRecord = Depends(get_current_user),
    services: Services = Depends(get_services),
):
    record = services.documents.get(document_id, user.id)
    if record.s3_key and services.s3.enabled:
        url = services.s3.presigned_url(record.s3_key, int(services.settings.storage.presigned_url_ttl))
        if url:
            return {"success": True, "downloadUrl": url}

    if not record.file_path.exists():
        raise NotFoundError("Document file not found")
    return FileResponse(record.file_path, filename=record.original_filename)
