from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


class JobKind(str, Enum):
    PROCESS = "process"
    QUESTION_GENERATION = "question_generation"


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class DocumentType(str, Enum):
    PDF = "pdf"
    IMAGE = "image"
    WORD = "word"
    EXCEL = "excel"
    POWERPOINT = "powerpoint"
    TEXT = "text"
    OTHER = "other"


class Feature(str, Enum):
    OCR = "ocr"
    HWR = "hwr"
    TEXT_EXTRACTION = "text_extraction"
    LANGUAGE_DETECTION = "language_detection"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"


class QuestionType(str, Enum):
    MCQ = "mcq"
    SHORT_ANSWER = "short_answer"
    LONG_ANSWER = "long_answer"
    TRUE_FALSE = "true_false"


class Language(str, Enum):
    EN = "en"
    HI = "hi"
    BN = "bn"
    TE = "te"
    TA = "ta"
    MR = "mr"
    GU = "gu"
    KN = "kn"
    ML = "ml"
    PA = "pa"


class AnswerSource(str, Enum):
    AI = "AI"
    FALLBACK = "Fallback"


class UserRole(str, Enum):
    VIEWER = "viewer"
    USER = "user"
    ADMIN = "admin"


class SharePermission(str, Enum):
    READ = "read"
    WRITE = "write"
    ADMIN = "admin"


class AuthProvider(str, Enum):
    LOCAL = "local"
    FIREBASE = "firebase"


class RequestModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


# ---------- Auth ----------
class RegisterRequest(RequestModel):
    name: str = Field(min_length=1, max_length=100)
    email: str = Field(pattern=r"^[^@\s]+@[^@\s]+\.[^@\s]+$", max_length=254)
    password: str = Field(min_length=8, max_length=128)
    institution: Optional[str] = Field(default=None, max_length=200)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class LoginRequest(RequestModel):
    email: str
    password: str

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return value.strip().lower()


class FederatedLoginRequest(RequestModel):
    id_token: str = Field(alias="idToken", min_length=1)


class RefreshRequest(RequestModel):
    refresh_token: str = Field(alias="refreshToken", min_length=1)


class ChangePasswordRequest(RequestModel):
    current_password: str = Field(alias="currentPassword", min_length=1)
    new_password: str = Field(alias="newPassword", min_length=8, max_length=128)


class UserView(BaseModel):
    id: str
    name: str
    email: str
    role: UserRole
    institution: str
    auth_provider: AuthProvider


class TokenPair(BaseModel):
    accessToken: str
    refreshToken: str


class AuthResponse(BaseModel):
    success: bool = True
    message: str
    user: UserView
    tokens: Optional[TokenPair] = None


# ---------- Documents ----------
class DocumentUpdateRequest(RequestModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    description: Optional[str] = Field(default=None, max_length=1000)
    language: Optional[Language] = None
    metadata: Optional[Dict[str, Any]] = None


class ShareRequest(RequestModel):
    user_emails: List[str] = Field(alias="userEmails", min_length=1)
    permission: SharePermission = SharePermission.READ
    expires_at: Optional[datetime] = Field(default=None, alias="expiresAt")

    @field_validator("user_emails")
    @classmethod
    def _normalize_emails(cls, value: List[str]) -> List[str]:
        emails = [email.strip().lower() for email in value]
        for email in emails:
            if "@" not in email or email.startswith("@") or email.endswith("@"):
                raise ValueError(f"Invalid email format: {email}")
        return emails


class PageView(BaseModel):
    id: str
    document_id: str
    page_number: int
    text: str
    confidence: Optional[float] = None
    created_at: datetime


class DocumentView(BaseModel):
    id: str
    title: str
    description: str
    language: str
    type: DocumentType
    status: DocumentStatus
    processing_progress: int
    error_message: Optional[str] = None
    file_size: int
    original_filename: str
    features: List[str]
    processing_options: Dict[str, Any]
    metadata: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    pages: Optional[List[PageView]] = None


class SharedDocumentView(DocumentView):
    owner_name: str
    permission: SharePermission
    shared_until: datetime


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


# ---------- Jobs ----------
class ProcessRequest(RequestModel):
    document_id: str = Field(alias="documentId", min_length=1)
    features: Optional[List[Feature]] = None
    options: Dict[str, Any] = Field(default_factory=dict)


class QuestionJobRequest(RequestModel):
    document_id: str = Field(alias="documentId", min_length=1)
    count: int = Field(default=10, ge=1, le=50)
    difficulty: Difficulty = Difficulty.MEDIUM
    types: List[QuestionType] = Field(default_factory=lambda: [QuestionType.MCQ, QuestionType.SHORT_ANSWER], min_length=1)
    language: Language = Language.EN


class JobAccepted(BaseModel):
    success: bool = True
    message: str
    jobId: str
    status: JobStatus


class JobView(BaseModel):
    id: str
    document_id: str
    kind: JobKind
    status: JobStatus
    progress: int
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    document_title: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class JobHistoryItem(BaseModel):
    id: str
    status: JobStatus
    job_type: JobKind
    progress: int
    document_title: Optional[str] = None
    document_type: Optional[DocumentType] = None
    created_at: datetime
    updated_at: datetime


class JobHistory(BaseModel):
    success: bool = True
    jobs: List[JobHistoryItem]
    pagination: Pagination


# ---------- Generation ----------
class Question(BaseModel):
    """One generated quiz question; also the schema model output is validated against."""

    model_config = ConfigDict(extra="ignore")

    question: str = Field(min_length=1)
    type: QuestionType = QuestionType.SHORT_ANSWER
    options: List[str] = Field(default_factory=list)
    correct_answer: Optional[Union[int, str]] = None
    answer: Optional[str] = None
    difficulty: Difficulty = Difficulty.MEDIUM
    explanation: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        # Models tend to answer with the long spelling.
        if value == "multiple_choice":
            return QuestionType.MCQ
        return value


class GenerateQuestionsRequest(RequestModel):
    document_content: str = Field(alias="documentContent", min_length=1)
    count: int = Field(default=5, ge=1, le=50)
    difficulty: Difficulty = Difficulty.MEDIUM
    question_types: List[QuestionType] = Field(
        alias="questionTypes",
        default_factory=lambda: [QuestionType.MCQ, QuestionType.SHORT_ANSWER],
        min_length=1,
    )


class GenerateSummaryRequest(RequestModel):
    document_content: str = Field(alias="documentContent", min_length=1)
    summary_type: str = Field(alias="summaryType", default="general", max_length=50)
    max_length: int = Field(alias="maxLength", default=200, ge=1, le=5000)


class OCRRequest(RequestModel):
    image_data: str = Field(alias="imageData", min_length=1)
    language: Language = Language.EN
    context: str = ""


class EnhanceImageRequest(RequestModel):
    image_data: str = Field(alias="imageData", min_length=1)
    enhancements: List[str] = Field(default_factory=lambda: ["brightness", "contrast", "sharpness"])
    context: str = ""


class QuestionSet(BaseModel):
    questions: List[Question]
    source: AnswerSource
    warning: Optional[str] = None


class SummaryResult(BaseModel):
    summary: str
    source: AnswerSource
    warning: Optional[str] = None


class AnalysisResult(BaseModel):
    result: Dict[str, Any]
    source: AnswerSource
    warning: Optional[str] = None
