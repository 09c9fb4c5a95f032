"""
Component wiring and FastAPI dependencies.

All stores and services are built once per application by :func:`build_services`
and hung off ``app.state``; route handlers receive them through ``Depends``
rather than importing module-level singletons.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from functools import partial
from pathlib import Path
from typing import Optional

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from omegaconf import DictConfig

from .auth import AuthService, FederatedTokenProvider, LocalPasswordProvider, TokenService, verify_firebase_token
from .database import Database
from .document_store import DocumentStore
from .generation import GenerationAdapter
from .job_manager import JobManager
from .job_runner import JobRunner
from .job_store import JobStore
from .models import AuthProvider
from .providers import GeminiProvider, TextProvider
from .s3_service import S3Service
from .user_store import PasswordHasher, UserRecord, UserStore
from .utils import ensure_directory

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass
class Services:
    settings: DictConfig
    database: Database
    users: UserStore
    documents: DocumentStore
    jobs: JobStore
    job_manager: JobManager
    auth: AuthService
    adapter: GenerationAdapter
    s3: S3Service
    upload_root: Path


def build_services(
    settings: DictConfig,
    provider: Optional[TextProvider] = None,
    firebase_verifier=None,
) -> Services:
    """
    Build every component from settings.

    Args:
        settings: Runtime configuration
        provider: Text provider to use instead of Gemini
        firebase_verifier: Callable replacing Firebase ID-token verification
    """
    database = Database(Path(settings.storage.database))
    users = UserStore(database)
    documents = DocumentStore(database)
    jobs = JobStore(database)

    if provider is None:
        provider = GeminiProvider(
            api_key=settings.provider.api_key,
            base_url=settings.provider.base_url,
            text_model=settings.provider.text_model,
            vision_model=settings.provider.vision_model,
            timeout=float(settings.provider.timeout),
        )
    adapter = GenerationAdapter(provider)

    runner = JobRunner(jobs, documents, adapter)
    job_manager = JobManager(settings, jobs, documents, runner, max_workers=int(settings.jobs.max_workers))

    auth_settings = settings.auth
    hasher = PasswordHasher(iterations=int(auth_settings.password_iterations))
    tokens = TokenService(
        secret=auth_settings.jwt_secret,
        refresh_secret=auth_settings.jwt_refresh_secret,
        algorithm=auth_settings.jwt_algorithm,
        access_ttl=timedelta(minutes=int(auth_settings.access_token_minutes)),
        refresh_ttl=timedelta(days=int(auth_settings.refresh_token_days)),
    )
    if firebase_verifier is None:
        firebase_verifier = partial(
            verify_firebase_token,
            project_id=auth_settings.firebase_project_id,
            credentials_path=auth_settings.firebase_credentials_path,
        )
    auth = AuthService(
        users,
        tokens,
        hasher,
        providers={
            AuthProvider.LOCAL: LocalPasswordProvider(users, hasher),
            AuthProvider.FIREBASE: FederatedTokenProvider(users, firebase_verifier),
        },
    )

    return Services(
        settings=settings,
        database=database,
        users=users,
        documents=documents,
        jobs=jobs,
        job_manager=job_manager,
        auth=auth,
        adapter=adapter,
        s3=S3Service(settings.storage.s3_bucket, settings.storage.s3_prefix),
        upload_root=ensure_directory(Path(settings.storage.upload_dir)),
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    services: Services = Depends(get_services),
) -> UserRecord:
    token = credentials.credentials if credentials else None
    return services.auth.authenticate_access_token(token)


def require_permission(permission: str):
    """Dependency factory: the current user, provided their role grants ``permission``."""

    def _check(
        user: UserRecord = Depends(get_current_user),
        services: Services = Depends(get_services),
    ) -> UserRecord:
        return services.auth.require_permission(user, permission)

    return _check
