"""
Exception types shared across the API, the job pipeline and the AI adapter.

``AppError`` subclasses carry the HTTP status they are rendered with by the
exception handler registered in :mod:`docai_backend.main`. ``ProviderError``
never reaches a client: the generation adapter converts it into a fallback
response.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors or []

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": False, "message": self.message}
        if self.errors:
            payload["errors"] = self.errors
        return payload


class ValidationError(AppError):
    status_code = 400


class AuthError(AppError):
    status_code = 401


class PermissionDenied(AppError):
    status_code = 403


class NotFoundError(AppError):
    """Missing resources and resources owned by someone else look the same."""

    status_code = 404


class ConflictError(AppError):
    status_code = 409


class InvalidTransition(Exception):
    """A job status change that would move a job backwards or out of a terminal state."""


class ProviderError(Exception):
    """The generative AI service failed, timed out, or returned unusable output."""


class ConfigurationError(Exception):
    """Raised at startup when settings are inconsistent."""
