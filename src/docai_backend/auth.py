"""
Authentication: one service, several credential providers.

Users sign in either with a local email/password pair or with a federated
identity token (Firebase). Both paths end in the same place: a user record in
:class:`UserStore` and a pair of JWTs issued by :class:`TokenService`.
"""

from __future__ import annotations

import logging
import secrets
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

import firebase_admin
import jwt
from firebase_admin import auth as firebase_auth
from firebase_admin import credentials as firebase_credentials

from .database import utcnow
from .errors import AuthError, PermissionDenied
from .models import AuthProvider, RegisterRequest, TokenPair, UserRole
from .user_store import PasswordHasher, UserRecord, UserStore

logger = logging.getLogger(__name__)

ACCESS = "access"
REFRESH = "refresh"

ROLE_PERMISSIONS: Dict[UserRole, List[str]] = {
    UserRole.ADMIN: [
        "users:read", "users:write",
        "documents:read", "documents:write", "documents:delete", "documents:share",
        "ai:process", "questions:read", "questions:write",
    ],
    UserRole.USER: [
        "documents:read", "documents:write", "documents:delete", "documents:share",
        "ai:process", "questions:read", "questions:write",
    ],
    UserRole.VIEWER: ["documents:read", "questions:read"],
}


def permissions_for(role: UserRole) -> List[str]:
    return list(ROLE_PERMISSIONS.get(role, ["documents:read"]))


class TokenService:
    """Issues and verifies HS256 access and refresh tokens."""

    def __init__(
        self,
        secret: str,
        refresh_secret: str,
        algorithm: str = "HS256",
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
    ):
        self.secret = secret
        self.refresh_secret = refresh_secret
        self.algorithm = algorithm
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl

    def issue_access_token(self, user: UserRecord) -> str:
        now = utcnow()
        payload = {
            "sub": user.id,
            "email": user.email,
            "role": user.role.value,
            "type": ACCESS,
            "iat": now,
            "exp": now + self.access_ttl,
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def issue_refresh_token(self, user: UserRecord) -> Tuple[str, datetime]:
        now = utcnow()
        expires_at = now + self.refresh_ttl
        payload = {
            "sub": user.id,
            "type": REFRESH,
            "jti": secrets.token_hex(8),
            "iat": now,
            "exp": expires_at,
        }
        return jwt.encode(payload, self.refresh_secret, algorithm=self.algorithm), expires_at

    def _decode(self, token: str, secret: str, expected_type: str) -> Dict[str, Any]:
        try:
            claims = jwt.decode(token, secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as exc:
            raise AuthError("Token expired. Please log in again.") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthError("Invalid token. Please log in again.") from exc
        if claims.get("type") != expected_type or not claims.get("sub"):
            raise AuthError("Invalid token. Please log in again.")
        return claims

    def decode_access_token(self, token: str) -> Dict[str, Any]:
        return self._decode(token, self.secret, ACCESS)

    def decode_refresh_token(self, token: str) -> Dict[str, Any]:
        return self._decode(token, self.refresh_secret, REFRESH)


class CredentialProvider(ABC):
    """Turns a set of credentials into a known user, or raises AuthError."""

    kind: AuthProvider

    @abstractmethod
    def authenticate(self, credentials: Dict[str, str]) -> UserRecord:
        ...


class LocalPasswordProvider(CredentialProvider):
    kind = AuthProvider.LOCAL

    def __init__(self, users: UserStore, hasher: PasswordHasher):
        self.users = users
        self.hasher = hasher

    def authenticate(self, credentials: Dict[str, str]) -> UserRecord:
        user = self.users.get_by_email(credentials.get("email", ""))
        # Same message for unknown email and wrong password.
        if not user or not self.hasher.verify(credentials.get("password", ""), user.password_hash):
            raise AuthError("Invalid email or password")
        return user


def initialize_firebase(project_id: str, credentials_path: str = "") -> bool:
    """Initialise the Firebase Admin SDK once; returns False when not configured."""
    if firebase_admin._apps:
        return True
    if not project_id:
        logger.warning("Firebase project ID not set; federated login disabled")
        return False
    if credentials_path:
        cred = firebase_credentials.Certificate(credentials_path)
        firebase_admin.initialize_app(cred, {"projectId": project_id})
    else:
        firebase_admin.initialize_app(options={"projectId": project_id})
    logger.info("Firebase Admin SDK initialized")
    return True


def verify_firebase_token(id_token: str, project_id: str, credentials_path: str = "") -> Dict[str, Any]:
    if not initialize_firebase(project_id, credentials_path):
        raise AuthError("Federated login is not configured")
    try:
        return firebase_auth.verify_id_token(id_token)
    except (ValueError, firebase_auth.InvalidIdTokenError, firebase_auth.ExpiredIdTokenError) as exc:
        logger.warning(f"Firebase token verification failed: {exc}")
        raise AuthError("Invalid Firebase token") from exc


class FederatedTokenProvider(CredentialProvider):
    """
    Verifies an identity token with an external issuer and provisions the user
    on first sign-in.

    ``verifier`` receives the raw token and returns its claims; it must raise
    :class:`AuthError` for tokens it rejects.
    """

    kind = AuthProvider.FIREBASE

    def __init__(self, users: UserStore, verifier):
        self.users = users
        self.verifier = verifier

    def authenticate(self, credentials: Dict[str, str]) -> UserRecord:
        claims = self.verifier(credentials.get("id_token", ""))
        email = (claims.get("email") or "").lower()
        if not email:
            raise AuthError("Token missing email")

        user = self.users.get_by_email(email)
        if user:
            return user

        user = self.users.create_user(
            name=claims.get("name") or email.split("@")[0],
            email=email,
            institution="Firebase User",
            auth_provider=self.kind,
            external_id=claims.get("uid"),
        )
        logger.info(f"Federated user created: {email}")
        return user


class AuthService:
    def __init__(
        self,
        users: UserStore,
        tokens: TokenService,
        hasher: PasswordHasher,
        providers: Dict[AuthProvider, CredentialProvider],
    ):
        self.users = users
        self.tokens = tokens
        self.hasher = hasher
        self.providers = providers

    def register(self, request: RegisterRequest) -> UserRecord:
        user = self.users.create_user(
            name=request.name,
            email=request.email,
            institution=request.institution or "Default Institution",
            auth_provider=AuthProvider.LOCAL,
            password_hash=self.hasher.hash(request.password),
        )
        logger.info(f"User registered successfully: {user.email}")
        return user

    def login(self, provider: AuthProvider, credentials: Dict[str, str]) -> Tuple[UserRecord, TokenPair]:
        handler = self.providers.get(provider)
        if handler is None:
            raise AuthError(f"Login with '{provider.value}' is not enabled")

        user = handler.authenticate(credentials)
        if not user.is_active:
            raise AuthError("User account is deactivated")

        access_token = self.tokens.issue_access_token(user)
        refresh_token, expires_at = self.tokens.issue_refresh_token(user)
        self.users.save_session(user.id, refresh_token, expires_at)
        logger.info(f"User logged in via {provider.value}: {user.email}")
        return user, TokenPair(accessToken=access_token, refreshToken=refresh_token)

    def refresh(self, refresh_token: str) -> str:
        claims = self.tokens.decode_refresh_token(refresh_token)
        user_id = claims["sub"]
        if not self.users.session_matches(user_id, refresh_token):
            raise AuthError("Invalid refresh token")
        user = self.users.get_by_id(user_id)
        if not user or not user.is_active:
            raise AuthError("User not found")
        return self.tokens.issue_access_token(user)

    def authenticate_access_token(self, token: Optional[str]) -> UserRecord:
        if not token:
            raise AuthError("Access token required")
        claims = self.tokens.decode_access_token(token)
        user = self.users.get_by_id(claims["sub"])
        if not user:
            raise AuthError("User not found")
        if not user.is_active:
            raise PermissionDenied("User account is deactivated")
        return user

    def require_permission(self, user: UserRecord, permission: str) -> UserRecord:
        if permission not in permissions_for(user.role):
            raise PermissionDenied("Insufficient permissions")
        return user

    def change_password(self, user: UserRecord, current_password: str, new_password: str) -> None:
        """
        Replace a local user's password and sign them out everywhere.

        Raises:
            AuthError: If ``current_password`` does not match
        """
        if not self.hasher.verify(current_password, user.password_hash):
            raise AuthError("Current password is incorrect")
        self.users.update_password(user.id, self.hasher.hash(new_password))
        self.users.delete_session(user.id)
        logger.info(f"Password changed for user: {user.email}")

    def logout(self, user: UserRecord) -> None:
        self.users.delete_session(user.id)
        logger.info(f"User logged out: {user.email}")
