import hashlib
import hmac
import secrets
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from typing import Optional
from uuid import uuid4

from .database import Database, deserialize_datetime, serialize_datetime, utcnow
from .errors import ConflictError
from .models import AuthProvider, UserRole, UserView


@dataclass
class UserRecord:
    id: str
    name: str
    email: str
    role: UserRole
    institution: str
    auth_provider: AuthProvider
    is_active: bool
    created_at: datetime
    password_hash: Optional[str] = None
    external_id: Optional[str] = None

    def to_view(self) -> UserView:
        return UserView(
            id=self.id,
            name=self.name,
            email=self.email,
            role=self.role,
            institution=self.institution,
            auth_provider=self.auth_provider,
        )


def _row_to_user(row: sqlite3.Row) -> UserRecord:
    return UserRecord(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        role=UserRole(row["role"]),
        institution=row["institution"],
        auth_provider=AuthProvider(row["auth_provider"]),
        is_active=bool(row["is_active"]),
        created_at=deserialize_datetime(row["created_at"]),
        password_hash=row["password_hash"],
        external_id=row["external_id"],
    )


class PasswordHasher:
    """PBKDF2-SHA256 hashes stored as ``pbkdf2_sha256$iterations$salt$digest``."""

    algorithm = "pbkdf2_sha256"

    def __init__(self, iterations: int = 120_000):
        self.iterations = iterations

    def hash(self, password: str) -> str:
        salt = secrets.token_hex(16)
        digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), self.iterations).hex()
        return f"{self.algorithm}${self.iterations}${salt}${digest}"

    def verify(self, password: str, encoded: Optional[str]) -> bool:
        if not encoded:
            return False
        try:
            algorithm, iterations, salt, digest = encoded.split("$")
        except ValueError:
            return False
        if algorithm != self.algorithm:
            return False
        candidate = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), int(iterations)).hex()
        return hmac.compare_digest(candidate, digest)


class UserStore:
    """
    Users and their refresh-token sessions, kept in the shared SQLite database.
    """

    def __init__(self, database: Database):
        self.database = database

    def create_user(
        self,
        name: str,
        email: str,
        institution: str,
        auth_provider: AuthProvider,
        password_hash: Optional[str] = None,
        external_id: Optional[str] = None,
        role: UserRole = UserRole.USER,
    ) -> UserRecord:
        """
        Insert a user.

        Raises:
            ConflictError: If the email is already registered
        """
        now = utcnow()
        record = UserRecord(
            id=str(uuid4()),
            name=name,
            email=email,
            role=role,
            institution=institution,
            auth_provider=auth_provider,
            is_active=True,
            created_at=now,
            password_hash=password_hash,
            external_id=external_id,
        )
        try:
            with self.database.connection() as conn:
                conn.execute(
                    """
                    INSERT INTO users (
                        id, name, email, password_hash, role, institution,
                        auth_provider, external_id, is_active, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 1, ?, ?)
                    """,
                    (
                        record.id,
                        name,
                        email,
                        password_hash,
                        role.value,
                        institution,
                        auth_provider.value,
                        external_id,
                        serialize_datetime(now),
                        serialize_datetime(now),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ConflictError("User with this email already exists") from exc
        return record

    def get_by_email(self, email: str) -> Optional[UserRecord]:
        with self.database.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return _row_to_user(row) if row else None

    def get_by_id(self, user_id: str) -> Optional[UserRecord]:
        with self.database.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _row_to_user(row) if row else None

    def update_password(self, user_id: str, password_hash: str) -> None:
        with self.database.connection() as conn:
            conn.execute(
                "UPDATE users SET password_hash = ?, updated_at = ? WHERE id = ?",
                (password_hash, serialize_datetime(utcnow()), user_id),
            )

    # ---------- Sessions ----------
    def save_session(self, user_id: str, refresh_token: str, expires_at: datetime) -> None:
        """Store the user's refresh token, replacing any earlier session."""
        with self.database.connection() as conn:
            conn.execute(
                """
                INSERT INTO sessions (user_id, refresh_token, expires_at) VALUES (?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    refresh_token = excluded.refresh_token,
                    expires_at = excluded.expires_at
                """,
                (user_id, refresh_token, serialize_datetime(expires_at)),
            )

    def session_matches(self, user_id: str, refresh_token: str) -> bool:
        """True if ``refresh_token`` is the user's current, unexpired session."""
        with self.database.connection() as conn:
            row = conn.execute(
                "SELECT refresh_token, expires_at FROM sessions WHERE user_id = ?",
                (user_id,),
            ).fetchone()
        if not row:
            return False
        if deserialize_datetime(row["expires_at"]) <= utcnow():
            self.delete_session(user_id)
            return False
        return hmac.compare_digest(row["refresh_token"], refresh_token)

    def delete_session(self, user_id: str) -> bool:
        with self.database.connection() as conn:
            cursor = conn.execute("DELETE FROM sessions WHERE user_id = ?", (user_id,))
            return cursor.rowcount > 0
