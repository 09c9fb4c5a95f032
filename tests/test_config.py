"""
Tests for settings loading, step resolution, rate limiting, storage and small helpers.
"""

from datetime import timedelta

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from omegaconf.errors import ConfigKeyError, ReadonlyConfigError

from docai_backend.auth import TokenService
from docai_backend.configuration import load_settings
from docai_backend.database import utcnow
from docai_backend.errors import AuthError, ConfigurationError
from docai_backend.middleware import RateLimiter, RateLimitMiddleware
from docai_backend.models import AuthProvider, DocumentType, JobKind, UserRole
from docai_backend.s3_service import S3Service
from docai_backend.steps import FINALIZE, build_steps, dedupe_features
from docai_backend.user_store import PasswordHasher, UserRecord
from docai_backend.utils import document_type_for, sanitize_label, stored_filename


class TestSettings:
    def test_defaults(self):
        settings = load_settings(environ={})
        assert settings.jobs.max_workers == 4
        assert list(settings.pipeline.default_features) == ["ocr"]
        assert settings.provider.timeout == 30.0

    def test_environment_overrides(self):
        settings = load_settings(environ={"GEMINI_API_KEY": "abc", "DOCAI_MAX_WORKERS": "8"})
        assert settings.provider.api_key == "abc"
        assert int(settings.jobs.max_workers) == 8

    def test_explicit_overrides_win(self):
        settings = load_settings({"provider": {"api_key": "explicit"}}, environ={"GEMINI_API_KEY": "from-env"})
        assert settings.provider.api_key == "explicit"

    def test_unknown_keys_rejected(self):
        with pytest.raises(ConfigKeyError):
            load_settings({"storage": {"bucket_of_holding": "x"}}, environ={})

    def test_step_weights_must_sum_to_100(self):
        steps = [
            {"name": "OCR Processing", "feature": "ocr", "progress": 50, "duration": 1.0},
            {"name": "Final Processing", "feature": "finalize", "progress": 10, "duration": 0.7},
        ]
        with pytest.raises(ConfigurationError, match="sum to 60"):
            load_settings({"pipeline": {"steps": {"process": steps}}}, environ={})

    def test_settings_are_read_only(self):
        settings = load_settings(environ={})
        with pytest.raises(ReadonlyConfigError):
            settings.jobs.max_workers = 1


class TestSteps:
    @pytest.fixture
    def settings(self):
        return load_settings({"pipeline": {"time_scale": 0.0}}, environ={})

    def test_dedupe_keeps_first_occurrence(self):
        assert dedupe_features(["hwr", "ocr", "hwr", "ocr"]) == ["hwr", "ocr"]

    def test_process_steps_follow_request_order(self, settings):
        steps = build_steps(settings, JobKind.PROCESS, ["text_extraction", "ocr"])
        assert [step.feature for step in steps] == ["text_extraction", "ocr", FINALIZE]
        assert [step.progress_delta for step in steps] == [20, 30, 10]
        assert all(step.duration == 0 for step in steps)

    def test_finalize_always_last(self, settings):
        steps = build_steps(settings, JobKind.PROCESS, [FINALIZE, "hwr"])
        assert [step.feature for step in steps] == ["hwr", FINALIZE]

    def test_default_features(self, settings):
        steps = build_steps(settings, JobKind.PROCESS, None)
        assert [step.feature for step in steps] == ["ocr", FINALIZE]

    def test_question_generation_runs_whole_table(self, settings):
        steps = build_steps(settings, JobKind.QUESTION_GENERATION, ["ignored"])
        assert [step.feature for step in steps] == ["load_content", "generate_questions", "store_questions"]
        assert sum(step.progress_delta for step in steps) == 100

    def test_unknown_feature(self, settings):
        with pytest.raises(ValueError, match="teleport"):
            build_steps(settings, JobKind.PROCESS, ["teleport"])


class TestRateLimit:
    def _app(self, api_limit, auth_limit):
        app = FastAPI()
        app.add_middleware(
            RateLimitMiddleware,
            api_limiter=RateLimiter(api_limit, 60),
            auth_limiter=RateLimiter(auth_limit, 60),
        )

        @app.get("/api/things")
        def things():
            return {"ok": True}

        @app.post("/api/auth/login")
        def login():
            return {"ok": True}

        @app.get("/health")
        def health():
            return {"ok": True}

        return TestClient(app)

    def test_limiter_window(self):
        limiter = RateLimiter(2, window_seconds=60)
        assert limiter.is_allowed("a")
        assert limiter.is_allowed("a")
        assert not limiter.is_allowed("a")
        assert limiter.is_allowed("b")

    def test_expired_windows_are_evicted(self):
        now = [1000.0]
        limiter = RateLimiter(1, window_seconds=60, clock=lambda: now[0])
        for client in ("a", "b", "c"):
            assert limiter.is_allowed(client)
        assert len(limiter.requests) == 3

        now[0] += 30
        assert limiter.cleanup() == 0

        now[0] += 61
        assert limiter.is_allowed("d")
        assert set(limiter.requests) == {"d"}
        assert limiter.is_allowed("a") is True

    def test_auth_routes_have_stricter_limit(self):
        client = self._app(api_limit=5, auth_limit=2)
        assert client.post("/api/auth/login").status_code == 200
        assert client.post("/api/auth/login").status_code == 200

        response = client.post("/api/auth/login")
        assert response.status_code == 429
        assert response.json()["success"] is False

        assert client.get("/api/things").status_code == 200

    def test_health_is_not_limited(self):
        client = self._app(api_limit=1, auth_limit=1)
        for _ in range(3):
            assert client.get("/health").status_code == 200


class TestTokensAndPasswords:
    @pytest.fixture
    def user(self):
        return UserRecord(
            id="user-1",
            name="Token",
            email="token@example.com",
            role=UserRole.USER,
            institution="Test",
            auth_provider=AuthProvider.LOCAL,
            is_active=True,
            created_at=utcnow(),
        )

    def test_password_hash_roundtrip(self):
        hasher = PasswordHasher(iterations=1000)
        encoded = hasher.hash("s3cret-pass")
        assert encoded.startswith("pbkdf2_sha256$1000$")
        assert hasher.verify("s3cret-pass", encoded)
        assert not hasher.verify("wrong", encoded)
        assert not hasher.verify("s3cret-pass", None)

    def test_access_and_refresh_tokens_are_not_interchangeable(self, user):
        tokens = TokenService("access-secret", "refresh-secret")
        access = tokens.issue_access_token(user)
        refresh, _ = tokens.issue_refresh_token(user)

        assert tokens.decode_access_token(access)["sub"] == "user-1"
        assert tokens.decode_refresh_token(refresh)["sub"] == "user-1"
        with pytest.raises(AuthError):
            tokens.decode_access_token(refresh)
        with pytest.raises(AuthError):
            tokens.decode_refresh_token(access)

    def test_expired_token(self, user):
        tokens = TokenService("access-secret", "refresh-secret", access_ttl=timedelta(seconds=-1))
        with pytest.raises(AuthError, match="expired"):
            tokens.decode_access_token(tokens.issue_access_token(user))


class TestUtils:
    def test_document_types(self):
        assert document_type_for("Report.PDF") == DocumentType.PDF
        assert document_type_for("photo.jpeg") == DocumentType.IMAGE
        assert document_type_for("slides.pptx") == DocumentType.POWERPOINT
        assert document_type_for("archive.zip") == DocumentType.OTHER

    def test_stored_filename(self):
        assert stored_filename("abc", "notes.TXT") == "abc.txt"
        assert stored_filename("abc", "README") == "abc"

    def test_sanitize_label(self):
        assert sanitize_label("My Document!", "document") == "my-document"
        assert sanitize_label("@#$", "document") == "document"


class StubS3Client:
    def __init__(self):
        self.calls = []

    def upload_file(self, path, bucket, key):
        self.calls.append(("upload", bucket, key))

    def delete_object(self, Bucket, Key):
        self.calls.append(("delete", Bucket, Key))

    def generate_presigned_url(self, operation, Params, ExpiresIn):
        return f"https://{Params['Bucket']}.example/{Params['Key']}?ttl={ExpiresIn}"


class TestS3Service:
    def test_disabled_without_bucket(self, tmp_path):
        s3 = S3Service("")
        assert not s3.enabled
        assert s3.upload(tmp_path / "x.txt", "key") is False
        assert s3.presigned_url("key") is None

    def test_mirror_and_presign(self, tmp_path):
        client = StubS3Client()
        s3 = S3Service("docs-bucket", prefix="/documents/", client=client)
        key = s3.key_for("user-1", "abc.pdf")

        assert key == "documents/user-1/abc.pdf"
        assert s3.upload(tmp_path / "abc.pdf", key)
        s3.delete(key)
        assert client.calls == [("upload", "docs-bucket", key), ("delete", "docs-bucket", key)]
        assert s3.presigned_url(key, expiration=60) == f"https://docs-bucket.example/{key}?ttl=60"
