"""
Pytest configuration and fixtures for DocAI Backend tests.
"""

import os
import shutil
import tempfile
import time
from pathlib import Path
from typing import List, Optional

import pytest
from fastapi.testclient import TestClient

# Keep the module-level app's database and uploads out of the working tree
_SESSION_DIR = tempfile.mkdtemp(prefix="docai_test_")
os.environ["DOCAI_DATABASE"] = os.path.join(_SESSION_DIR, "module.db")
os.environ["DOCAI_UPLOAD_DIR"] = os.path.join(_SESSION_DIR, "uploads")
os.environ["GEMINI_API_KEY"] = ""

from docai_backend.errors import AuthError, ProviderError
from docai_backend.main import create_app
from docai_backend.models import JobStatus
from docai_backend.providers import TextProvider

TEXT_CONTENT = (
    "Photosynthesis converts light energy into chemical energy in plants. "
    "Chlorophyll absorbs mostly red and blue light from the sun. "
    "Oxygen is released as a by-product of splitting water molecules.\f"
    "The Calvin cycle fixes carbon dioxide into sugars inside the chloroplast. "
    "Plants store the resulting glucose as starch for later use."
)


class FakeProvider(TextProvider):
    """Returns canned responses in order; raises ProviderError when out of them or when failing."""

    name = "Fake AI"

    def __init__(self, responses: Optional[List[str]] = None, configured: bool = True, fail: bool = False):
        self.responses = list(responses or [])
        self._configured = configured
        self.fail = fail
        self.prompts: List[str] = []

    @property
    def configured(self) -> bool:
        return self._configured

    def generate(self, prompt, image_base64=None, mime_type="image/jpeg"):
        self.prompts.append(prompt)
        if not self._configured:
            raise ProviderError("AI service not configured")
        if self.fail or not self.responses:
            raise ProviderError("AI service request failed")
        return self.responses.pop(0)


def fake_firebase_verifier(id_token: str):
    """Accepts tokens of the form ``valid:<email>``."""
    if not id_token.startswith("valid:"):
        raise AuthError("Invalid Firebase token")
    email = id_token.split(":", 1)[1]
    return {"uid": f"uid-{email}", "email": email, "name": "Federated User"}


@pytest.fixture(scope="session", autouse=True)
def session_dir():
    """Remove the session scratch directory after all tests."""
    yield Path(_SESSION_DIR)
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


@pytest.fixture
def provider():
    """An unconfigured provider: every generation falls back."""
    return FakeProvider(configured=False)


@pytest.fixture
def make_client(tmp_path):
    """Factory building a client around a fresh app with its own database."""
    clients = []

    def _make(provider: Optional[TextProvider] = None, **overrides):
        settings = {
            "storage": {
                "database": str(tmp_path / "docai.db"),
                "upload_dir": str(tmp_path / "uploads"),
            },
            "pipeline": {"time_scale": 0.0},
            "rate_limit": {"enabled": False},
            "auth": {"password_iterations": 1000},
        }
        for section, values in overrides.items():
            settings.setdefault(section, {}).update(values)

        app = create_app(
            overrides=settings,
            provider=provider or FakeProvider(configured=False),
            firebase_verifier=fake_firebase_verifier,
        )
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client, provider):
    """Create a test client for a fresh app."""
    return make_client(provider)


@pytest.fixture
def login(client):
    """Register and log in a user; returns authorization headers."""

    def _login(email: str = "educator@example.com", password: str = "correct-horse", name: str = "Test Educator"):
        response = client.post("/api/auth/register", json={"name": name, "email": email, "password": password})
        assert response.status_code == 201
        response = client.post("/api/auth/login", json={"email": email, "password": password})
        assert response.status_code == 200
        return {"Authorization": f"Bearer {response.json()['tokens']['accessToken']}"}

    return _login


@pytest.fixture
def auth_headers(login):
    return login()


@pytest.fixture
def upload(client):
    """Upload a document for the given headers; returns the document JSON."""

    def _upload(headers, filename: str = "notes.txt", content: bytes = TEXT_CONTENT.encode(), **form):
        response = client.post(
            "/api/documents",
            files={"file": (filename, content, "application/octet-stream")},
            data=form,
            headers=headers,
        )
        assert response.status_code == 201, response.text
        return response.json()["document"]

    return _upload


@pytest.fixture
def wait_for_job(client):
    """Poll a job until it reaches a terminal status; returns the job JSON."""

    def _wait(headers, job_id: str, timeout: float = 10.0):
        deadline = time.monotonic() + timeout
        while True:
            response = client.get(f"/api/ai/status/{job_id}", headers=headers)
            assert response.status_code == 200
            job = response.json()["job"]
            if JobStatus(job["status"]).is_terminal:
                return job
            if time.monotonic() > deadline:
                raise AssertionError(f"Job {job_id} still {job['status']} after {timeout}s")
            time.sleep(0.02)

    return _wait
