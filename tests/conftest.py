import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
import jwt

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dispatch.lifecycle import CallerIdentity
from dispatch.main import create_app
from dispatch.store import store

JWT_SECRET = "jwt_test_secret"
ADMIN_ID = "admin_1"


def issue_token(*, caller_id: str, role: str, secret: str = JWT_SECRET, ttl_minutes: int = 30) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": caller_id,
        "role": role,
        "exp": int((now + timedelta(minutes=ttl_minutes)).timestamp()),
        "iat": int(now.timestamp()),
        "iss": "test-issuer",
        "aud": "test-audience",
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def auth_headers(*, caller_id: str, role: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(caller_id=caller_id, role=role)}"}


class AuthenticatedClient:
    """Attaches an admin bearer token unless the caller passes its own Authorization header."""

    def __init__(self, client: TestClient):
        self._client = client

    def request(self, method: str, url: str, **kwargs):
        headers = dict(kwargs.pop("headers", {}) or {})
        if url.startswith("/api/v1/") and "Authorization" not in headers:
            headers.update(auth_headers(caller_id=ADMIN_ID, role="admin"))
        return self._client.request(method, url, headers=headers, **kwargs)

    def __getattr__(self, name: str):
        return getattr(self._client, name)

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_store(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("JWT_SHARED_SECRET", JWT_SECRET)
    monkeypatch.setenv("JWT_ISSUER", "test-issuer")
    monkeypatch.setenv("JWT_AUDIENCE", "test-audience")
    monkeypatch.setenv("JWT_REQUIRED_CLAIMS", "sub,role,exp")
    monkeypatch.delenv("TASK_STRICT_TRANSITIONS", raising=False)
    monkeypatch.delenv("UPLOAD_MAX_BYTES", raising=False)
    store.reset()
    yield


@pytest.fixture
def client() -> AuthenticatedClient:
    return AuthenticatedClient(TestClient(create_app()))


@pytest.fixture
def admin() -> CallerIdentity:
    return CallerIdentity(id=ADMIN_ID, role="admin")


@pytest.fixture
def two_workers() -> list[dict]:
    return [
        store.upsert_worker(worker_id="w1", name="Wendy", contact_info="wendy@example.com"),
        store.upsert_worker(worker_id="w2", name="Walter", contact_info="walter@example.com"),
    ]
