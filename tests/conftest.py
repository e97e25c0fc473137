"""Shared fixtures.

Environment is pinned before anything under `app` is imported: settings are
read once at import time.
"""

import base64
import os
import tempfile

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["APP_ENV"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["MASTER_KEY"] = base64.b64encode(bytes(range(32))).decode("ascii")
os.environ["SECRET_PEPPER"] = "test-pepper"
# cheap argon2 so the suite stays fast; production defaults are in config
os.environ["ARGON2_TIME_COST"] = "1"
os.environ["ARGON2_MEMORY_COST"] = "1024"
os.environ["ARGON2_PARALLELISM"] = "1"
os.environ["STORAGE_ROOT"] = tempfile.mkdtemp(prefix="flyfile-test-")
os.environ["PUBLIC_BASE_URL"] = "http://testserver"

import httpx  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.core.config import get_settings  # noqa: E402
from app.core.security import create_access_token  # noqa: E402
from app.db.base import Base  # noqa: E402
from app.db.session import SessionLocal, engine  # noqa: E402
from app.main import app  # noqa: E402
from app.models.user import User  # noqa: E402
from app.security.rate_limiter import get_rate_limiter  # noqa: E402
from app.services import storage, webhooks  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture(autouse=True)
def _reset_rate_limits():
    get_rate_limiter().reset()
    yield
    get_rate_limiter().reset()


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture(autouse=True)
def store(tmp_path):
    local = storage.build_store(get_settings())
    local.root = tmp_path / "objects"
    storage.set_store(local)
    yield local
    storage.set_store(None)


class RecordingTransport(httpx.MockTransport):
    """MockTransport that keeps every request and answers with `status`."""

    def __init__(self, status: int = 200):
        self.status = status
        self.requests: list[httpx.Request] = []
        self.error: Exception | None = None
        super().__init__(self._handle)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        request.read()
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return httpx.Response(self.status, json={"ok": self.status < 400})


@pytest.fixture
def transport():
    t = RecordingTransport()
    webhooks.set_transport(t)
    yield t
    webhooks.set_transport(None)


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(plan: str = "free") -> User:
        counter["n"] += 1
        user = User(email=f"user{counter['n']}@example.com", plan=plan)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_access_token(subject=str(user.id))}"}

    return _headers
