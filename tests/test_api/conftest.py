"""
Fixtures for HTTP tests.

The app runs its real lifespan against a file-backed SQLite database under
``tmp_path``. ``ac`` is overridden with the app's own engine so the shared
``directory``/``world`` fixtures seed the same database the routes read.
"""
from __future__ import annotations

import time

import jwt
import pytest
from fastapi.testclient import TestClient

from tenant_rbac.main import create_app
from tenant_rbac.settings import get_settings

SECRET = "test-secret-" + "x" * 32


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setenv("RBAC_DB_URL", f"sqlite:///{tmp_path / 'rbac.db'}")
    monkeypatch.setenv("RBAC_IDENTITY_SECRET", SECRET)
    monkeypatch.setenv("RBAC_STORE_TIMEOUT_MS", "2000")
    get_settings.cache_clear()
    with TestClient(create_app()) as test_client:
        yield test_client
    get_settings.cache_clear()


@pytest.fixture
def ac(client):
    return client.app.state.access_control


@pytest.fixture
def bearer():
    def make(user_id: str, tenant_id: str, session_id: str | None = None, secret: str = SECRET) -> dict[str, str]:
        now = int(time.time())
        token = jwt.encode(
            {"sub": user_id, "tid": tenant_id, "sid": session_id or f"s-{user_id}", "exp": now + 300},
            secret,
            algorithm="HS256",
        )
        return {"Authorization": f"Bearer {token}"}

    return make
