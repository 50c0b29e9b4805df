from __future__ import annotations

import os
import tempfile
from uuid import uuid4

# Stores create their tables on import, so point them at a scratch dir first.
_SCRATCH = tempfile.mkdtemp(prefix="constat-tests-")
os.environ["CONSTAT_DATA_DIR"] = os.path.join(_SCRATCH, "data")
os.environ["ARTIFACTS_DIR"] = os.path.join(_SCRATCH, "artifacts")
os.environ["APP_ENV"] = "test"
os.environ["JWT_SECRET"] = "test-secret"
os.environ.pop("DB_HOST", None)
os.environ.pop("CONSTAT_BUCKET", None)

import pytest
from fastapi.testclient import TestClient

from constat import building_store, db, material_store, mission_store, storage, user_store
from constat.main import app

PASSWORD = "secret123"


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    monkeypatch.setattr(db, "SQLITE_PATH", tmp_path / "constat.db")
    monkeypatch.setattr(storage, "ARTIFACTS_DIR", tmp_path / "artifacts")
    monkeypatch.setattr(storage, "S3_BUCKET", "")
    for store in (user_store, building_store, mission_store, material_store):
        store.init_db()
    return tmp_path


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def make_user():
    def _make(role="constateur", *, email=None, created_by=None, is_active=True, full_name=None):
        return user_store.create_user(
            email=email or f"{role}-{uuid4().hex[:8]}@example.com",
            password=PASSWORD,
            full_name=full_name or f"{role.replace('_', ' ').title()} Test",
            role=role,
            created_by=created_by,
            is_active=is_active,
        )

    return _make


@pytest.fixture
def login(client):
    def _login(user, password=PASSWORD):
        response = client.post("/api/auth/login", json={"email": user["email"], "password": password})
        assert response.status_code == 200, response.text
        return {"Authorization": f"Bearer {response.json()['access_token']}"}

    return _login


@pytest.fixture
def team(make_user):
    """A small organisation: admins, an expert with its constateur and an outsider."""
    super_admin = make_user("super_admin", email="root@example.com")
    admin = make_user("admin", email="admin@example.com", created_by=super_admin["id"])
    expert = make_user("expert", email="expert@example.com", created_by=admin["id"])
    constateur = make_user("constateur", email="field@example.com", created_by=expert["id"])
    other_expert = make_user("expert", email="other-expert@example.com", created_by=admin["id"])
    other_constateur = make_user("constateur", email="other-field@example.com", created_by=other_expert["id"])
    return {
        "super_admin": super_admin,
        "admin": admin,
        "expert": expert,
        "constateur": constateur,
        "other_expert": other_expert,
        "other_constateur": other_constateur,
    }
