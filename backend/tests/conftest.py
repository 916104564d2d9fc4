from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from portal_realtime import Contact, Viewer  # noqa: E402
from portal_store import AppointmentStore, MessageStore, ProfileStore, SQLitePortalDB  # noqa: E402


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "medilink-test.sqlite"
    monkeypatch.setenv("PORTAL_DB_PATH", str(db_path))
    monkeypatch.setenv("ALLOW_ANON", "false")
    monkeypatch.setenv("PORTAL_POLL_INTERVAL_SECONDS", "0.05")
    monkeypatch.delenv("PORTAL_STORAGE_URL", raising=False)
    monkeypatch.delenv("PORTAL_REALTIME_DISABLED", raising=False)

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def client(backend_module):
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> Callable[[str], dict[str, str]]:
    def _make(user_id: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {user_id}"}

    return _make


@pytest.fixture
def db(tmp_path) -> SQLitePortalDB:
    return SQLitePortalDB(str(tmp_path / "portal.sqlite"))


@pytest.fixture
def messages(db) -> MessageStore:
    return MessageStore(db)


@pytest.fixture
def appointments(db) -> AppointmentStore:
    return AppointmentStore(db)


@pytest.fixture
def profiles(db) -> ProfileStore:
    return ProfileStore(db)


@pytest.fixture
def doctor() -> Viewer:
    return Viewer(id="doc-smith", role="doctor", display_name="A. Smith")


@pytest.fixture
def other_doctor() -> Viewer:
    return Viewer(id="doc-jones", role="doctor", display_name="B. Jones")


@pytest.fixture
def patient() -> Viewer:
    return Viewer(id="patient-p", role="patient", display_name="Pat Lee")


@pytest.fixture
def doctor_contact(doctor) -> Contact:
    return Contact(id=doctor.id, name=doctor.display_name, role="General Practitioner")


@pytest.fixture
def patient_contact(patient) -> Contact:
    return Contact(id=patient.id, name=patient.display_name, role="Patient")
