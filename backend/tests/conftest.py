import dataclasses

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.engine as engine_module
import backend.main as main
import database.db as db
from backend.config import EngineSettings
from backend.engine import build_engine, set_engine
from backend.security import issue_session_token
from backend.services.notifications import MemoryNotificationSink
from database.memory import MemoryRecordStore

START = 1_700_000_000.0


class ManualClock:
    def __init__(self, start: float = START):
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture()
def clock():
    return ManualClock()


@pytest.fixture()
def settings():
    return EngineSettings(
        wifi_ssid_allowlist=[],
        store_retry_initial_delay_seconds=0.0,
        store_retry_max_delay_seconds=0.0,
    )


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return MemoryRecordStore()
    return db.SqliteRecordStore(tmp_path / "store_test.db")


@pytest.fixture()
def make_engine(clock, settings):
    def _make(store=None, **overrides):
        engine_settings = dataclasses.replace(settings, **overrides) if overrides else settings
        return build_engine(
            store or MemoryRecordStore(),
            clock=clock,
            settings=engine_settings,
            sink=MemoryNotificationSink(),
        )

    return _make


@pytest.fixture()
def engine(make_engine):
    return make_engine()


@pytest.fixture()
def open_session(clock):
    def _open(engine, teacher_id="teacher-1", **kwargs):
        return engine.sessions.create_session(
            teacher_id,
            "CS101",
            clock.now(),
            clock.now() + 3600,
            **kwargs,
        )

    return _open


@pytest.fixture()
def client(tmp_path, monkeypatch, clock, settings):
    test_db = tmp_path / "qrchain_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)
    monkeypatch.setattr(config, "IDENTITY_SECRET", "test-identity-secret")
    monkeypatch.setattr(engine_module, "SWEEP_ENABLED", False)

    set_engine(build_engine(db.SqliteRecordStore(test_db), clock=clock, settings=settings))
    with TestClient(main.app) as c:
        yield c
    set_engine(None)


@pytest.fixture()
def headers_for():
    def _headers(user_id: str, role: str = "student") -> dict[str, str]:
        token, _ = issue_session_token(user_id, role)
        return {"Authorization": f"Bearer {token}", "X-Device-Fingerprint": f"device-{user_id}"}

    return _headers
