"""
Composition root: one Engine wires the record store, clock, settings and
notification sink into the services. Routers only talk to `get_engine()`.
"""
import threading
from dataclasses import dataclass

from backend.config import STORE_BACKEND, SWEEP_ENABLED, EngineSettings
from backend.models import AttendanceRecord, Chain, ChainPhase
from backend.services.attendance import AttendanceService
from backend.services.audit import ScanAuditLog
from backend.services.chains import ChainService
from backend.services.clock import Clock, SystemClock
from backend.services.notifications import MemoryNotificationSink, NotificationSink
from backend.services.scans import ScanService
from backend.services.sessions import SessionService
from backend.services.sweeper import TokenSweeper
from backend.services.tokens import TokenService
from backend.services.validation import AntiCheatGate
from database.db import SqliteRecordStore
from database.memory import MemoryRecordStore
from database.store import (
    TABLE_ATTENDANCE,
    TABLE_CHAINS,
    TABLE_SCAN_LOGS,
    TABLE_SESSIONS,
    TABLE_TOKENS,
    RecordStore,
)


@dataclass
class Engine:
    store: RecordStore
    clock: Clock
    settings: EngineSettings
    sink: NotificationSink
    audit: ScanAuditLog
    tokens: TokenService
    gate: AntiCheatGate
    attendance: AttendanceService
    chains: ChainService
    sessions: SessionService
    scans: ScanService
    sweeper: TokenSweeper

    def seed_chains(self, session_id: str, teacher_id: str, phase: ChainPhase, count: int) -> list[Chain]:
        session = self.sessions.require_active(session_id)
        self.sessions.require_owner(session, teacher_id)
        return self.chains.seed(session_id, phase, count)

    def reseed_chains(
        self,
        session_id: str,
        teacher_id: str,
        phase: ChainPhase,
        count: int,
        chain_ids: list[str] | None = None,
    ) -> list[Chain]:
        session = self.sessions.require_active(session_id)
        self.sessions.require_owner(session, teacher_id)
        return self.chains.reseed(session_id, phase, count, chain_ids)

    def detect_stalls(self, session_id: str, teacher_id: str, phase: ChainPhase) -> list[Chain]:
        session = self.sessions.require_active(session_id)
        self.sessions.require_owner(session, teacher_id)
        return self.chains.detect_stalls(session_id, phase)

    def set_chain_holder(self, session_id: str, teacher_id: str, chain_id: str, student_id: str) -> Chain:
        session = self.sessions.require_active(session_id)
        self.sessions.require_owner(session, teacher_id)
        return self.chains.set_holder(session_id, chain_id, student_id)

    def close_phase(self, session_id: str, teacher_id: str, phase: ChainPhase) -> int:
        session = self.sessions.get_session(session_id)
        self.sessions.require_owner(session, teacher_id)
        return self.chains.close_chains(session_id, phase)

    def attendance_for(self, session_id: str, teacher_id: str) -> list[AttendanceRecord]:
        session = self.sessions.get_session(session_id)
        self.sessions.require_owner(session, teacher_id)
        return sorted(self.attendance.list_records(session_id), key=lambda r: r.student_id)


def build_store(backend: str | None = None) -> RecordStore:
    if (backend or STORE_BACKEND) == "memory":
        return MemoryRecordStore()
    return SqliteRecordStore()


def build_engine(
    store: RecordStore | None = None,
    *,
    clock: Clock | None = None,
    settings: EngineSettings | None = None,
    sink: NotificationSink | None = None,
) -> Engine:
    store = store or build_store()
    clock = clock or SystemClock()
    settings = settings or EngineSettings()
    sink = sink or MemoryNotificationSink()

    audit = ScanAuditLog(store.table(TABLE_SCAN_LOGS), clock)
    tokens = TokenService(store.table(TABLE_TOKENS), clock, settings)
    gate = AntiCheatGate(settings, clock, audit)
    attendance = AttendanceService(store.table(TABLE_ATTENDANCE), clock, sink)
    chains = ChainService(store.table(TABLE_CHAINS), tokens, attendance, clock, settings, sink)
    sessions = SessionService(store.table(TABLE_SESSIONS), tokens, chains, attendance, clock, settings, sink)
    scans = ScanService(sessions, tokens, chains, attendance, gate, audit, clock)
    sweeper = TokenSweeper(sessions, tokens, chains, settings.sweep_interval_seconds)
    return Engine(
        store=store,
        clock=clock,
        settings=settings,
        sink=sink,
        audit=audit,
        tokens=tokens,
        gate=gate,
        attendance=attendance,
        chains=chains,
        sessions=sessions,
        scans=scans,
        sweeper=sweeper,
    )


_ENGINE: Engine | None = None
_ENGINE_LOCK = threading.Lock()


def get_engine() -> Engine:
    global _ENGINE
    with _ENGINE_LOCK:
        if _ENGINE is None:
            _ENGINE = build_engine()
        return _ENGINE


def set_engine(engine: Engine | None) -> None:
    global _ENGINE
    with _ENGINE_LOCK:
        previous = _ENGINE
        _ENGINE = engine
    if previous is not None and previous is not engine:
        previous.sweeper.stop()


def start_background(engine: Engine) -> bool:
    if not SWEEP_ENABLED:
        return False
    engine.sweeper.start()
    return True
