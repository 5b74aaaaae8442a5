import pytest

from backend.errors import Forbidden, InvalidState, NotFound, SessionEnded
from backend.models import (
    ChainPhase,
    ChainState,
    EntryStatus,
    FinalStatus,
    ScanFlow,
    SessionStatus,
    TokenKind,
    TokenStatus,
)
from backend.tests.helpers import metadata_for
from database.memory import MemoryRecordStore
from database.store import StoreUnavailable

TEACHER = "teacher-1"


class FlakyTokenStore:
    """Memory store whose tokens table fails the next conditional put after writing it."""

    def __init__(self):
        self.inner = MemoryRecordStore()
        self.fail_next_consume = False

    def table(self, name):
        table = self.inner.table(name)
        if name != "tokens":
            return table
        store = self

        class _Tokens:
            def put(self, partition, key, record, *, if_version=None):
                version = table.put(partition, key, record, if_version=if_version)
                if store.fail_next_consume and if_version is not None and record.get("status") == "USED":
                    store.fail_next_consume = False
                    raise StoreUnavailable("connection reset after write")
                return version

            def __getattr__(self, attr):
                return getattr(table, attr)

        return _Tokens()


def test_create_session_applies_defaults(engine, open_session, clock):
    session = open_session(engine)
    assert session.status == SessionStatus.ACTIVE
    assert session.late_cutoff_minutes == 15
    assert session.exit_window_minutes == 10
    assert session.owner_transfer is True
    assert session.late_cutoff_at == clock.now() + 15 * 60
    assert engine.sessions.get_session(session.session_id).class_id == "CS101"


def test_create_session_rejects_bad_window(engine, clock):
    with pytest.raises(InvalidState):
        engine.sessions.create_session(TEACHER, "CS101", clock.now(), clock.now())


def test_unknown_session(engine):
    with pytest.raises(NotFound):
        engine.sessions.get_session("nope")


def test_late_entry_requires_cutoff(engine, open_session, clock):
    session = open_session(engine)
    sid = session.session_id
    token = engine.sessions.start_late_entry(sid, TEACHER)
    assert token.kind == TokenKind.LATE_ENTRY
    assert token.expires_at == clock.now() + 60

    early = engine.scans.scan(ScanFlow.LATE_ENTRY, sid, token.token_id, "alice", metadata_for("alice"))
    assert early["outcome"] == "INVALID_STATE"
    assert engine.tokens.get(sid, token.token_id).status == TokenStatus.ACTIVE

    clock.advance(15 * 60)
    current = engine.sessions.current_rotating_token(sid, TokenKind.LATE_ENTRY)
    if current is None:
        current = engine.sessions.rotate(sid, TokenKind.LATE_ENTRY)
    result = engine.scans.scan(ScanFlow.LATE_ENTRY, sid, current.token_id, "alice", metadata_for("alice"))
    assert result["success"] is True
    assert engine.attendance.get(sid, "alice").entry_status == EntryStatus.LATE_ENTRY

    # single use: the screen moves on to a fresh code
    replacement = engine.sessions.current_rotating_token(sid, TokenKind.LATE_ENTRY)
    assert replacement is not None
    assert replacement.token_id != current.token_id
    again = engine.scans.scan(ScanFlow.LATE_ENTRY, sid, current.token_id, "bob", metadata_for("bob"))
    assert again["outcome"] == "ALREADY_USED"


def test_early_leave_flow(engine, open_session):
    session = open_session(engine)
    sid = session.session_id
    engine.attendance.mark_entry(sid, "alice", EntryStatus.PRESENT_ENTRY)
    token = engine.sessions.start_early_leave(sid, TEACHER)

    result = engine.scans.scan(ScanFlow.EARLY_LEAVE, sid, token.token_id, "alice", metadata_for("alice"))
    assert result["success"] is True

    records = engine.sessions.end_session(sid, TEACHER)
    assert [r.final_status for r in records] == [FinalStatus.EARLY_LEAVE]


def test_stop_rotation_revokes_current_token(engine, open_session):
    session = open_session(engine)
    sid = session.session_id
    token = engine.sessions.start_early_leave(sid, TEACHER)

    stopped = engine.sessions.stop_early_leave(sid, TEACHER)
    assert stopped.early_leave_active is False
    assert stopped.current_early_token_id is None
    assert engine.tokens.get(sid, token.token_id).status == TokenStatus.REVOKED
    assert engine.sessions.current_rotating_token(sid, TokenKind.EARLY_LEAVE) is None


def test_rotation_tick_replaces_expired_tokens(engine, open_session, clock):
    session = open_session(engine)
    sid = session.session_id
    first = engine.sessions.start_late_entry(sid, TEACHER)

    assert engine.sessions.rotate_tokens(sid) == 0
    clock.advance(61)
    assert engine.sessions.rotate_tokens(sid) == 1

    current = engine.sessions.current_rotating_token(sid, TokenKind.LATE_ENTRY)
    assert current.token_id != first.token_id
    events = engine.sink.events(session_id=sid, event_type="rotatingTokenUpdate")
    assert events[-1]["payload"]["token_id"] == current.token_id


def test_rotation_requires_owner(engine, open_session):
    session = open_session(engine)
    with pytest.raises(Forbidden):
        engine.sessions.start_late_entry(session.session_id, "someone-else")


def test_scanning_own_chain_token_is_rejected(engine, open_session):
    session = open_session(engine)
    sid = session.session_id
    for student_id in ("alice", "bob"):
        engine.sessions.join_session(sid, student_id)
    chain = engine.chains.seed(sid, ChainPhase.ENTRY, 1)[0]

    result = engine.scans.scan(ScanFlow.CHAIN, sid, chain.current_token_id, chain.last_holder, metadata_for("x"))
    assert result["outcome"] == "INVALID_TOKEN"
    assert engine.tokens.get(sid, chain.current_token_id).status == TokenStatus.ACTIVE


def test_flow_must_match_token_kind(engine, open_session):
    session = open_session(engine)
    sid = session.session_id
    token = engine.sessions.start_early_leave(sid, TEACHER)

    result = engine.scans.scan(ScanFlow.CHAIN, sid, token.token_id, "alice", metadata_for("alice"))
    assert result["outcome"] == "INVALID_TOKEN"
    assert engine.tokens.get(sid, token.token_id).status == TokenStatus.ACTIVE


def test_scan_outcomes_are_audited(engine, open_session):
    session = open_session(engine)
    sid = session.session_id
    engine.scans.scan(ScanFlow.CHAIN, sid, "missing-token", "alice", metadata_for("alice"))

    rows = engine.audit.list_scans(sid)
    assert [r["stage"] for r in rows] == ["CONSUME", "GATE"]
    assert rows[0]["result"] == "NOT_FOUND"
    assert rows[1]["result"] == "PASSED"


def test_rate_limited_scan_never_touches_token(make_engine, open_session):
    engine = make_engine(device_rate_limit=1)
    session = open_session(engine)
    sid = session.session_id
    token = engine.sessions.start_early_leave(sid, TEACHER)
    engine.scans.scan(ScanFlow.EARLY_LEAVE, sid, "missing", "alice", metadata_for("alice"))

    result = engine.scans.scan(ScanFlow.EARLY_LEAVE, sid, token.token_id, "alice", metadata_for("alice"))
    assert result["outcome"] == "RATE_LIMITED"
    assert result["retry_after_seconds"] >= 1
    assert engine.tokens.get(sid, token.token_id).status == TokenStatus.ACTIVE


def test_store_fault_after_consume_still_succeeds(make_engine, open_session):
    store = FlakyTokenStore()
    engine = make_engine(store)
    session = open_session(engine)
    sid = session.session_id
    token = engine.sessions.start_early_leave(sid, TEACHER)

    store.fail_next_consume = True
    result = engine.scans.scan(ScanFlow.EARLY_LEAVE, sid, token.token_id, "alice", metadata_for("alice"))
    assert result["success"] is True
    assert engine.attendance.get(sid, "alice").early_leave_at is not None


def test_end_session_finalizes_everything(engine, open_session):
    session = open_session(engine)
    sid = session.session_id
    for student_id in ("alice", "bob", "carol"):
        engine.sessions.join_session(sid, student_id)
    engine.attendance.mark_entry(sid, "alice", EntryStatus.PRESENT_ENTRY)
    engine.attendance.mark_exit_verified(sid, "alice")
    chain = engine.chains.seed(sid, ChainPhase.ENTRY, 1)[0]
    late = engine.sessions.start_late_entry(sid, TEACHER)

    with pytest.raises(Forbidden):
        engine.sessions.end_session(sid, "someone-else")

    records = {r.student_id: r.final_status for r in engine.sessions.end_session(sid, TEACHER)}
    assert records == {
        "alice": FinalStatus.PRESENT,
        "bob": FinalStatus.ABSENT,
        "carol": FinalStatus.ABSENT,
    }
    ended = engine.sessions.get_session(sid)
    assert ended.status == SessionStatus.ENDED
    assert ended.late_entry_active is False
    assert engine.chains.get_chain(sid, chain.chain_id).state == ChainState.COMPLETED
    assert engine.tokens.get(sid, late.token_id).status == TokenStatus.REVOKED
    assert engine.tokens.list_tokens(sid, status=TokenStatus.ACTIVE) == []
    assert engine.sink.events(session_id=sid, event_type="sessionEnded")

    # ending twice is harmless
    again = {r.student_id: r.final_status for r in engine.sessions.end_session(sid, TEACHER)}
    assert again == records


def test_teacher_can_mark_a_student_exit(engine, open_session, clock):
    session = open_session(engine)
    sid = session.session_id
    engine.sessions.join_session(sid, "alice")
    engine.attendance.mark_entry(sid, "alice", EntryStatus.LATE_ENTRY)
    clock.advance(1800)

    record = engine.sessions.mark_student_exit(sid, TEACHER, "alice")
    assert record.exit_verified is True
    assert record.exit_verified_at == clock.now()

    with pytest.raises(NotFound):
        engine.sessions.mark_student_exit(sid, TEACHER, "stranger")
    with pytest.raises(Forbidden):
        engine.sessions.mark_student_exit(sid, "someone-else", "alice")

    records = {r.student_id: r.final_status for r in engine.sessions.end_session(sid, TEACHER)}
    assert records == {"alice": FinalStatus.LATE}
    with pytest.raises(SessionEnded):
        engine.sessions.mark_student_exit(sid, TEACHER, "alice")


def test_ended_session_rejects_joins_and_scans(engine, open_session):
    session = open_session(engine)
    sid = session.session_id
    token = engine.sessions.start_early_leave(sid, TEACHER)
    engine.sessions.end_session(sid, TEACHER)

    with pytest.raises(SessionEnded):
        engine.sessions.join_session(sid, "late-comer")
    result = engine.scans.scan(ScanFlow.EARLY_LEAVE, sid, token.token_id, "alice", metadata_for("alice"))
    assert result["outcome"] == "INVALID_STATE"


def test_sweeper_pass(engine, open_session, clock):
    session = open_session(engine)
    sid = session.session_id
    for student_id in ("alice", "bob", "carol"):
        engine.sessions.join_session(sid, student_id)
    engine.chains.seed(sid, ChainPhase.ENTRY, 2)
    engine.sessions.start_late_entry(sid, TEACHER)

    clock.advance(95)
    totals = engine.sweeper.run_once()
    assert totals["sessions"] == 1
    # two chain tokens plus the late code
    assert totals["expired"] == 3
    assert totals["rotated"] == 1
    assert totals["stalled"] == 2

    again = engine.sweeper.run_once()
    assert again["expired"] == 0
    assert again["stalled"] == 0


def test_sweeper_is_single_flight(engine):
    engine.sweeper._run_lock.acquire()
    try:
        assert engine.sweeper.run_once() is None
    finally:
        engine.sweeper._run_lock.release()
    assert engine.sweeper.run_once() == {"sessions": 0, "expired": 0, "rotated": 0, "stalled": 0, "failed": 0}


def test_sweeper_thread_starts_and_stops(make_engine):
    engine = make_engine(sweep_interval_seconds=3600)
    engine.sweeper.start()
    assert engine.sweeper.running is True
    engine.sweeper.stop()
    assert engine.sweeper.running is False
