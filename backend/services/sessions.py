import logging
import secrets
from typing import Callable

from backend.config import EngineSettings
from backend.errors import Forbidden, InvalidState, NotFound, SessionEnded
from backend.models import (
    ROTATING_KINDS,
    AttendanceRecord,
    Session,
    SessionConstraints,
    SessionStatus,
    Token,
    TokenKind,
    TokenStatus,
)
from backend.services.attendance import AttendanceService
from backend.services.chains import ChainService
from backend.services.clock import Clock
from backend.services.notifications import (
    EVENT_ROTATING_TOKEN_UPDATE,
    EVENT_SESSION_ENDED,
    NotificationSink,
    publish_safely,
)
from backend.services.tokens import TokenService
from database.store import RecordNotFound, RecordTable, VersionConflict

logger = logging.getLogger(__name__)

# All sessions share one partition; their tokens/chains/attendance are
# partitioned by session id.
SESSION_PARTITION = "SESSION"
SESSION_ID_BYTES = 12
SESSION_UPDATE_MAX_ATTEMPTS = 8

# kind -> (active flag field, current token field)
_ROTATION_FIELDS: dict[TokenKind, tuple[str, str]] = {
    TokenKind.LATE_ENTRY: ("late_entry_active", "current_late_token_id"),
    TokenKind.EARLY_LEAVE: ("early_leave_active", "current_early_token_id"),
}


def _rotation_fields(kind: TokenKind) -> tuple[str, str]:
    if kind not in ROTATING_KINDS:
        raise ValueError(f"{kind.value} is not a rotating token kind")
    return _ROTATION_FIELDS[kind]


class SessionService:
    def __init__(
        self,
        table: RecordTable,
        tokens: TokenService,
        chains: ChainService,
        attendance: AttendanceService,
        clock: Clock,
        settings: EngineSettings,
        sink: NotificationSink | None = None,
    ):
        self.table = table
        self.tokens = tokens
        self.chains = chains
        self.attendance = attendance
        self.clock = clock
        self.settings = settings
        self.sink = sink

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------
    def find_session(self, session_id: str) -> Session | None:
        try:
            record, version = self.table.get(SESSION_PARTITION, session_id)
        except RecordNotFound:
            return None
        return Session.from_record(session_id, record, version)

    def get_session(self, session_id: str) -> Session:
        session = self.find_session(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found.", details={"session_id": session_id})
        return session

    def list_sessions(self, *, status: SessionStatus | None = None, teacher_id: str | None = None) -> list[Session]:
        def _wanted(record: dict) -> bool:
            if status is not None and record.get("status") != status.value:
                return False
            if teacher_id is not None and record.get("teacher_id") != teacher_id:
                return False
            return True

        sessions = [
            Session.from_record(key, record, version)
            for key, record, version in self.table.scan(SESSION_PARTITION, _wanted)
        ]
        sessions.sort(key=lambda s: (s.start_at, s.session_id))
        return sessions

    def require_active(self, session_id: str) -> Session:
        session = self.get_session(session_id)
        if session.status == SessionStatus.ENDED:
            raise SessionEnded(f"Session {session_id} has ended.", details={"session_id": session_id})
        return session

    def require_owner(self, session: Session, teacher_id: str) -> None:
        if session.teacher_id != teacher_id:
            raise Forbidden("Only the session owner can do this.", details={"session_id": session.session_id})

    def _update(self, session_id: str, mutate: Callable[[Session], bool]) -> Session:
        for _ in range(SESSION_UPDATE_MAX_ATTEMPTS):
            session = self.get_session(session_id)
            if not mutate(session):
                return session
            try:
                session.version = self.table.put(
                    SESSION_PARTITION,
                    session_id,
                    session.to_record(),
                    if_version=session.version,
                )
                return session
            except VersionConflict:
                continue
        raise VersionConflict(self.table.name, SESSION_PARTITION, session_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def create_session(
        self,
        teacher_id: str,
        class_id: str,
        start_at: float,
        end_at: float,
        late_cutoff_minutes: int = 15,
        exit_window_minutes: int = 10,
        constraints: SessionConstraints | None = None,
        owner_transfer: bool | None = None,
    ) -> Session:
        if end_at <= start_at:
            raise InvalidState("Session must end after it starts.", details={"start_at": start_at, "end_at": end_at})
        if late_cutoff_minutes < 0 or exit_window_minutes < 0:
            raise InvalidState("Cutoff and exit window must not be negative.")

        session = Session(
            session_id=secrets.token_urlsafe(SESSION_ID_BYTES),
            class_id=class_id.strip(),
            teacher_id=teacher_id,
            start_at=start_at,
            end_at=end_at,
            late_cutoff_minutes=late_cutoff_minutes,
            exit_window_minutes=exit_window_minutes,
            owner_transfer=self.settings.owner_transfer if owner_transfer is None else owner_transfer,
            constraints=constraints,
            created_at=self.clock.now(),
        )
        session.version = self.table.insert(SESSION_PARTITION, session.session_id, session.to_record())
        logger.info("session %s created for class %s by %s", session.session_id, session.class_id, teacher_id)
        return session

    def join_session(self, session_id: str, student_id: str) -> AttendanceRecord:
        self.require_active(session_id)
        return self.attendance.join(session_id, student_id)

    def mark_student_exit(self, session_id: str, teacher_id: str, student_id: str) -> AttendanceRecord:
        """Teacher override: verify a student's exit without an exit-chain scan."""
        session = self.require_active(session_id)
        self.require_owner(session, teacher_id)
        if self.attendance.get(session_id, student_id) is None:
            raise NotFound(f"Student {student_id} has not joined session {session_id}.")
        logger.info("session %s: exit for %s marked by %s", session_id, student_id, teacher_id)
        return self.attendance.mark_exit_verified(session_id, student_id)

    def end_session(self, session_id: str, teacher_id: str) -> list[AttendanceRecord]:
        """
        Close the session and produce the final attendance.

        Safe to call again on an ended session: every step is idempotent and
        final statuses are write-once.
        """
        session = self.get_session(session_id)
        self.require_owner(session, teacher_id)
        now = self.clock.now()

        def _end(s: Session) -> bool:
            if s.status == SessionStatus.ENDED:
                return False
            s.status = SessionStatus.ENDED
            s.ended_at = now
            s.late_entry_active = False
            s.current_late_token_id = None
            s.early_leave_active = False
            s.current_early_token_id = None
            return True

        self._update(session_id, _end)
        closed = self.chains.close_chains(session_id)
        revoked = self.tokens.revoke_active(session_id)
        records = self.attendance.finalize(session_id)
        logger.info(
            "session %s ended: %d chains closed, %d tokens revoked, %d records",
            session_id,
            closed,
            revoked,
            len(records),
        )
        publish_safely(
            self.sink,
            session_id,
            EVENT_SESSION_ENDED,
            {"ended_at": now, "records": len(records)},
        )
        return records

    # ------------------------------------------------------------------
    # Rotating tokens
    # ------------------------------------------------------------------
    def start_rotation(self, session_id: str, teacher_id: str, kind: TokenKind) -> Token:
        active_field, _ = _rotation_fields(kind)
        session = self.require_active(session_id)
        self.require_owner(session, teacher_id)

        def _activate(s: Session) -> bool:
            if getattr(s, active_field):
                return False
            setattr(s, active_field, True)
            return True

        self._update(session_id, _activate)
        token = self.rotate(session_id, kind)
        if token is None:
            raise InvalidState(f"{kind.value} could not be started.", details={"session_id": session_id})
        return token

    def stop_rotation(self, session_id: str, teacher_id: str, kind: TokenKind) -> Session:
        active_field, token_field = _rotation_fields(kind)
        session = self.get_session(session_id)
        self.require_owner(session, teacher_id)
        previous: dict[str, str | None] = {"token_id": None}

        def _deactivate(s: Session) -> bool:
            previous["token_id"] = getattr(s, token_field)
            if not getattr(s, active_field) and previous["token_id"] is None:
                return False
            setattr(s, active_field, False)
            setattr(s, token_field, None)
            return True

        updated = self._update(session_id, _deactivate)
        if previous["token_id"]:
            self.tokens.revoke(session_id, previous["token_id"])
        publish_safely(
            self.sink,
            session_id,
            EVENT_ROTATING_TOKEN_UPDATE,
            {"kind": kind.value, "active": False, "token_id": None},
        )
        return updated

    def start_late_entry(self, session_id: str, teacher_id: str) -> Token:
        return self.start_rotation(session_id, teacher_id, TokenKind.LATE_ENTRY)

    def stop_late_entry(self, session_id: str, teacher_id: str) -> Session:
        return self.stop_rotation(session_id, teacher_id, TokenKind.LATE_ENTRY)

    def start_early_leave(self, session_id: str, teacher_id: str) -> Token:
        return self.start_rotation(session_id, teacher_id, TokenKind.EARLY_LEAVE)

    def stop_early_leave(self, session_id: str, teacher_id: str) -> Session:
        return self.stop_rotation(session_id, teacher_id, TokenKind.EARLY_LEAVE)

    def current_rotating_token(self, session_id: str, kind: TokenKind) -> Token | None:
        active_field, token_field = _rotation_fields(kind)
        session = self.get_session(session_id)
        token_id = getattr(session, token_field)
        if not getattr(session, active_field) or not token_id:
            return None
        token = self.tokens.get(session_id, token_id)
        if token is None or token.status != TokenStatus.ACTIVE or token.expires_at <= self.clock.now():
            return None
        return token

    def rotate(self, session_id: str, kind: TokenKind, *, replacing: str | None = None) -> Token | None:
        """
        Issue a fresh rotating token and make it the session's current one.

        With `replacing`, the swap only happens if that token is still the
        current one, so two rotations racing over the same token produce a
        single successor. Returns None when nothing was swapped in.
        """
        active_field, token_field = _rotation_fields(kind)
        session = self.get_session(session_id)
        if session.status != SessionStatus.ACTIVE or not getattr(session, active_field):
            return None
        if replacing is not None and getattr(session, token_field) != replacing:
            return None

        token = self.tokens.issue(session_id, kind)
        previous: dict[str, str | None] = {"token_id": None}

        def _swap(s: Session) -> bool:
            current = getattr(s, token_field)
            if s.status != SessionStatus.ACTIVE or not getattr(s, active_field):
                return False
            if replacing is not None and current != replacing:
                return False
            previous["token_id"] = current
            setattr(s, token_field, token.token_id)
            return True

        updated = self._update(session_id, _swap)
        if getattr(updated, token_field) != token.token_id:
            # Lost to another rotation or a stop; the orphan never gets shown.
            self.tokens.revoke(session_id, token.token_id)
            return None

        if previous["token_id"] and previous["token_id"] != token.token_id:
            self.tokens.revoke(session_id, previous["token_id"])
        publish_safely(
            self.sink,
            session_id,
            EVENT_ROTATING_TOKEN_UPDATE,
            {
                "kind": kind.value,
                "active": True,
                "token_id": token.token_id,
                "expires_at": token.expires_at,
            },
        )
        return token

    def rotate_tokens(self, session_id: str) -> int:
        """Rotation tick: replace current rotating tokens that are no longer scannable."""
        session = self.find_session(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            return 0

        rotated = 0
        for kind, (active_field, token_field) in _ROTATION_FIELDS.items():
            if not getattr(session, active_field):
                continue
            current_id = getattr(session, token_field)
            current = self.tokens.get(session_id, current_id) if current_id else None
            if current is not None and current.status == TokenStatus.ACTIVE and current.expires_at > self.clock.now():
                continue
            if self.rotate(session_id, kind, replacing=current_id) is not None:
                rotated += 1
        return rotated
