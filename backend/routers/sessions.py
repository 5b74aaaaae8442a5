from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from backend.engine import Engine, get_engine
from backend.models import (
    AttendanceRecord,
    Chain,
    Session,
    SessionConstraints,
    SessionStatus,
    Token,
    TokenKind,
    TokenStatus,
)
from backend.security import Principal, require_principal, require_student, require_teacher

router = APIRouter()

_ROTATING_PATHS: dict[str, TokenKind] = {
    "late-entry": TokenKind.LATE_ENTRY,
    "early-leave": TokenKind.EARLY_LEAVE,
}


class CreateSessionRequest(BaseModel):
    class_id: str = Field(..., min_length=1)
    start_at: float
    end_at: float
    late_cutoff_minutes: int = Field(default=15, ge=0)
    exit_window_minutes: int = Field(default=10, ge=0)
    constraints: SessionConstraints | None = None
    owner_transfer: bool | None = None


class MarkExitRequest(BaseModel):
    student_id: str = Field(..., min_length=1)


def token_out(token: Token) -> dict[str, Any]:
    return {
        "token_id": token.token_id,
        "session_id": token.session_id,
        "kind": token.kind.value,
        "chain_id": token.chain_id,
        "issued_to": token.issued_to,
        "sequence": token.sequence,
        "issued_at": token.issued_at,
        "expires_at": token.expires_at,
        "status": token.status.value,
        "version": token.version,
    }


def chain_out(chain: Chain) -> dict[str, Any]:
    return chain.model_dump(mode="json", exclude={"version"})


def session_out(session: Session) -> dict[str, Any]:
    data = session.model_dump(mode="json", exclude={"version"})
    data["late_cutoff_at"] = session.late_cutoff_at
    return data


def record_out(record: AttendanceRecord) -> dict[str, Any]:
    return record.model_dump(mode="json", exclude={"version"})


def _rotating_kind(name: str) -> TokenKind:
    kind = _ROTATING_PATHS.get(name)
    if kind is None:
        raise HTTPException(status_code=404, detail="Not found.")
    return kind


@router.post("/sessions")
def create_session(
    payload: CreateSessionRequest,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    session = engine.sessions.create_session(
        teacher.user_id,
        payload.class_id,
        payload.start_at,
        payload.end_at,
        late_cutoff_minutes=payload.late_cutoff_minutes,
        exit_window_minutes=payload.exit_window_minutes,
        constraints=payload.constraints,
        owner_transfer=payload.owner_transfer,
    )
    return session_out(session)


@router.get("/sessions")
def list_sessions(
    status: SessionStatus | None = None,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    return [session_out(s) for s in engine.sessions.list_sessions(status=status, teacher_id=teacher.user_id)]


@router.get("/sessions/{session_id}")
def get_session(
    session_id: str,
    _principal: Principal = Depends(require_principal),
    engine: Engine = Depends(get_engine),
):
    return session_out(engine.sessions.get_session(session_id))


@router.post("/sessions/{session_id}/join")
def join_session(
    session_id: str,
    student: Principal = Depends(require_student),
    engine: Engine = Depends(get_engine),
):
    return record_out(engine.sessions.join_session(session_id, student.user_id))


@router.post("/sessions/{session_id}/end")
def end_session(
    session_id: str,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    records = engine.sessions.end_session(session_id, teacher.user_id)
    return {
        "session_id": session_id,
        "status": SessionStatus.ENDED.value,
        "records": [record_out(r) for r in sorted(records, key=lambda r: r.student_id)],
    }


@router.get("/sessions/{session_id}/attendance")
def session_attendance(
    session_id: str,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    return [record_out(r) for r in engine.attendance_for(session_id, teacher.user_id)]


@router.post("/sessions/{session_id}/mark-exit")
def mark_student_exit(
    session_id: str,
    payload: MarkExitRequest,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    record = engine.sessions.mark_student_exit(session_id, teacher.user_id, payload.student_id)
    return record_out(record)


@router.post("/sessions/{session_id}/{rotation}/start")
def start_rotation(
    session_id: str,
    rotation: str,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    token = engine.sessions.start_rotation(session_id, teacher.user_id, _rotating_kind(rotation))
    return token_out(token)


@router.post("/sessions/{session_id}/{rotation}/stop")
def stop_rotation(
    session_id: str,
    rotation: str,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    session = engine.sessions.stop_rotation(session_id, teacher.user_id, _rotating_kind(rotation))
    return session_out(session)


@router.get("/sessions/{session_id}/{rotation}/token")
def current_rotating_token(
    session_id: str,
    rotation: str,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    kind = _rotating_kind(rotation)
    engine.sessions.require_owner(engine.sessions.get_session(session_id), teacher.user_id)
    token = engine.sessions.current_rotating_token(session_id, kind)
    if token is None:
        # Expired between ticks; rotate on demand so the screen never goes blank.
        token = engine.sessions.rotate(session_id, kind)
    if token is None:
        raise HTTPException(status_code=409, detail=f"{kind.value} is not active.")
    return token_out(token)


@router.get("/sessions/{session_id}/my-tokens")
def my_tokens(
    session_id: str,
    student: Principal = Depends(require_student),
    engine: Engine = Depends(get_engine),
):
    engine.sessions.get_session(session_id)
    now = engine.clock.now()
    tokens = engine.tokens.list_tokens(session_id, status=TokenStatus.ACTIVE, issued_to=student.user_id)
    return [token_out(t) for t in tokens if t.expires_at > now]
