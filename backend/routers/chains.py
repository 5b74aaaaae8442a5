from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from backend.engine import Engine, get_engine
from backend.models import ChainPhase, ChainState
from backend.routers.sessions import chain_out, token_out
from backend.security import Principal, require_teacher

router = APIRouter()


class SeedRequest(BaseModel):
    count: int = Field(default=1, ge=1, le=100)


class ReseedRequest(BaseModel):
    count: int = Field(default=1, ge=1, le=100)
    chain_ids: list[str] | None = None


class SetHolderRequest(BaseModel):
    student_id: str = Field(..., min_length=1)


@router.get("/sessions/{session_id}/chains")
def list_chains(
    session_id: str,
    phase: ChainPhase | None = None,
    state: ChainState | None = None,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    engine.sessions.require_owner(engine.sessions.get_session(session_id), teacher.user_id)
    return [chain_out(c) for c in engine.chains.list_chains(session_id, phase=phase, state=state)]


@router.get("/sessions/{session_id}/chains/{chain_id}/history")
def chain_history(
    session_id: str,
    chain_id: str,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    engine.sessions.require_owner(engine.sessions.get_session(session_id), teacher.user_id)
    return [token_out(t) for t in engine.chains.chain_history(session_id, chain_id)]


@router.post("/sessions/{session_id}/chains/{phase}/seed")
def seed_chains(
    session_id: str,
    phase: ChainPhase,
    payload: SeedRequest,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    chains = engine.seed_chains(session_id, teacher.user_id, phase, payload.count)
    return {"phase": phase.value, "chains": [chain_out(c) for c in chains]}


@router.post("/sessions/{session_id}/chains/{phase}/reseed")
def reseed_chains(
    session_id: str,
    phase: ChainPhase,
    payload: ReseedRequest,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    chains = engine.reseed_chains(session_id, teacher.user_id, phase, payload.count, payload.chain_ids)
    return {"phase": phase.value, "chains": [chain_out(c) for c in chains]}


@router.post("/sessions/{session_id}/chains/{phase}/stalls")
def detect_stalls(
    session_id: str,
    phase: ChainPhase,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    stalled = engine.detect_stalls(session_id, teacher.user_id, phase)
    return {"phase": phase.value, "stalled": [chain_out(c) for c in stalled]}


@router.post("/sessions/{session_id}/chains/{phase}/close")
def close_chains(
    session_id: str,
    phase: ChainPhase,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    closed = engine.close_phase(session_id, teacher.user_id, phase)
    return {"phase": phase.value, "closed": closed}


@router.post("/sessions/{session_id}/chains/{chain_id}/set-holder")
def set_chain_holder(
    session_id: str,
    chain_id: str,
    payload: SetHolderRequest,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    chain = engine.set_chain_holder(session_id, teacher.user_id, chain_id, payload.student_id)
    return {"chain": chain_out(chain)}
