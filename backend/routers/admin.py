from fastapi import APIRouter, Depends, HTTPException, Query

from backend.engine import Engine, get_engine
from backend.security import Principal, require_teacher

router = APIRouter(dependencies=[Depends(require_teacher)])
ALLOWED_SCAN_RESULTS: set[str] = {
    "PASSED",
    "SUCCESS",
    "NOT_FOUND",
    "ALREADY_USED",
    "EXPIRED",
    "RATE_LIMITED",
    "LOCATION_VIOLATION",
    "INVALID_TOKEN",
    "INVALID_STATE",
    "UNKNOWN_OUTCOME",
}


@router.get("/admin/sessions/{session_id}/scan-events")
def list_scan_events(
    session_id: str,
    result: str | None = None,
    scanner_id: str | None = None,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    engine.sessions.require_owner(engine.sessions.get_session(session_id), teacher.user_id)
    clean_result = result.strip().upper() if result else None
    if clean_result and clean_result not in ALLOWED_SCAN_RESULTS:
        raise HTTPException(status_code=400, detail="Invalid result filter.")
    clean_scanner = scanner_id.strip() if scanner_id else None

    rows = engine.audit.list_scans(
        session_id,
        result=clean_result,
        scanner_id=clean_scanner,
        limit=limit,
        offset=offset,
    )
    total = engine.audit.count_scans(session_id, result=clean_result, scanner_id=clean_scanner)
    return {
        "rows": rows,
        "total": total,
        "limit": limit,
        "offset": offset,
    }


@router.get("/admin/sessions/{session_id}/events")
def list_notifications(
    session_id: str,
    event_type: str | None = None,
    teacher: Principal = Depends(require_teacher),
    engine: Engine = Depends(get_engine),
):
    engine.sessions.require_owner(engine.sessions.get_session(session_id), teacher.user_id)
    events = getattr(engine.sink, "events", None)
    if events is None:
        raise HTTPException(status_code=404, detail="Notification sink does not keep history.")
    return events(session_id=session_id, event_type=event_type)


@router.post("/admin/sweep/run")
def run_sweep(engine: Engine = Depends(get_engine)):
    totals = engine.sweeper.run_once()
    if totals is None:
        return {"ok": False, "message": "Sweep already running.", **engine.sweeper.status()}
    return {"ok": True, "message": "Sweep completed.", **totals}


@router.get("/admin/sweep/status")
def sweep_status(engine: Engine = Depends(get_engine)):
    return {"running": engine.sweeper.running, **engine.sweeper.status()}
