from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from backend.engine import Engine, get_engine
from backend.models import GpsCoordinates, ScanFlow, ScanMetadata, ScanOutcome
from backend.security import Principal, require_student

router = APIRouter()

_FLOW_PATHS: dict[str, ScanFlow] = {
    "chain": ScanFlow.CHAIN,
    "exit-chain": ScanFlow.EXIT_CHAIN,
    "late-entry": ScanFlow.LATE_ENTRY,
    "early-leave": ScanFlow.EARLY_LEAVE,
}

OUTCOME_STATUS: dict[ScanOutcome, int] = {
    "SUCCESS": 200,
    "NOT_FOUND": 404,
    "ALREADY_USED": 400,
    "EXPIRED": 400,
    "INVALID_TOKEN": 400,
    "INVALID_STATE": 400,
    "RATE_LIMITED": 429,
    "LOCATION_VIOLATION": 403,
    "UNKNOWN_OUTCOME": 503,
}


class ScanRequest(BaseModel):
    token_id: str
    version: str | None = None
    device_fingerprint: str | None = None
    gps: GpsCoordinates | None = None
    bssid: str | None = None


def _client_ip(request: Request, forwarded_for: str | None) -> str:
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


@router.post("/sessions/{session_id}/scan/{flow}")
def scan(
    session_id: str,
    flow: str,
    payload: ScanRequest,
    request: Request,
    student: Principal = Depends(require_student),
    engine: Engine = Depends(get_engine),
    x_device_fingerprint: str | None = Header(default=None),
    x_forwarded_for: str | None = Header(default=None),
    x_request_id: str | None = Header(default=None),
    user_agent: str | None = Header(default=None),
):
    scan_flow = _FLOW_PATHS.get(flow)
    if scan_flow is None:
        raise HTTPException(status_code=404, detail="Unknown scan flow.")

    token_id = payload.token_id.strip()
    if not token_id:
        raise HTTPException(status_code=400, detail="token_id is required.")
    fingerprint = (payload.device_fingerprint or x_device_fingerprint or "").strip()
    if not fingerprint:
        raise HTTPException(status_code=400, detail="Device fingerprint is required.")

    metadata = ScanMetadata(
        device_fingerprint=fingerprint,
        ip=_client_ip(request, x_forwarded_for),
        gps=payload.gps,
        bssid=payload.bssid,
        user_agent=user_agent,
    )
    result = engine.scans.scan(
        scan_flow,
        session_id,
        token_id,
        student.user_id,
        metadata,
        version=payload.version,
        request_id=(x_request_id or "").strip() or None,
    )

    headers = {}
    if result["retry_after_seconds"]:
        headers["Retry-After"] = str(result["retry_after_seconds"])
    return JSONResponse(
        status_code=OUTCOME_STATUS[result["outcome"]],
        content=dict(result),
        headers=headers,
    )
