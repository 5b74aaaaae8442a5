"""
Scan entry point shared by all four flows.

    gate -> audit gate outcome -> consume -> effect -> audit outcome -> publish

Routine failures come back as a ScanResult with success=False; only store
faults that cannot be settled escape as exceptions.
"""
import logging
import uuid

from backend.models import (
    CHAIN_KINDS,
    FLOW_TOKEN_KIND,
    ConsumeResult,
    EntryStatus,
    ScanFlow,
    ScanMetadata,
    ScanOutcome,
    ScanResult,
    SessionStatus,
    Token,
)
from backend.services.attendance import AttendanceService
from backend.services.audit import ScanAuditLog
from backend.services.chains import ChainService
from backend.services.clock import Clock
from backend.services.sessions import SessionService
from backend.services.tokens import TokenService
from backend.services.validation import AntiCheatGate
from database.store import StoreUnavailable

logger = logging.getLogger(__name__)

STAGE_SESSION = "SESSION"
STAGE_CONSUME = "CONSUME"
STAGE_EFFECT = "EFFECT"


def _result(
    outcome: ScanOutcome,
    *,
    flow: ScanFlow,
    session_id: str,
    token_id: str,
    scanner_id: str,
    holder_marked: str | None = None,
    new_holder: str | None = None,
    new_token_id: str | None = None,
    reasons: list[str] | None = None,
    retry_after_seconds: int | None = None,
) -> ScanResult:
    return {
        "success": outcome == "SUCCESS",
        "outcome": outcome,
        "flow": flow.value,
        "session_id": session_id,
        "token_id": token_id,
        "scanner_id": scanner_id,
        "holder_marked": holder_marked,
        "new_holder": new_holder,
        "new_token_id": new_token_id,
        "reasons": reasons or [],
        "retry_after_seconds": retry_after_seconds,
    }


class ScanService:
    def __init__(
        self,
        sessions: SessionService,
        tokens: TokenService,
        chains: ChainService,
        attendance: AttendanceService,
        gate: AntiCheatGate,
        audit: ScanAuditLog,
        clock: Clock,
    ):
        self.sessions = sessions
        self.tokens = tokens
        self.chains = chains
        self.attendance = attendance
        self.gate = gate
        self.audit = audit
        self.clock = clock

    def scan(
        self,
        flow: ScanFlow | str,
        session_id: str,
        token_id: str,
        scanner_id: str,
        metadata: ScanMetadata,
        *,
        version: str | None = None,
        request_id: str | None = None,
    ) -> ScanResult:
        flow = ScanFlow(flow)
        request_id = request_id or uuid.uuid4().hex
        base = {"flow": flow, "session_id": session_id, "token_id": token_id, "scanner_id": scanner_id}

        def _finish(
            outcome: ScanOutcome,
            stage: str,
            *,
            holder_id: str | None = None,
            error: str | None = None,
            **extra,
        ) -> ScanResult:
            self.audit.log_scan(
                session_id=session_id,
                flow=flow.value,
                stage=stage,
                result=outcome,
                error=error,
                token_id=token_id,
                holder_id=holder_id,
                scanner_id=scanner_id,
                metadata=metadata,
                request_id=request_id,
            )
            return _result(outcome, **base, **extra)

        session = self.sessions.find_session(session_id)
        if session is None:
            return _finish("NOT_FOUND", STAGE_SESSION, error="session not found")
        if session.status == SessionStatus.ENDED:
            return _finish("INVALID_STATE", STAGE_SESSION, error="session ended")
        if flow == ScanFlow.LATE_ENTRY and self.clock.now() < session.late_cutoff_at:
            return _finish("INVALID_STATE", STAGE_SESSION, error="late entry not open yet")

        gate = self.gate.check(
            session=session,
            flow=flow.value,
            scanner_id=scanner_id,
            metadata=metadata,
            token_id=token_id,
            request_id=request_id,
        )
        if not gate["allowed"]:
            # The gate already wrote its own audit row.
            outcome: ScanOutcome = "RATE_LIMITED" if not gate["rate_limit"]["allowed"] else "LOCATION_VIOLATION"
            return _result(
                outcome,
                **base,
                reasons=gate["reasons"],
                retry_after_seconds=gate["rate_limit"]["retry_after_seconds"],
            )

        peek = self.tokens.get(session_id, token_id)
        if peek is None:
            return _finish("NOT_FOUND", STAGE_CONSUME)
        if peek.kind != FLOW_TOKEN_KIND[flow]:
            return _finish("INVALID_TOKEN", STAGE_CONSUME, holder_id=peek.issued_to, error=f"{peek.kind.value} token")
        if peek.kind in CHAIN_KINDS and peek.issued_to == scanner_id:
            return _finish("INVALID_TOKEN", STAGE_CONSUME, holder_id=peek.issued_to, error="own token")

        consumed = self._consume(session_id, token_id, version or peek.version, scanner_id, request_id)
        if consumed is None:
            logger.error("scan %s on %s/%s has unknown outcome", request_id, session_id, token_id)
            return _finish("UNKNOWN_OUTCOME", STAGE_CONSUME, holder_id=peek.issued_to, error="store unavailable")
        if consumed["outcome"] != "SUCCESS":
            return _finish(consumed["outcome"], STAGE_CONSUME, holder_id=peek.issued_to)

        token = consumed["token"]
        try:
            effect = self._apply(flow, token, scanner_id, owner_transfer=session.owner_transfer)
        except StoreUnavailable:
            logger.exception("scan %s consumed %s/%s but its effect failed", request_id, session_id, token_id)
            try:
                _finish("UNKNOWN_OUTCOME", STAGE_EFFECT, holder_id=token.issued_to, error="effect failed")
            except StoreUnavailable:
                logger.warning("could not audit failed effect for scan %s", request_id)
            raise

        return _finish(
            "SUCCESS",
            STAGE_CONSUME,
            holder_id=token.issued_to,
            holder_marked=effect["holder_marked"],
            new_holder=effect["new_holder"],
            new_token_id=effect["new_token_id"],
        )

    def _consume(
        self,
        session_id: str,
        token_id: str,
        version: str,
        scanner_id: str,
        request_id: str,
    ) -> ConsumeResult | None:
        try:
            return self.tokens.consume(session_id, token_id, version, consumer_id=scanner_id, request_id=request_id)
        except StoreUnavailable:
            # The write may have landed; re-read instead of retrying blindly.
            logger.warning("consume of %s/%s hit a store fault; re-reading", session_id, token_id)
            return self.tokens.resolve_after_fault(session_id, token_id, consumer_id=scanner_id, request_id=request_id)

    def _apply(self, flow: ScanFlow, token: Token, scanner_id: str, *, owner_transfer: bool) -> dict:
        session_id = token.session_id
        if flow in (ScanFlow.CHAIN, ScanFlow.EXIT_CHAIN):
            outcome = self.chains.process_scan(token, scanner_id, owner_transfer=owner_transfer)
            new_token = outcome["new_token"]
            return {
                "holder_marked": outcome["holder_marked"],
                "new_holder": outcome["new_holder"],
                "new_token_id": new_token.token_id if new_token else None,
            }

        if flow == ScanFlow.LATE_ENTRY:
            self.attendance.mark_entry(session_id, scanner_id, EntryStatus.LATE_ENTRY)
        else:
            self.attendance.mark_early_leave(session_id, scanner_id)
        # Single-use: put the next code on screen right away.
        self.sessions.rotate(session_id, token.kind, replacing=token.token_id)
        return {"holder_marked": scanner_id, "new_holder": None, "new_token_id": None}
