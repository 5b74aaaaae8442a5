import itertools
import secrets
from typing import Any

from backend.models import ScanMetadata
from backend.services.clock import Clock
from database.store import RecordTable


class ScanAuditLog:
    """
    Append-only scan audit trail, one partition per session.

    Row keys are a zero-padded millisecond stamp, a per-process counter and
    a random suffix, so a partition scan returns rows in capture order.
    """

    def __init__(self, table: RecordTable, clock: Clock):
        self.table = table
        self.clock = clock
        self._seq = itertools.count()

    def log_scan(
        self,
        *,
        session_id: str,
        flow: str,
        result: str,
        stage: str,
        token_id: str | None = None,
        holder_id: str | None = None,
        scanner_id: str | None = None,
        metadata: ScanMetadata | None = None,
        error: str | None = None,
        request_id: str | None = None,
    ) -> str:
        now = self.clock.now()
        row_key = f"{int(now * 1000):015d}_{next(self._seq):09d}_{secrets.token_hex(4)}"
        record: dict[str, Any] = {
            "flow": flow,
            "stage": stage,
            "result": result,
            "error": error,
            "token_id": token_id,
            "holder_id": holder_id,
            "scanner_id": scanner_id,
            "request_id": request_id,
            "scanned_at": now,
            "device_fingerprint": metadata.device_fingerprint if metadata else None,
            "ip": metadata.ip if metadata else None,
            "bssid": metadata.bssid if metadata else None,
            "gps": metadata.gps.model_dump() if metadata and metadata.gps else None,
            "user_agent": metadata.user_agent if metadata else None,
        }
        self.table.insert(session_id, row_key, record)
        return row_key

    def list_scans(
        self,
        session_id: str,
        *,
        result: str | None = None,
        scanner_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        safe_limit = max(1, min(int(limit), 500))
        safe_offset = max(0, int(offset))
        rows = self._matching(session_id, result=result, scanner_id=scanner_id)
        # newest first
        rows.reverse()
        return rows[safe_offset:safe_offset + safe_limit]

    def count_scans(self, session_id: str, *, result: str | None = None, scanner_id: str | None = None) -> int:
        return len(self._matching(session_id, result=result, scanner_id=scanner_id))

    def _matching(self, session_id: str, *, result: str | None, scanner_id: str | None) -> list[dict[str, Any]]:
        def _wanted(record: dict[str, Any]) -> bool:
            if result is not None and record.get("result") != result:
                return False
            if scanner_id is not None and record.get("scanner_id") != scanner_id:
                return False
            return True

        return [{"id": key, "session_id": session_id, **record} for key, record, _ in self.table.scan(session_id, _wanted)]
