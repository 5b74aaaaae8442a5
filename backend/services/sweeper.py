import logging
import threading
from datetime import datetime
from typing import Any

from backend.models import ChainPhase, SessionStatus
from backend.services.chains import ChainService
from backend.services.sessions import SessionService
from backend.services.tokens import TokenService
from database.store import StoreUnavailable

logger = logging.getLogger(__name__)


class TokenSweeper:
    """
    Periodic housekeeping for every active session: expire idle tokens,
    rotate stale late/early codes and flag stalled chains.

    One pass at a time per process; every step is a conditional write, so
    overlapping passes on different instances are harmless.
    """

    def __init__(
        self,
        sessions: SessionService,
        tokens: TokenService,
        chains: ChainService,
        interval_seconds: float = 60.0,
    ):
        self.sessions = sessions
        self.tokens = tokens
        self.chains = chains
        self.interval_seconds = interval_seconds
        self._run_lock = threading.Lock()
        self._status_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._status: dict[str, Any] = {
            "state": "idle",          # idle | running
            "last_started_at": None,  # ISO string
            "last_finished_at": None,
            "last_result": None,
            "last_error": None,
        }

    def run_once(self) -> dict[str, int] | None:
        """Run one pass now. Returns None when a pass is already running."""
        if not self._run_lock.acquire(blocking=False):
            return None
        try:
            with self._status_lock:
                self._status["state"] = "running"
                self._status["last_started_at"] = datetime.now().isoformat(timespec="seconds")

            totals = {"sessions": 0, "expired": 0, "rotated": 0, "stalled": 0, "failed": 0}
            for session in self.sessions.list_sessions(status=SessionStatus.ACTIVE):
                totals["sessions"] += 1
                try:
                    totals["expired"] += self.tokens.sweep_expired(session.session_id)
                    totals["rotated"] += self.sessions.rotate_tokens(session.session_id)
                    for phase in ChainPhase:
                        totals["stalled"] += len(self.chains.detect_stalls(session.session_id, phase))
                except StoreUnavailable:
                    totals["failed"] += 1
                    logger.warning("sweep of session %s failed", session.session_id, exc_info=True)

            if totals["expired"] or totals["rotated"] or totals["stalled"]:
                logger.info(
                    "sweep: %d sessions, %d expired, %d rotated, %d stalled",
                    totals["sessions"],
                    totals["expired"],
                    totals["rotated"],
                    totals["stalled"],
                )
            with self._status_lock:
                self._status["last_result"] = dict(totals)
                self._status["last_error"] = None
            return totals
        except Exception as e:
            with self._status_lock:
                self._status["last_error"] = str(e)
            raise
        finally:
            with self._status_lock:
                self._status["state"] = "idle"
                self._status["last_finished_at"] = datetime.now().isoformat(timespec="seconds")
            self._run_lock.release()

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                logger.exception("token sweep pass crashed")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="token-sweeper", daemon=True)
        self._thread.start()
        logger.info("token sweeper started, every %.0fs", self.interval_seconds)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status(self) -> dict[str, Any]:
        with self._status_lock:
            return dict(self._status)
