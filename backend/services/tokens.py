"""
Token lifecycle: issue, consume exactly once, revoke, sweep expired.

Single-use enforcement lives entirely in the record store's conditional
write. Nothing here holds a lock across requests, so any number of processes
may consume against the same store.
"""
import logging
import secrets

from backend.config import EngineSettings
from backend.models import (
    ROTATING_KINDS,
    ConsumeResult,
    Token,
    TokenKind,
    TokenStatus,
)
from backend.services.clock import Clock
from backend.services.retry import call_with_retry
from database.store import RecordNotFound, RecordTable, StoreUnavailable, VersionConflict

logger = logging.getLogger(__name__)

TOKEN_ID_BYTES = 32
REVOKE_MAX_ATTEMPTS = 5


def generate_token_id() -> str:
    return secrets.token_urlsafe(TOKEN_ID_BYTES)


class TokenService:
    def __init__(self, table: RecordTable, clock: Clock, settings: EngineSettings):
        self.table = table
        self.clock = clock
        self.settings = settings

    def _retry(self, fn, label: str):
        return call_with_retry(
            fn,
            attempts=self.settings.store_retry_attempts,
            initial_delay=self.settings.store_retry_initial_delay_seconds,
            max_delay=self.settings.store_retry_max_delay_seconds,
            label=label,
        )

    def default_ttl(self, kind: TokenKind) -> int:
        if kind == TokenKind.LATE_ENTRY:
            return self.settings.late_rotation_seconds
        if kind == TokenKind.EARLY_LEAVE:
            return self.settings.early_leave_rotation_seconds
        return self.settings.chain_token_ttl_seconds

    def issue(
        self,
        session_id: str,
        kind: TokenKind,
        ttl: float | None = None,
        *,
        chain_id: str | None = None,
        issued_to: str | None = None,
        sequence: int | None = None,
    ) -> Token:
        now = self.clock.now()
        lifetime = self.default_ttl(kind) if ttl is None else ttl
        token = Token(
            token_id=generate_token_id(),
            session_id=session_id,
            kind=kind,
            chain_id=chain_id,
            issued_to=issued_to,
            sequence=sequence,
            issued_at=now,
            expires_at=now + lifetime,
        )
        # Fresh random key, so a retried insert cannot double-create.
        version = self._retry(
            lambda: self.table.insert(session_id, token.token_id, token.to_record()),
            label="token insert",
        )
        token.version = version
        return token

    def get(self, session_id: str, token_id: str) -> Token | None:
        try:
            record, version = self._retry(lambda: self.table.get(session_id, token_id), label="token read")
        except RecordNotFound:
            return None
        return Token.from_record(session_id, token_id, record, version)

    def list_tokens(
        self,
        session_id: str,
        *,
        status: TokenStatus | None = None,
        kind: TokenKind | None = None,
        issued_to: str | None = None,
    ) -> list[Token]:
        def _wanted(record: dict) -> bool:
            if status is not None and record.get("status") != status.value:
                return False
            if kind is not None and record.get("kind") != kind.value:
                return False
            if issued_to is not None and record.get("issued_to") != issued_to:
                return False
            return True

        rows = self._retry(lambda: list(self.table.scan(session_id, _wanted)), label="token scan")
        return [Token.from_record(session_id, key, record, version) for key, record, version in rows]

    def consume(
        self,
        session_id: str,
        token_id: str,
        expected_version: str | None = None,
        *,
        consumer_id: str | None = None,
        request_id: str | None = None,
    ) -> ConsumeResult:
        """
        Mark an Active token Used, contingent on its version stamp.

        `expected_version` is the stamp the caller saw when it fetched the
        token; when omitted, the stamp read here is used. Losing the
        conditional write means another request consumed (or changed) the
        token first and is reported as ALREADY_USED without retrying.

        Raises StoreUnavailable on infrastructure faults; the write may have
        landed, see `resolve_after_fault`.
        """
        try:
            record, version = self.table.get(session_id, token_id)
        except RecordNotFound:
            return {"outcome": "NOT_FOUND", "token": None}

        token = Token.from_record(session_id, token_id, record, version)
        if token.status == TokenStatus.EXPIRED:
            return {"outcome": "EXPIRED", "token": token}
        if token.status != TokenStatus.ACTIVE:
            return {"outcome": "ALREADY_USED", "token": token}

        now = self.clock.now()
        if now >= token.expires_at:
            self._mark_expired(token)
            return {"outcome": "EXPIRED", "token": token}

        used = token.model_copy(
            update={
                "status": TokenStatus.USED,
                "used_at": now,
                "used_by": consumer_id,
                "consume_request_id": request_id,
            }
        )
        try:
            used.version = self.table.put(
                session_id,
                token_id,
                used.to_record(),
                if_version=expected_version or version,
            )
        except VersionConflict:
            logger.debug("token %s/%s lost the consume race", session_id, token_id)
            return {"outcome": "ALREADY_USED", "token": token}
        except RecordNotFound:
            return {"outcome": "NOT_FOUND", "token": None}

        if token.kind in ROTATING_KINDS:
            logger.debug("rotating token %s consumed by %s", token_id, consumer_id)
        return {"outcome": "SUCCESS", "token": used}

    def resolve_after_fault(
        self,
        session_id: str,
        token_id: str,
        *,
        consumer_id: str | None,
        request_id: str,
    ) -> ConsumeResult | None:
        """
        Settle a consume whose write raised StoreUnavailable.

        Re-reads first: a Used token stamped with our request id means the
        write landed. Only an Active token gets another conditional attempt.
        Returns None when the store still cannot be read.
        """
        try:
            token = self.get(session_id, token_id)
        except StoreUnavailable:
            return None
        if token is None:
            return {"outcome": "NOT_FOUND", "token": None}
        if token.status == TokenStatus.USED and token.consume_request_id == request_id:
            return {"outcome": "SUCCESS", "token": token}
        if token.status == TokenStatus.ACTIVE:
            try:
                return self.consume(
                    session_id,
                    token_id,
                    token.version,
                    consumer_id=consumer_id,
                    request_id=request_id,
                )
            except StoreUnavailable:
                return None
        if token.status == TokenStatus.EXPIRED:
            return {"outcome": "EXPIRED", "token": token}
        return {"outcome": "ALREADY_USED", "token": token}

    def revoke(self, session_id: str, token_id: str) -> bool:
        """
        Move an Active token to Revoked. Tokens already in a terminal state
        are left alone; a missing token counts as revoked.
        """
        for _ in range(REVOKE_MAX_ATTEMPTS):
            token = self.get(session_id, token_id)
            if token is None or token.status != TokenStatus.ACTIVE:
                return False
            revoked = token.model_copy(update={"status": TokenStatus.REVOKED})
            try:
                self.table.put(session_id, token_id, revoked.to_record(), if_version=token.version)
                return True
            except VersionConflict:
                continue
            except RecordNotFound:
                return False
        logger.warning("revoke of %s/%s gave up after %d conflicts", session_id, token_id, REVOKE_MAX_ATTEMPTS)
        return False

    def revoke_active(self, session_id: str, *, kind: TokenKind | None = None, chain_id: str | None = None) -> int:
        revoked = 0
        for token in self.list_tokens(session_id, status=TokenStatus.ACTIVE, kind=kind):
            if chain_id is not None and token.chain_id != chain_id:
                continue
            if self.revoke(session_id, token.token_id):
                revoked += 1
        return revoked

    def sweep_expired(self, session_id: str) -> int:
        """
        Mark every Active token past its expiry as Expired.

        Idempotent and safe to run concurrently with itself and with
        consumers: each transition is a conditional write, and a lost race
        just means someone else already moved the token.
        """
        now = self.clock.now()

        def _stale(record: dict) -> bool:
            return record.get("status") == TokenStatus.ACTIVE.value and float(record.get("expires_at", 0)) < now

        rows = self._retry(lambda: list(self.table.scan(session_id, _stale)), label="token sweep scan")
        expired = 0
        for key, record, version in rows:
            token = Token.from_record(session_id, key, record, version)
            if self._mark_expired(token):
                expired += 1
        return expired

    def _mark_expired(self, token: Token) -> bool:
        expired = token.model_copy(update={"status": TokenStatus.EXPIRED})
        try:
            self.table.put(token.session_id, token.token_id, expired.to_record(), if_version=token.version)
            return True
        except (VersionConflict, RecordNotFound):
            return False
        except StoreUnavailable:
            logger.debug("could not mark %s/%s expired", token.session_id, token.token_id, exc_info=True)
            return False
