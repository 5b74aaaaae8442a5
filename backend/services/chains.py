"""
Chain orchestration: seeding, baton transfer, stall detection and reseeding.

State per chain row: ACTIVE -> STALLED -> ACTIVE ... -> COMPLETED.
A reseed never rewrites an old row's index; it completes the old rows and
creates new ones one generation up with the sequence reset to zero.
"""
import logging
import random
import secrets
from typing import Any, Callable

from backend.config import EngineSettings
from backend.errors import InsufficientStudents, InvalidState, NotFound
from backend.models import (
    AttendanceRecord,
    Chain,
    ChainPhase,
    ChainState,
    EntryStatus,
    Token,
    chain_phase_for,
    chain_token_kind,
)
from backend.services.attendance import AttendanceService
from backend.services.clock import Clock
from backend.services.notifications import (
    EVENT_CHAIN_UPDATE,
    EVENT_STALL_ALERT,
    NotificationSink,
    publish_safely,
)
from backend.services.tokens import TokenService
from database.store import RecordNotFound, RecordTable, StoreUnavailable, VersionConflict

logger = logging.getLogger(__name__)

CHAIN_ID_BYTES = 16
CHAIN_UPDATE_MAX_ATTEMPTS = 8

_rng = random.SystemRandom()


def is_exit_eligible(record: AttendanceRecord) -> bool:
    return (
        record.entry_status in (EntryStatus.PRESENT_ENTRY, EntryStatus.LATE_ENTRY)
        and record.early_leave_at is None
    )


def is_entry_eligible(record: AttendanceRecord) -> bool:
    return record.joined_at is not None and record.entry_status is None


class ChainService:
    def __init__(
        self,
        table: RecordTable,
        tokens: TokenService,
        attendance: AttendanceService,
        clock: Clock,
        settings: EngineSettings,
        sink: NotificationSink | None = None,
    ):
        self.table = table
        self.tokens = tokens
        self.attendance = attendance
        self.clock = clock
        self.settings = settings
        self.sink = sink

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get_chain(self, session_id: str, chain_id: str) -> Chain | None:
        try:
            record, version = self.table.get(session_id, chain_id)
        except RecordNotFound:
            return None
        return Chain.from_record(session_id, chain_id, record, version)

    def list_chains(
        self,
        session_id: str,
        *,
        phase: ChainPhase | None = None,
        state: ChainState | None = None,
    ) -> list[Chain]:
        def _wanted(record: dict[str, Any]) -> bool:
            if phase is not None and record.get("phase") != phase.value:
                return False
            if state is not None and record.get("state") != state.value:
                return False
            return True

        chains = [
            Chain.from_record(session_id, key, record, version)
            for key, record, version in self.table.scan(session_id, _wanted)
        ]
        chains.sort(key=lambda c: (c.phase.value, c.index, c.created_at, c.chain_id))
        return chains

    def chain_history(self, session_id: str, chain_id: str) -> list[Token]:
        history = [t for t in self.tokens.list_tokens(session_id) if t.chain_id == chain_id]
        history.sort(key=lambda t: (t.sequence or 0, t.issued_at))
        return history

    def active_holders(self, session_id: str, phase: ChainPhase) -> set[str]:
        return {
            c.last_holder
            for c in self.list_chains(session_id, phase=phase, state=ChainState.ACTIVE)
            if c.last_holder and c.current_token_id
        }

    def eligible_students(self, session_id: str, phase: ChainPhase) -> list[str]:
        check = is_entry_eligible if phase == ChainPhase.ENTRY else is_exit_eligible
        return sorted(r.student_id for r in self.attendance.list_records(session_id) if check(r))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def _update_chain(self, session_id: str, chain_id: str, mutate: Callable[[Chain], bool]) -> Chain | None:
        for _ in range(CHAIN_UPDATE_MAX_ATTEMPTS):
            chain = self.get_chain(session_id, chain_id)
            if chain is None:
                return None
            if not mutate(chain):
                return chain
            try:
                chain.version = self.table.put(session_id, chain_id, chain.to_record(), if_version=chain.version)
                return chain
            except VersionConflict:
                continue
        raise VersionConflict(self.table.name, session_id, chain_id)

    def _create_chain(
        self,
        session_id: str,
        phase: ChainPhase,
        holder_id: str,
        index: int,
        previous_chain_id: str | None = None,
    ) -> Chain:
        now = self.clock.now()
        chain_id = secrets.token_urlsafe(CHAIN_ID_BYTES)
        token = self.tokens.issue(
            session_id,
            chain_token_kind(phase),
            self.settings.chain_token_ttl_seconds,
            chain_id=chain_id,
            issued_to=holder_id,
            sequence=0,
        )
        chain = Chain(
            chain_id=chain_id,
            session_id=session_id,
            phase=phase,
            index=index,
            state=ChainState.ACTIVE,
            last_holder=holder_id,
            last_sequence=0,
            last_activity_at=now,
            current_token_id=token.token_id,
            created_at=now,
            previous_chain_id=previous_chain_id,
        )
        chain.version = self.table.insert(session_id, chain_id, chain.to_record())
        return chain

    def _create_generation(
        self,
        session_id: str,
        phase: ChainPhase,
        holders: list[str],
        index: int,
        previous_ids: list[str | None],
    ) -> list[Chain]:
        created: list[Chain] = []
        try:
            for holder_id, previous_id in zip(holders, previous_ids):
                created.append(self._create_chain(session_id, phase, holder_id, index, previous_id))
        except StoreUnavailable:
            # Leave no half-seeded generation behind.
            for chain in created:
                try:
                    self._complete(chain)
                except StoreUnavailable:
                    logger.warning("could not roll back chain %s/%s", session_id, chain.chain_id)
            raise

        for chain in created:
            self._announce(chain)
        return created

    def _select(self, pool: list[str], count: int, avoid: set[str]) -> list[str]:
        """
        Uniform random pick of `count` students, retried a bounded number of
        times to dodge `avoid`; falls back to preferring non-avoided ones.
        """
        for _ in range(self.settings.reseed_selection_attempts):
            pick = _rng.sample(pool, count)
            if not avoid.intersection(pick):
                return pick
        preferred = [s for s in pool if s not in avoid]
        rest = [s for s in pool if s in avoid]
        _rng.shuffle(preferred)
        _rng.shuffle(rest)
        return (preferred + rest)[:count]

    def seed(self, session_id: str, phase: ChainPhase, count: int) -> list[Chain]:
        if count < 1:
            raise ValueError("count must be at least 1")
        busy = self.active_holders(session_id, phase)
        pool = [s for s in self.eligible_students(session_id, phase) if s not in busy]
        if len(pool) < count:
            raise InsufficientStudents(count, len(pool))

        holders = _rng.sample(pool, count)
        chains = self._create_generation(session_id, phase, holders, 0, [None] * count)
        logger.info("seeded %d %s chains for session %s", len(chains), phase.value, session_id)
        return chains

    def process_scan(self, token: Token, scanner_id: str, *, owner_transfer: bool = True) -> dict[str, Any]:
        """
        Apply a successfully consumed chain token: credit the holder, hand the
        baton to the scanner and advance the chain row by one.
        """
        session_id = token.session_id
        holder_id = token.issued_to
        phase = chain_phase_for(token.kind)

        if phase == ChainPhase.ENTRY:
            self.attendance.mark_entry(session_id, holder_id, EntryStatus.PRESENT_ENTRY)
        else:
            self.attendance.mark_exit_verified(session_id, holder_id)

        chain = self.get_chain(session_id, token.chain_id)
        if chain is None:
            logger.error("chain %s/%s missing for consumed token %s", session_id, token.chain_id, token.token_id)
            return {"holder_marked": holder_id, "new_holder": None, "new_token": None, "chain": None}

        next_sequence = (token.sequence or 0) + 1
        new_token: Token | None = None
        if owner_transfer and chain.state != ChainState.COMPLETED:
            new_token = self.tokens.issue(
                session_id,
                token.kind,
                self.settings.chain_token_ttl_seconds,
                chain_id=chain.chain_id,
                issued_to=scanner_id,
                sequence=next_sequence,
            )
        now = self.clock.now()

        def _advance(c: Chain) -> bool:
            c.last_holder = scanner_id
            c.last_sequence = max(c.last_sequence, next_sequence)
            c.last_activity_at = now
            if c.state != ChainState.COMPLETED:
                c.state = ChainState.ACTIVE
                c.current_token_id = new_token.token_id if new_token else None
            return True

        updated = self._update_chain(session_id, chain.chain_id, _advance)
        if new_token is not None and (updated is None or updated.state == ChainState.COMPLETED):
            # retired while the baton was being issued
            self.tokens.revoke(session_id, new_token.token_id)
            new_token = None
        if updated is not None:
            self._announce(updated)
        return {
            "holder_marked": holder_id,
            "new_holder": scanner_id if new_token else None,
            "new_token": new_token,
            "chain": updated,
        }

    def detect_stalls(self, session_id: str, phase: ChainPhase) -> list[Chain]:
        now = self.clock.now()
        threshold = self.settings.stall_threshold_seconds
        stalled: list[Chain] = []
        for chain in self.list_chains(session_id, phase=phase, state=ChainState.ACTIVE):
            if now - chain.last_activity_at <= threshold:
                continue

            def _stall(c: Chain) -> bool:
                if c.state != ChainState.ACTIVE or now - c.last_activity_at <= threshold:
                    return False
                c.state = ChainState.STALLED
                return True

            updated = self._update_chain(session_id, chain.chain_id, _stall)
            if updated is not None and updated.state == ChainState.STALLED:
                stalled.append(updated)

        if stalled:
            logger.info("session %s: %d %s chains stalled", session_id, len(stalled), phase.value)
            publish_safely(
                self.sink,
                session_id,
                EVENT_STALL_ALERT,
                {"phase": phase.value, "chain_ids": [c.chain_id for c in stalled]},
            )
        return stalled

    def reseed(
        self,
        session_id: str,
        phase: ChainPhase,
        count: int,
        chain_ids: list[str] | None = None,
    ) -> list[Chain]:
        if count < 1:
            raise ValueError("count must be at least 1")
        phase_chains = self.list_chains(session_id, phase=phase)
        if chain_ids:
            wanted = set(chain_ids)
            targets = [c for c in phase_chains if c.chain_id in wanted and c.state != ChainState.COMPLETED]
        else:
            targets = [c for c in phase_chains if c.state == ChainState.STALLED]

        eligible = self.eligible_students(session_id, phase)
        if len(eligible) < count:
            raise InsufficientStudents(count, len(eligible))

        target_ids = {c.chain_id for c in targets}
        avoid = {c.last_holder for c in targets if c.last_holder}
        avoid |= {
            c.last_holder
            for c in phase_chains
            if c.chain_id not in target_ids and c.state == ChainState.ACTIVE and c.last_holder
        }
        holders = self._select(eligible, count, avoid)

        for chain in targets:
            self._complete(chain)

        new_index = max((c.index for c in phase_chains), default=-1) + 1
        previous_ids: list[str | None] = [c.chain_id for c in targets][:count]
        previous_ids += [None] * (count - len(previous_ids))
        chains = self._create_generation(session_id, phase, holders, new_index, previous_ids)
        logger.info(
            "reseeded %d %s chains (index %d) for session %s, retired %d",
            len(chains),
            phase.value,
            new_index,
            session_id,
            len(targets),
        )
        return chains

    def set_holder(self, session_id: str, chain_id: str, student_id: str) -> Chain:
        """
        Hand a chain's baton to `student_id` by hand, e.g. to rescue the last
        student nobody is left to scan. The outstanding token is revoked and
        a fresh one is issued one sequence up. The previous holder is not
        credited.
        """
        chain = self.get_chain(session_id, chain_id)
        if chain is None:
            raise NotFound(f"Chain {chain_id} not found.")
        if chain.state == ChainState.COMPLETED:
            raise InvalidState(f"Chain {chain_id} is completed.")
        if self.attendance.get(session_id, student_id) is None:
            raise NotFound(f"Student {student_id} has not joined session {session_id}.")
        others = {
            c.last_holder
            for c in self.list_chains(session_id, phase=chain.phase, state=ChainState.ACTIVE)
            if c.chain_id != chain_id and c.current_token_id
        }
        if student_id in others:
            raise InvalidState(f"Student {student_id} already holds another {chain.phase.value} chain.")

        new_token = self.tokens.issue(
            session_id,
            chain_token_kind(chain.phase),
            self.settings.chain_token_ttl_seconds,
            chain_id=chain_id,
            issued_to=student_id,
            sequence=chain.last_sequence + 1,
        )
        now = self.clock.now()
        replaced: list[str] = []

        def _assign(c: Chain) -> bool:
            if c.state == ChainState.COMPLETED:
                return False
            replaced[:] = [c.current_token_id] if c.current_token_id else []
            c.last_holder = student_id
            c.last_sequence = max(c.last_sequence, new_token.sequence or 0)
            c.last_activity_at = now
            c.state = ChainState.ACTIVE
            c.current_token_id = new_token.token_id
            return True

        updated = self._update_chain(session_id, chain_id, _assign)
        if updated is None or updated.current_token_id != new_token.token_id:
            self.tokens.revoke(session_id, new_token.token_id)
            raise InvalidState(f"Chain {chain_id} was completed.")
        for token_id in replaced:
            self.tokens.revoke(session_id, token_id)

        logger.info("chain %s/%s handed to %s (seq %d)", session_id, chain_id, student_id, updated.last_sequence)
        self._announce(updated)
        return updated

    def _complete(self, chain: Chain) -> None:
        def _close(c: Chain) -> bool:
            if c.state == ChainState.COMPLETED:
                return False
            c.state = ChainState.COMPLETED
            c.current_token_id = None
            return True

        # close the row first so an in-flight baton pass sees COMPLETED
        self._update_chain(chain.session_id, chain.chain_id, _close)
        self.tokens.revoke_active(
            chain.session_id,
            kind=chain_token_kind(chain.phase),
            chain_id=chain.chain_id,
        )

    def close_chains(self, session_id: str, phase: ChainPhase | None = None) -> int:
        closed = 0
        for chain in self.list_chains(session_id, phase=phase):
            if chain.state == ChainState.COMPLETED:
                continue
            self._complete(chain)
            closed += 1
        return closed

    def _announce(self, chain: Chain) -> None:
        publish_safely(
            self.sink,
            chain.session_id,
            EVENT_CHAIN_UPDATE,
            {
                "chain_id": chain.chain_id,
                "phase": chain.phase.value,
                "index": chain.index,
                "state": chain.state.value,
                "last_holder": chain.last_holder,
                "last_sequence": chain.last_sequence,
            },
        )
