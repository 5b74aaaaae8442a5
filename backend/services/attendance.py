import logging
from typing import Callable

from backend.models import AttendanceRecord, EntryStatus, FinalStatus
from backend.services.clock import Clock
from backend.services.notifications import EVENT_ATTENDANCE_UPDATE, NotificationSink, publish_safely
from database.store import RecordNotFound, RecordTable, VersionConflict

logger = logging.getLogger(__name__)

UPDATE_MAX_ATTEMPTS = 8


def compute_final(record: AttendanceRecord) -> FinalStatus:
    """
    Decision table, first match wins:
      early leave recorded              -> EARLY_LEAVE
      PRESENT_ENTRY + exit verified     -> PRESENT
      PRESENT_ENTRY, no exit            -> LEFT_EARLY
      LATE_ENTRY + exit verified        -> LATE
      LATE_ENTRY, no exit               -> LEFT_EARLY
      anything else                     -> ABSENT
    """
    if record.early_leave_at is not None:
        return FinalStatus.EARLY_LEAVE
    if record.entry_status == EntryStatus.PRESENT_ENTRY:
        return FinalStatus.PRESENT if record.exit_verified else FinalStatus.LEFT_EARLY
    if record.entry_status == EntryStatus.LATE_ENTRY:
        return FinalStatus.LATE if record.exit_verified else FinalStatus.LEFT_EARLY
    return FinalStatus.ABSENT


class AttendanceService:
    def __init__(self, table: RecordTable, clock: Clock, sink: NotificationSink | None = None):
        self.table = table
        self.clock = clock
        self.sink = sink

    def get(self, session_id: str, student_id: str) -> AttendanceRecord | None:
        try:
            record, version = self.table.get(session_id, student_id)
        except RecordNotFound:
            return None
        return AttendanceRecord.from_record(session_id, student_id, record, version)

    def list_records(self, session_id: str) -> list[AttendanceRecord]:
        return [
            AttendanceRecord.from_record(session_id, key, record, version)
            for key, record, version in self.table.scan(session_id)
        ]

    def _update(
        self,
        session_id: str,
        student_id: str,
        mutate: Callable[[AttendanceRecord], bool],
    ) -> AttendanceRecord:
        """
        Read-modify-write one student's row with compare-and-swap, re-reading
        on conflict. `mutate` edits the record in place and returns False when
        there is nothing to write.
        """
        for _ in range(UPDATE_MAX_ATTEMPTS):
            current = self.get(session_id, student_id)
            if current is None:
                fresh = AttendanceRecord(session_id=session_id, student_id=student_id)
                if not mutate(fresh):
                    return fresh
                try:
                    fresh.version = self.table.insert(session_id, student_id, fresh.to_record())
                    return fresh
                except VersionConflict:
                    continue

            if not mutate(current):
                return current
            try:
                current.version = self.table.put(
                    session_id,
                    student_id,
                    current.to_record(),
                    if_version=current.version,
                )
                return current
            except VersionConflict:
                continue
        raise VersionConflict(self.table.name, session_id, student_id)

    def _announce(self, record: AttendanceRecord, **changes) -> None:
        publish_safely(
            self.sink,
            record.session_id,
            EVENT_ATTENDANCE_UPDATE,
            {"student_id": record.student_id, **changes},
        )

    def join(self, session_id: str, student_id: str) -> AttendanceRecord:
        now = self.clock.now()

        def _mutate(rec: AttendanceRecord) -> bool:
            if rec.joined_at is not None:
                return False
            rec.joined_at = now
            return True

        return self._update(session_id, student_id, _mutate)

    def mark_entry(self, session_id: str, student_id: str, status: EntryStatus) -> AttendanceRecord:
        now = self.clock.now()

        def _mutate(rec: AttendanceRecord) -> bool:
            # first entry event wins
            if rec.entry_status is not None:
                return False
            rec.entry_status = status
            rec.entry_at = now
            if rec.joined_at is None:
                rec.joined_at = now
            return True

        record = self._update(session_id, student_id, _mutate)
        self._announce(record, entry_status=record.entry_status.value if record.entry_status else None)
        return record

    def mark_exit_verified(self, session_id: str, student_id: str) -> AttendanceRecord:
        now = self.clock.now()

        def _mutate(rec: AttendanceRecord) -> bool:
            rec.exit_verified = True
            rec.exit_verified_at = now
            return True

        record = self._update(session_id, student_id, _mutate)
        self._announce(record, exit_verified=True)
        return record

    def mark_early_leave(self, session_id: str, student_id: str) -> AttendanceRecord:
        now = self.clock.now()

        def _mutate(rec: AttendanceRecord) -> bool:
            rec.early_leave_at = now
            return True

        record = self._update(session_id, student_id, _mutate)
        self._announce(record, early_leave_at=now)
        return record

    def finalize(self, session_id: str) -> list[AttendanceRecord]:
        """Stamp final_status on every record that does not have one yet."""
        finalized: list[AttendanceRecord] = []
        for record in self.list_records(session_id):

            def _mutate(rec: AttendanceRecord) -> bool:
                if rec.final_status is not None:
                    return False
                rec.final_status = compute_final(rec)
                return True

            finalized.append(self._update(session_id, record.student_id, _mutate))
        logger.info("finalized %d attendance records for session %s", len(finalized), session_id)
        return finalized
