"""
Domain records for sessions, tokens, chains and attendance.

Each record round-trips through the record store as a plain JSON dict
(`to_record` / `from_record`); partition and row keys live in the store, not
in the body, but are copied back onto the model when it is loaded.
"""
from enum import Enum
from typing import Any, ClassVar, Literal, TypedDict

from pydantic import BaseModel, Field


class TokenKind(str, Enum):
    SESSION_JOIN = "SESSION_JOIN"
    CHAIN = "CHAIN"
    EXIT_CHAIN = "EXIT_CHAIN"
    LATE_ENTRY = "LATE_ENTRY"
    EARLY_LEAVE = "EARLY_LEAVE"


class TokenStatus(str, Enum):
    ACTIVE = "ACTIVE"
    USED = "USED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class ChainPhase(str, Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"


class ChainState(str, Enum):
    ACTIVE = "ACTIVE"
    STALLED = "STALLED"
    COMPLETED = "COMPLETED"


class EntryStatus(str, Enum):
    PRESENT_ENTRY = "PRESENT_ENTRY"
    LATE_ENTRY = "LATE_ENTRY"


class FinalStatus(str, Enum):
    PRESENT = "PRESENT"
    LATE = "LATE"
    LEFT_EARLY = "LEFT_EARLY"
    EARLY_LEAVE = "EARLY_LEAVE"
    ABSENT = "ABSENT"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"


class ScanFlow(str, Enum):
    CHAIN = "CHAIN"
    EXIT_CHAIN = "EXIT_CHAIN"
    LATE_ENTRY = "LATE_ENTRY"
    EARLY_LEAVE = "EARLY_LEAVE"


CHAIN_KINDS = frozenset({TokenKind.CHAIN, TokenKind.EXIT_CHAIN})
ROTATING_KINDS = frozenset({TokenKind.LATE_ENTRY, TokenKind.EARLY_LEAVE})

FLOW_TOKEN_KIND: dict[ScanFlow, TokenKind] = {
    ScanFlow.CHAIN: TokenKind.CHAIN,
    ScanFlow.EXIT_CHAIN: TokenKind.EXIT_CHAIN,
    ScanFlow.LATE_ENTRY: TokenKind.LATE_ENTRY,
    ScanFlow.EARLY_LEAVE: TokenKind.EARLY_LEAVE,
}


def chain_token_kind(phase: ChainPhase) -> TokenKind:
    return TokenKind.CHAIN if phase == ChainPhase.ENTRY else TokenKind.EXIT_CHAIN


def chain_phase_for(kind: TokenKind) -> ChainPhase:
    return ChainPhase.ENTRY if kind == TokenKind.CHAIN else ChainPhase.EXIT


class StoredModel(BaseModel):
    # Keys are carried by the store, the rest is the JSON body.
    key_fields: ClassVar[tuple[str, ...]] = ()

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"version", *self.key_fields})


class Token(StoredModel):
    key_fields: ClassVar[tuple[str, ...]] = ("token_id", "session_id")

    token_id: str
    session_id: str
    kind: TokenKind
    chain_id: str | None = None
    issued_to: str | None = None
    sequence: int | None = None
    issued_at: float
    expires_at: float
    status: TokenStatus = TokenStatus.ACTIVE
    single_use: bool = True
    used_at: float | None = None
    used_by: str | None = None
    consume_request_id: str | None = None
    version: str = ""

    @classmethod
    def from_record(cls, session_id: str, token_id: str, record: dict[str, Any], version: str) -> "Token":
        return cls(token_id=token_id, session_id=session_id, version=version, **record)


class Chain(StoredModel):
    key_fields: ClassVar[tuple[str, ...]] = ("chain_id", "session_id")

    chain_id: str
    session_id: str
    phase: ChainPhase
    index: int = 0
    state: ChainState = ChainState.ACTIVE
    last_holder: str | None = None
    last_sequence: int = 0
    last_activity_at: float
    current_token_id: str | None = None
    created_at: float
    previous_chain_id: str | None = None
    version: str = ""

    @classmethod
    def from_record(cls, session_id: str, chain_id: str, record: dict[str, Any], version: str) -> "Chain":
        return cls(chain_id=chain_id, session_id=session_id, version=version, **record)


class AttendanceRecord(StoredModel):
    key_fields: ClassVar[tuple[str, ...]] = ("student_id", "session_id")

    session_id: str
    student_id: str
    joined_at: float | None = None
    entry_status: EntryStatus | None = None
    entry_at: float | None = None
    exit_verified: bool = False
    exit_verified_at: float | None = None
    early_leave_at: float | None = None
    final_status: FinalStatus | None = None
    version: str = ""

    @classmethod
    def from_record(
        cls,
        session_id: str,
        student_id: str,
        record: dict[str, Any],
        version: str,
    ) -> "AttendanceRecord":
        return cls(session_id=session_id, student_id=student_id, version=version, **record)


class Geofence(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    radius_meters: float = Field(..., gt=0, allow_inf_nan=False)


class SessionConstraints(BaseModel):
    geofence: Geofence | None = None
    enforce_geofence: bool = True
    wifi_allowlist: list[str] = Field(default_factory=list)


class Session(StoredModel):
    key_fields: ClassVar[tuple[str, ...]] = ("session_id",)

    session_id: str
    class_id: str
    teacher_id: str
    start_at: float
    end_at: float
    late_cutoff_minutes: int = 15
    exit_window_minutes: int = 10
    status: SessionStatus = SessionStatus.ACTIVE
    owner_transfer: bool = True
    constraints: SessionConstraints | None = None
    late_entry_active: bool = False
    current_late_token_id: str | None = None
    early_leave_active: bool = False
    current_early_token_id: str | None = None
    created_at: float
    ended_at: float | None = None
    version: str = ""

    @classmethod
    def from_record(cls, session_id: str, record: dict[str, Any], version: str) -> "Session":
        return cls(session_id=session_id, version=version, **record)

    @property
    def late_cutoff_at(self) -> float:
        return self.start_at + self.late_cutoff_minutes * 60


class GpsCoordinates(BaseModel):
    latitude: float = Field(..., ge=-90, le=90, allow_inf_nan=False)
    longitude: float = Field(..., ge=-180, le=180, allow_inf_nan=False)
    accuracy: float | None = Field(default=None, ge=0, allow_inf_nan=False)


class ScanMetadata(BaseModel):
    device_fingerprint: str
    ip: str = "unknown"
    gps: GpsCoordinates | None = None
    bssid: str | None = None
    user_agent: str | None = None


ConsumeOutcome = Literal["SUCCESS", "NOT_FOUND", "ALREADY_USED", "EXPIRED"]

ScanOutcome = Literal[
    "SUCCESS",
    "NOT_FOUND",
    "ALREADY_USED",
    "EXPIRED",
    "RATE_LIMITED",
    "LOCATION_VIOLATION",
    "INVALID_TOKEN",
    "INVALID_STATE",
    "UNKNOWN_OUTCOME",
]


class ConsumeResult(TypedDict):
    outcome: ConsumeOutcome
    token: Token | None


class ScanResult(TypedDict):
    success: bool
    outcome: ScanOutcome
    flow: str
    session_id: str
    token_id: str
    scanner_id: str
    holder_marked: str | None
    new_holder: str | None
    new_token_id: str | None
    reasons: list[str]
    retry_after_seconds: int | None
