import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_int(value: str | None, fallback: int, *, minimum: int = 0) -> int:
    if value is None or not value.strip():
        return fallback
    try:
        return max(minimum, int(value.strip()))
    except ValueError:
        return fallback


def _parse_float(value: str | None, fallback: float, *, minimum: float = 0.0) -> float:
    if value is None or not value.strip():
        return fallback
    try:
        return max(minimum, float(value.strip()))
    except ValueError:
        return fallback


def _parse_store_backend(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if normalized == "memory":
        return "memory"
    return "sqlite"


DB_PATH = Path(os.getenv("QRCHAIN_DB_PATH", BASE_DIR / "database" / "qrchain.db"))
STORE_BACKEND = _parse_store_backend(os.getenv("QRCHAIN_STORE_BACKEND"))

SIGNING_KEY = os.getenv("QRCHAIN_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = _parse_int(os.getenv("QRCHAIN_AUTH_TOKEN_TTL_SECONDS"), 43200, minimum=1)
# Shared secret of the identity provider allowed to mint bearer tokens.
IDENTITY_SECRET = os.getenv("QRCHAIN_IDENTITY_SECRET", "").strip()

CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("QRCHAIN_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("QRCHAIN_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("QRCHAIN_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept", "X-Request-Id", "X-Device-Fingerprint"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("QRCHAIN_CORS_ALLOW_CREDENTIALS"), True)

LOG_LEVEL = (os.getenv("QRCHAIN_LOG_LEVEL", "INFO").strip() or "INFO").upper()

# Token lifetimes
CHAIN_TOKEN_TTL_SECONDS = _parse_int(os.getenv("QRCHAIN_CHAIN_TOKEN_TTL_SECONDS"), 20, minimum=1)
LATE_ROTATION_SECONDS = _parse_int(os.getenv("QRCHAIN_LATE_ROTATION_SECONDS"), 60, minimum=1)
EARLY_LEAVE_ROTATION_SECONDS = _parse_int(os.getenv("QRCHAIN_EARLY_LEAVE_ROTATION_SECONDS"), 60, minimum=1)
OWNER_TRANSFER = _parse_bool(os.getenv("QRCHAIN_OWNER_TRANSFER"), True)

# Chains
STALL_THRESHOLD_SECONDS = _parse_int(os.getenv("QRCHAIN_STALL_THRESHOLD_SECONDS"), 90, minimum=1)
RESEED_SELECTION_ATTEMPTS = _parse_int(os.getenv("QRCHAIN_RESEED_SELECTION_ATTEMPTS"), 5, minimum=1)

# Background sweep
SWEEP_ENABLED = _parse_bool(os.getenv("QRCHAIN_SWEEP_ENABLED"), True)
SWEEP_INTERVAL_SECONDS = _parse_float(os.getenv("QRCHAIN_SWEEP_INTERVAL_SECONDS"), 60.0, minimum=1.0)

# Anti-cheat gates
DEVICE_RATE_LIMIT = _parse_int(os.getenv("QRCHAIN_DEVICE_RATE_LIMIT"), 10, minimum=1)
DEVICE_RATE_WINDOW_SECONDS = _parse_int(os.getenv("QRCHAIN_DEVICE_RATE_WINDOW_SECONDS"), 60, minimum=1)
IP_RATE_LIMIT = _parse_int(os.getenv("QRCHAIN_IP_RATE_LIMIT"), 50, minimum=1)
IP_RATE_WINDOW_SECONDS = _parse_int(os.getenv("QRCHAIN_IP_RATE_WINDOW_SECONDS"), 60, minimum=1)
WIFI_SSID_ALLOWLIST = _parse_csv(os.getenv("QRCHAIN_WIFI_SSID_ALLOWLIST"), [])

# Store fault handling
STORE_RETRY_ATTEMPTS = _parse_int(os.getenv("QRCHAIN_STORE_RETRY_ATTEMPTS"), 3, minimum=1)
STORE_RETRY_INITIAL_DELAY_SECONDS = _parse_float(os.getenv("QRCHAIN_STORE_RETRY_INITIAL_DELAY_SECONDS"), 0.1)
STORE_RETRY_MAX_DELAY_SECONDS = _parse_float(os.getenv("QRCHAIN_STORE_RETRY_MAX_DELAY_SECONDS"), 2.0)


@dataclass(frozen=True)
class EngineSettings:
    chain_token_ttl_seconds: int = CHAIN_TOKEN_TTL_SECONDS
    late_rotation_seconds: int = LATE_ROTATION_SECONDS
    early_leave_rotation_seconds: int = EARLY_LEAVE_ROTATION_SECONDS
    owner_transfer: bool = OWNER_TRANSFER
    stall_threshold_seconds: int = STALL_THRESHOLD_SECONDS
    reseed_selection_attempts: int = RESEED_SELECTION_ATTEMPTS
    sweep_interval_seconds: float = SWEEP_INTERVAL_SECONDS
    device_rate_limit: int = DEVICE_RATE_LIMIT
    device_rate_window_seconds: int = DEVICE_RATE_WINDOW_SECONDS
    ip_rate_limit: int = IP_RATE_LIMIT
    ip_rate_window_seconds: int = IP_RATE_WINDOW_SECONDS
    wifi_ssid_allowlist: list[str] = field(default_factory=lambda: list(WIFI_SSID_ALLOWLIST))
    store_retry_attempts: int = STORE_RETRY_ATTEMPTS
    store_retry_initial_delay_seconds: float = STORE_RETRY_INITIAL_DELAY_SECONDS
    store_retry_max_delay_seconds: float = STORE_RETRY_MAX_DELAY_SECONDS
