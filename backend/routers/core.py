from fastapi import APIRouter, Depends

from backend.config import STORE_BACKEND, SWEEP_ENABLED
from backend.engine import Engine, get_engine

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config/engine")
def engine_config(engine: Engine = Depends(get_engine)):
    settings = engine.settings
    return {
        "store_backend": STORE_BACKEND,
        "chain_token_ttl_seconds": settings.chain_token_ttl_seconds,
        "late_rotation_seconds": settings.late_rotation_seconds,
        "early_leave_rotation_seconds": settings.early_leave_rotation_seconds,
        "owner_transfer": settings.owner_transfer,
        "stall_threshold_seconds": settings.stall_threshold_seconds,
        "sweep_enabled": SWEEP_ENABLED,
        "sweep_interval_seconds": settings.sweep_interval_seconds,
        "device_rate_limit": settings.device_rate_limit,
        "device_rate_window_seconds": settings.device_rate_window_seconds,
        "ip_rate_limit": settings.ip_rate_limit,
        "ip_rate_window_seconds": settings.ip_rate_window_seconds,
        "wifi_allowlist_configured": bool(settings.wifi_ssid_allowlist),
    }
