import logging
import math
import threading
from collections import deque
from typing import TypedDict

import numpy as np

from backend.config import EngineSettings
from backend.models import ScanMetadata, Session, SessionConstraints, GpsCoordinates
from backend.services.audit import ScanAuditLog
from backend.services.clock import Clock

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000.0

RATE_REASON_DEVICE = "DEVICE_LIMIT"
RATE_REASON_IP = "IP_LIMIT"
LOCATION_REASON_GEOFENCE = "GEOFENCE_VIOLATION"
LOCATION_REASON_WIFI = "WIFI_VIOLATION"


def haversine_meters(lat1, lon1, lat2, lon2):
    """
    Great-circle distance in meters. Accepts scalars or numpy arrays;
    scalar inputs return a float.
    """
    phi1 = np.radians(lat1)
    phi2 = np.radians(lat2)
    d_phi = np.radians(np.subtract(lat2, lat1))
    d_lambda = np.radians(np.subtract(lon2, lon1))

    a = np.sin(d_phi / 2) ** 2 + np.cos(phi1) * np.cos(phi2) * np.sin(d_lambda / 2) ** 2
    # rounding can push near-antipodal pairs just past 1
    a = np.clip(a, 0.0, 1.0)
    distance = 2 * EARTH_RADIUS_METERS * np.arctan2(np.sqrt(a), np.sqrt(1 - a))
    if np.ndim(distance) == 0:
        return float(distance)
    return distance


class SlidingWindowLimiter:
    """
    Per-key timestamp log. A hit at `now` is allowed iff fewer than `limit`
    recorded hits fall in (now - window, now]. Rejections are not recorded,
    so a blocked client recovers as soon as its old hits age out.

    Process-local by nature; single-use correctness never depends on it.
    """

    def __init__(self, limit: int, window_seconds: float):
        self.limit = limit
        self.window_seconds = window_seconds
        self._lock = threading.Lock()
        self._hits: dict[str, deque[float]] = {}
        self._swept_at: float | None = None

    def _sweep(self, now: float) -> None:
        # drop keys whose hits have all aged out, at most once per window
        if self._swept_at is not None and now - self._swept_at < self.window_seconds:
            return
        self._swept_at = now
        floor = now - self.window_seconds
        for key in [k for k, hits in self._hits.items() if not hits or hits[-1] <= floor]:
            del self._hits[key]

    def _prune(self, key: str, now: float) -> deque[float] | None:
        self._sweep(now)
        hits = self._hits.get(key)
        if hits is None:
            return None
        floor = now - self.window_seconds
        while hits and hits[0] <= floor:
            hits.popleft()
        if not hits:
            del self._hits[key]
            return None
        return hits

    def allows(self, key: str, now: float) -> bool:
        with self._lock:
            hits = self._prune(key, now)
            return hits is None or len(hits) < self.limit

    def record(self, key: str, now: float) -> None:
        with self._lock:
            hits = self._prune(key, now)
            if hits is None:
                hits = self._hits[key] = deque()
            hits.append(now)

    def retry_after(self, key: str, now: float) -> int:
        with self._lock:
            hits = self._prune(key, now)
            if hits is None or len(hits) < self.limit:
                return 0
            return max(1, math.ceil(hits[0] + self.window_seconds - now))

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()
            self._swept_at = None


class RateLimitCheck(TypedDict):
    allowed: bool
    reason: str | None
    retry_after_seconds: int | None


class LocationCheck(TypedDict):
    valid: bool
    reason: str | None
    distance_meters: float | None
    warning: str | None


class GateResult(TypedDict):
    allowed: bool
    reasons: list[str]
    rate_limit: RateLimitCheck
    location: LocationCheck


def validate_location(
    constraints: SessionConstraints | None,
    gps: GpsCoordinates | None,
    bssid: str | None,
    *,
    fallback_allowlist: list[str] | None = None,
) -> LocationCheck:
    distance: float | None = None
    warning: str | None = None

    geofence = constraints.geofence if constraints else None
    enforce = constraints.enforce_geofence if constraints else True
    if geofence is not None:
        if gps is None:
            if enforce:
                return {
                    "valid": False,
                    "reason": LOCATION_REASON_GEOFENCE,
                    "distance_meters": None,
                    "warning": "Location permission required",
                }
            warning = "Location not provided"
        else:
            distance = haversine_meters(geofence.latitude, geofence.longitude, gps.latitude, gps.longitude)
            # NaN never compares <=, so a non-finite distance is rejected
            if not distance <= geofence.radius_meters:
                warning = f"{distance:.0f}m from classroom (limit: {geofence.radius_meters:g}m)"
                if enforce:
                    return {
                        "valid": False,
                        "reason": LOCATION_REASON_GEOFENCE,
                        "distance_meters": distance,
                        "warning": warning,
                    }
        if warning:
            logger.warning("geofence not enforced: %s", warning)

    allowlist = (constraints.wifi_allowlist if constraints else None) or fallback_allowlist or []
    if allowlist:
        allowed = {entry.strip().lower() for entry in allowlist if entry.strip()}
        if not bssid or bssid.strip().lower() not in allowed:
            return {
                "valid": False,
                "reason": LOCATION_REASON_WIFI,
                "distance_meters": distance,
                "warning": warning,
            }

    return {"valid": True, "reason": None, "distance_meters": distance, "warning": warning}


class AntiCheatGate:
    def __init__(self, settings: EngineSettings, clock: Clock, audit: ScanAuditLog):
        self.settings = settings
        self.clock = clock
        self.audit = audit
        self.device_limiter = SlidingWindowLimiter(settings.device_rate_limit, settings.device_rate_window_seconds)
        self.ip_limiter = SlidingWindowLimiter(settings.ip_rate_limit, settings.ip_rate_window_seconds)

    def check_rate_limit(self, device_fingerprint: str, ip: str) -> RateLimitCheck:
        now = self.clock.now()
        if not self.device_limiter.allows(device_fingerprint, now):
            return {
                "allowed": False,
                "reason": RATE_REASON_DEVICE,
                "retry_after_seconds": self.device_limiter.retry_after(device_fingerprint, now),
            }
        if not self.ip_limiter.allows(ip, now):
            return {
                "allowed": False,
                "reason": RATE_REASON_IP,
                "retry_after_seconds": self.ip_limiter.retry_after(ip, now),
            }
        self.device_limiter.record(device_fingerprint, now)
        self.ip_limiter.record(ip, now)
        return {"allowed": True, "reason": None, "retry_after_seconds": None}

    def check(
        self,
        *,
        session: Session,
        flow: str,
        scanner_id: str,
        metadata: ScanMetadata,
        token_id: str | None = None,
        request_id: str | None = None,
    ) -> GateResult:
        """
        Run both checks, then write the gate outcome to the audit trail
        before anything touches the token.
        """
        rate = self.check_rate_limit(metadata.device_fingerprint, metadata.ip)
        location = validate_location(
            session.constraints,
            metadata.gps,
            metadata.bssid,
            fallback_allowlist=self.settings.wifi_ssid_allowlist,
        )

        reasons: list[str] = []
        if not rate["allowed"]:
            reasons.append(str(rate["reason"]))
        if not location["valid"]:
            reasons.append(str(location["reason"]))

        if not rate["allowed"]:
            result = "RATE_LIMITED"
        elif not location["valid"]:
            result = "LOCATION_VIOLATION"
        else:
            result = "PASSED"

        self.audit.log_scan(
            session_id=session.session_id,
            flow=flow,
            stage="GATE",
            result=result,
            error=",".join(reasons) or location["warning"],
            token_id=token_id,
            scanner_id=scanner_id,
            metadata=metadata,
            request_id=request_id,
        )
        return {
            "allowed": not reasons,
            "reasons": reasons,
            "rate_limit": rate,
            "location": location,
        }

    def reset(self) -> None:
        self.device_limiter.reset()
        self.ip_limiter.reset()
