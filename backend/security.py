"""
Bearer tokens for teachers and students.

A token is `qrc1.<claims>.<mac>`: base64url JSON claims followed by an
HMAC-SHA256 over the prefix and claims, keyed with QRCHAIN_SIGNING_KEY.
"""
import base64
import hashlib
import hmac
import json
import time
from typing import Callable, Literal

from fastapi import Depends, Header, HTTPException
from pydantic import BaseModel, ConfigDict, Field, ValidationError

import backend.config as config

Role = Literal["teacher", "student"]
ROLES: frozenset[str] = frozenset({"teacher", "student"})
TOKEN_PREFIX = "qrc1"
ISSUER = "qrchain"


class Principal(BaseModel):
    """Claims carried by a bearer token."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    user_id: str = Field(..., alias="sub", min_length=1)
    role: Role
    issued_at: int = Field(..., alias="iat")
    expires_at: int = Field(..., alias="exp")
    issuer: str = Field(default=ISSUER, alias="iss")

    def claims(self) -> dict:
        return self.model_dump(by_alias=True)


def _encode_segment(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":"), sort_keys=True).encode("utf-8")
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _decode_segment(segment: str) -> object:
    raw = base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))
    return json.loads(raw.decode("utf-8"))


def _mac(signed_part: str) -> str:
    key = config.SIGNING_KEY.encode("utf-8")
    return hmac.new(key, signed_part.encode("ascii"), hashlib.sha256).hexdigest()


def verify_identity_secret(candidate: str) -> bool:
    """An empty QRCHAIN_IDENTITY_SECRET disables the exchange entirely."""
    expected = config.IDENTITY_SECRET.strip()
    if not expected:
        return False
    return hmac.compare_digest((candidate or "").strip(), expected)


def issue_session_token(user_id: str, role: Role) -> tuple[str, Principal]:
    if role not in ROLES:
        raise ValueError(f"unknown role: {role}")
    issued_at = int(time.time())
    principal = Principal(
        user_id=user_id.strip(),
        role=role,
        issued_at=issued_at,
        expires_at=issued_at + config.AUTH_TOKEN_TTL_SECONDS,
    )
    signed_part = f"{TOKEN_PREFIX}.{_encode_segment(principal.claims())}"
    return f"{signed_part}.{_mac(signed_part)}", principal


def decode_session_token(token: str) -> Principal | None:
    prefix, _, rest = (token or "").partition(".")
    claims_segment, _, mac = rest.rpartition(".")
    if prefix != TOKEN_PREFIX or not claims_segment or not mac:
        return None
    if not hmac.compare_digest(mac, _mac(f"{prefix}.{claims_segment}")):
        return None

    try:
        principal = Principal.model_validate(_decode_segment(claims_segment))
    except (ValueError, ValidationError):
        return None
    if principal.issuer != ISSUER or not principal.user_id.strip():
        return None
    if principal.expires_at < int(time.time()):
        return None
    return principal


def require_principal(authorization: str | None = Header(default=None)) -> Principal:
    scheme, _, token = (authorization or "").partition(" ")
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    principal = decode_session_token(token.strip())
    if principal is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")
    return principal


def require_role(role: Role) -> Callable[..., Principal]:
    def _dependency(principal: Principal = Depends(require_principal)) -> Principal:
        if principal.role != role:
            raise HTTPException(status_code=403, detail=f"{role.capitalize()} role required.")
        return principal

    return _dependency


require_teacher = require_role("teacher")
require_student = require_role("student")
