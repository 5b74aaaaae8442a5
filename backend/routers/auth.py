import time

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import ROLES, Principal, issue_session_token, require_principal, verify_identity_secret

router = APIRouter()


class TokenRequest(BaseModel):
    user_id: str
    role: str
    identity_secret: str


@router.post("/auth/token")
def issue_token(payload: TokenRequest):
    """
    Exchange an identity-provider assertion for a bearer token. The provider
    proves itself with the shared identity secret; user id and role are
    taken as given.
    """
    user_id = payload.user_id.strip()
    role = payload.role.strip().lower()

    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required.")
    if role not in ROLES:
        raise HTTPException(status_code=400, detail="role must be teacher or student.")
    if not verify_identity_secret(payload.identity_secret):
        raise HTTPException(status_code=401, detail="Invalid identity secret.")

    token, principal = issue_session_token(user_id, role)  # type: ignore[arg-type]
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "user_id": principal.user_id,
        "role": principal.role,
        "expires_at": principal.expires_at,
        "expires_in": max(0, principal.expires_at - now),
    }


@router.get("/auth/me")
def auth_me(principal: Principal = Depends(require_principal)):
    return {
        "user_id": principal.user_id,
        "role": principal.role,
        "expires_at": principal.expires_at,
        "issued_at": principal.issued_at,
    }
