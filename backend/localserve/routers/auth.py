from fastapi import APIRouter, Depends, HTTPException

from localserve.auth import DEMO_PASSWORD, TokenClaims, create_access_token, require_authenticated_claims
from localserve.models import AuthLoginRequest, AuthLoginResponse, AuthMeResponse
from localserve.services.marketplace_store import marketplace_store

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/login", response_model=AuthLoginResponse)
def login(payload: AuthLoginRequest):
    user_id = payload.user_id.strip()
    if not user_id:
        raise HTTPException(status_code=400, detail="user_id is required")
    if payload.password != DEMO_PASSWORD:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    role = marketplace_store.ensure_user(user_id, display_name=payload.display_name, email=payload.email)
    token, expires_at = create_access_token(user_id=user_id, role=role)
    return AuthLoginResponse(access_token=token, user_id=user_id, role=role, expires_at=expires_at)


@router.get("/me", response_model=AuthMeResponse)
def me(claims: TokenClaims = Depends(require_authenticated_claims)):
    return AuthMeResponse(
        user_id=claims.user_id,
        role=claims.role,
        is_admin=marketplace_store.is_admin(claims.user_id),
    )
