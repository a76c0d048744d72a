import base64
import hashlib
import hmac
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from fastapi import Header, HTTPException, status

DEFAULT_TOKEN_TTL_HOURS = 24


def _parse_ttl_hours(raw: Optional[str]) -> int:
    try:
        value = int(raw or DEFAULT_TOKEN_TTL_HOURS)
    except ValueError:
        return DEFAULT_TOKEN_TTL_HOURS
    return value if value > 0 else DEFAULT_TOKEN_TTL_HOURS


TOKEN_TTL_HOURS = _parse_ttl_hours(os.getenv("AUTH_TOKEN_TTL_HOURS"))
AUTH_REQUIRED = os.getenv("AUTH_REQUIRED", "false").lower() in {"1", "true", "yes"}
DEMO_PASSWORD = os.getenv("AUTH_DEMO_PASSWORD", "localserve-demo")
_AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me")


@dataclass(frozen=True)
class TokenClaims:
    """What a bearer token vouches for: the marketplace user and the role they logged in with."""

    user_id: str
    role: str
    expires_at: int


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _b64urldecode(value: str) -> bytes:
    padding = "=" * ((4 - len(value) % 4) % 4)
    return base64.urlsafe_b64decode((value + padding).encode("utf-8"))


def _sign(payload: bytes) -> bytes:
    return hmac.new(_AUTH_SECRET.encode("utf-8"), payload, hashlib.sha256).digest()


def create_access_token(user_id: str, role: str = "user") -> tuple[str, str]:
    """Issue a signed ``user|role|expiry`` token and return it with its ISO expiry."""
    expiry = datetime.now(timezone.utc) + timedelta(hours=TOKEN_TTL_HOURS)
    payload = f"{user_id}|{role}|{int(expiry.timestamp())}".encode("utf-8")
    token = f"{_b64url(payload)}.{_b64url(_sign(payload))}"
    return token, expiry.isoformat()


def decode_access_token(token: str) -> Optional[TokenClaims]:
    try:
        payload_part, sig_part = token.split(".", 1)
        payload = _b64urldecode(payload_part)
        sent_sig = _b64urldecode(sig_part)
    except ValueError:
        return None
    if not hmac.compare_digest(sent_sig, _sign(payload)):
        return None
    try:
        user_id, role, expiry_ts = payload.decode("utf-8").rsplit("|", 2)
        expires_at = int(expiry_ts)
    except ValueError:
        return None
    if datetime.now(timezone.utc).timestamp() > expires_at:
        return None
    return TokenClaims(user_id=user_id, role=role, expires_at=expires_at)


def verify_access_token(token: str) -> Optional[str]:
    claims = decode_access_token(token)
    return claims.user_id if claims else None


def parse_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2 or parts[0].lower() != "bearer":
        return None
    return parts[1].strip() or None


def resolve_request_claims(authorization: Optional[str]) -> Optional[TokenClaims]:
    token = parse_bearer_token(authorization)
    if not token:
        return None
    return decode_access_token(token)


def resolve_request_user(authorization: Optional[str]) -> Optional[str]:
    claims = resolve_request_claims(authorization)
    return claims.user_id if claims else None


def require_authenticated_claims(authorization: Optional[str] = Header(default=None)) -> TokenClaims:
    claims = resolve_request_claims(authorization)
    if not claims:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid or missing bearer token")
    return claims


def require_authenticated_user(authorization: Optional[str] = Header(default=None)) -> str:
    return require_authenticated_claims(authorization).user_id


def assert_actor_authorized(
    actor_user_id: str,
    authorization: Optional[str] = Header(default=None),
) -> None:
    """Reject requests whose bearer token names someone other than the actor.

    Anonymous calls pass unless ``AUTH_REQUIRED`` is set.
    """
    token_user = resolve_request_user(authorization)
    if not token_user:
        if AUTH_REQUIRED:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Authentication required")
        return
    if token_user != actor_user_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Token user does not match actor user")


def assert_party_authorized(
    actor_user_id: str,
    allowed_user_ids: Iterable[str],
    authorization: Optional[str] = None,
    detail: str = "Not a party to this resource",
) -> None:
    """Like ``assert_actor_authorized``, and the actor must also be one of ``allowed_user_ids``."""
    assert_actor_authorized(actor_user_id=actor_user_id, authorization=authorization)
    if actor_user_id not in set(allowed_user_ids):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)
