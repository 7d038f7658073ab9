"""
JWT Service — token generation, verification and refresh sessions.

Access token:  15 minutes (JWT_ACCESS_EXPIRES)
Refresh token: 7 days     (JWT_REFRESH_EXPIRES)
Algorithm:     HS256

Access token payload:
{
    "sub": "<user ULID>",
    "tenant_id": "<tenant ULID>",     # omitted for platform users
    "roles": ["project_manager", ...],
    "type": "access",
    "iat": <issued_at>,
    "exp": <expires_at>,
    "jti": "<ULID>"
}

Refresh tokens are never stored: the ``sessions`` table keeps their SHA-256
hash, and every refresh rotates the session (old row revoked, new row added
in one commit).
"""

import hashlib
from datetime import datetime, timedelta, timezone

import jwt
from flask import current_app

from app.models import db
from app.models.auth import Session
from app.utils.ids import new_ulid

# ─── Defaults ────────────────────────────────────────────────
DEFAULT_ACCESS_EXPIRES = 900       # 15 minutes
DEFAULT_REFRESH_EXPIRES = 604800   # 7 days
ALGORITHM = "HS256"


def _get_secret():
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def _get_access_expires():
    return current_app.config.get("JWT_ACCESS_EXPIRES", DEFAULT_ACCESS_EXPIRES)


def _get_refresh_expires():
    return current_app.config.get("JWT_REFRESH_EXPIRES", DEFAULT_REFRESH_EXPIRES)


def _base_claims(user_id: str, tenant_id: str | None, token_type: str, lifetime: int) -> dict:
    now = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "type": token_type,
        "iat": now,
        "exp": now + timedelta(seconds=lifetime),
        "jti": new_ulid(),
    }
    if tenant_id is not None:
        claims["tenant_id"] = tenant_id
    return claims


# ═══════════════════════════════════════════════════════════════
# Token Generation
# ═══════════════════════════════════════════════════════════════
def generate_access_token(user_id: str, tenant_id: str | None, roles: list[str]) -> str:
    """Generate a short-lived access token."""
    claims = _base_claims(user_id, tenant_id, "access", _get_access_expires())
    claims["roles"] = list(roles)
    return jwt.encode(claims, _get_secret(), algorithm=ALGORITHM)


def generate_refresh_token(user_id: str, tenant_id: str | None) -> tuple[str, str, datetime]:
    """
    Generate a long-lived refresh token.
    Returns: (raw_token, token_hash, expires_at)
    """
    claims = _base_claims(user_id, tenant_id, "refresh", _get_refresh_expires())
    raw_token = jwt.encode(claims, _get_secret(), algorithm=ALGORITHM)
    return raw_token, hash_token(raw_token), claims["exp"]


def generate_token_pair(user_id: str, tenant_id: str | None, roles: list[str]) -> dict:
    """Generate both access + refresh tokens."""
    access_token = generate_access_token(user_id, tenant_id, roles)
    refresh_token, token_hash, expires_at = generate_refresh_token(user_id, tenant_id)
    return {
        "access_token": access_token,
        "refresh_token": refresh_token,
        "token_hash": token_hash,
        "expires_at": expires_at,
        "token_type": "Bearer",
        "expires_in": _get_access_expires(),
    }


# ═══════════════════════════════════════════════════════════════
# Token Verification
# ═══════════════════════════════════════════════════════════════
def decode_token(token: str, expected_type: str = "access") -> dict:
    """
    Decode and verify a JWT token.

    Raises jwt.exceptions on failure (ExpiredSignatureError, InvalidTokenError, ...).
    """
    payload = jwt.decode(token, _get_secret(), algorithms=[ALGORITHM])
    if payload.get("type") != expected_type:
        raise jwt.InvalidTokenError(f"Expected {expected_type} token, got {payload.get('type')}")
    return payload


def decode_access_token(token: str) -> dict:
    return decode_token(token, expected_type="access")


def decode_refresh_token(token: str) -> dict:
    return decode_token(token, expected_type="refresh")


def hash_token(token: str) -> str:
    """SHA-256 hash of a token (never store raw refresh tokens)."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


# ═══════════════════════════════════════════════════════════════
# Session Management
# ═══════════════════════════════════════════════════════════════

def create_session(
    user_id: str,
    token_hash: str,
    ip_address: str | None,
    user_agent: str | None,
    expires_at: datetime,
) -> Session:
    """Persist a new refresh-token session."""
    session = Session(
        user_id=user_id,
        token_hash=token_hash,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:500],
        expires_at=expires_at,
    )
    db.session.add(session)
    db.session.commit()
    return session


def get_active_session_by_token(user_id: str, token_hash: str) -> Session | None:
    return Session.query.filter_by(
        user_id=user_id, token_hash=token_hash, is_active=True
    ).first()


def revoke_session_by_token(token_hash: str) -> bool:
    """Revoke the active session holding *token_hash*.  False if none matched."""
    session = Session.query.filter_by(token_hash=token_hash, is_active=True).first()
    if session is None:
        return False
    session.is_active = False
    db.session.commit()
    return True


def revoke_all_user_sessions(user_id: str, *, commit: bool = True) -> int:
    """Logout-everywhere.  Returns the number of sessions revoked."""
    count = Session.query.filter_by(user_id=user_id, is_active=True).update(
        {"is_active": False}, synchronize_session=False
    )
    if commit:
        db.session.commit()
    return count


def rotate_session(
    old_session: Session,
    user_id: str,
    new_token_hash: str,
    new_expires_at: datetime,
    ip_address: str | None,
    user_agent: str | None,
) -> Session:
    """Revoke *old_session* and create its replacement in one commit."""
    old_session.is_active = False
    old_session.last_used_at = datetime.now(timezone.utc)

    new_session = Session(
        user_id=user_id,
        token_hash=new_token_hash,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:500],
        expires_at=new_expires_at,
    )
    db.session.add(new_session)
    db.session.commit()
    return new_session
