# Authentication Module - JWT Bearer Tokens (Procedural)
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

import jwt

from posture_sync import config
from posture_sync import logger
from posture_sync.models import Principal


def create_jwt_token(user_id: str, expires_in_hours: float = None) -> str:
    """
    Create JWT token for a user (development helper, no user registry)

    Args:
        user_id: Identity that owns the summaries
        expires_in_hours: Lifetime (default JWT_EXPIRATION_HOURS)

    Returns:
        JWT token string
    """
    hours = config.JWT_EXPIRATION_HOURS if expires_in_hours is None else expires_in_hours
    now = datetime.now(timezone.utc)
    expiration = now + timedelta(hours=hours)

    payload = {
        "sub": str(user_id),
        "exp": expiration,
        "iat": now
    }

    token = jwt.encode(payload, config.JWT_SECRET_KEY, algorithm=config.JWT_ALGORITHM)

    logger.log_auth("Token Created", {
        "user_id": user_id,
        "expires_at": expiration.isoformat()
    })

    return token


def decode_jwt_token(token: str) -> Optional[Dict]:
    """
    Decode and verify JWT token

    Returns:
        Decoded payload dict or None if invalid
    """
    try:
        return jwt.decode(token, config.JWT_SECRET_KEY, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.log_warning("JWT Rejected", {"reason": "Token expired"})
        return None
    except jwt.InvalidTokenError as e:
        logger.log_warning("JWT Rejected", {"reason": str(e)})
        return None


def extract_user_id(token: str) -> Optional[str]:
    payload = decode_jwt_token(token)
    if payload:
        return payload.get("sub")
    return None


def static_token_provider(token: Optional[str]):
    """
    auth_provider for the sync scheduler backed by a fixed bearer token

    The principal is re-read from the token on every call, so an expired
    token surfaces as AuthRequired at the next flush.
    """
    def provider() -> Optional[Principal]:
        if not token:
            return None
        try:
            payload = jwt.decode(token, options={"verify_signature": False, "verify_exp": False})
        except jwt.InvalidTokenError:
            return None
        exp = payload.get("exp")
        if exp is not None and exp <= datetime.now(timezone.utc).timestamp():
            return None
        user_id = payload.get("sub")
        return Principal(user_id=str(user_id), token=token) if user_id else None

    return provider
