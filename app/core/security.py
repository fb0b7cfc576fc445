# app/core/security.py
from datetime import datetime, timedelta, timezone
from typing import Optional
from jose import jwt, JWTError

from app.config import settings


def create_access_token(
    data: dict,
    expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token

    Args:
        data: Data to encode in the token
        expires_delta: Token expiration time (optional)

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def create_agent_token(agent_id: int, tenant_id: int, expires_delta: Optional[timedelta] = None) -> str:
    """Token carrying a verified agent identity for the operator console"""
    return create_access_token(
        {"sub": str(agent_id), "tenant_id": tenant_id, "type": "agent"},
        expires_delta,
    )


def create_channel_token(tenant_id: int, channel: str = "widget",
                         expires_delta: Optional[timedelta] = None) -> str:
    """Service token for a channel integration (widget, WhatsApp, voice)"""
    return create_access_token(
        {"sub": channel, "tenant_id": tenant_id, "type": "channel"},
        expires_delta,
    )


def decode_access_token(token: str) -> Optional[dict]:
    """
    Decode and verify a JWT access token

    Args:
        token: JWT token string to decode

    Returns:
        Decoded token data or None if invalid
    """
    try:
        return jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


def verify_token(token: str) -> Optional[dict]:
    """
    Alias for decode_access_token
    """
    return decode_access_token(token)
