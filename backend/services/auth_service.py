# FILE: backend/services/auth_service.py
"""Bearer tokens. Billing never issues sessions itself; create_token exists for scripts and tests."""
import jwt
from datetime import datetime, timezone, timedelta

from backend.core.config import JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRATION_HOURS


class TokenError(Exception):
    pass


def create_token(user_id: str, email: str) -> str:
    payload = {
        "user_id": user_id,
        "email": email,
        "sub": email,
        "exp": datetime.now(timezone.utc) + timedelta(hours=JWT_EXPIRATION_HOURS),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def caller_id(token: str) -> str:
    """User id carried by a bearer token."""
    try:
        payload = jwt.decode(token.strip(), JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise TokenError("Token expired")
    except jwt.InvalidTokenError:
        raise TokenError("Invalid token")

    user_id = payload.get("user_id") or payload.get("id")
    if not user_id or not isinstance(user_id, str):
        raise TokenError("Invalid token payload")
    return user_id
