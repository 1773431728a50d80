from datetime import datetime, timedelta, timezone

import jwt
import pytest
from cryptography.fernet import Fernet, InvalidToken

from backend.core.config import JWT_ALGORITHM, JWT_SECRET
from backend.services import encryption_service
from backend.services.auth_service import TokenError, caller_id, create_token


def test_token_round_trip():
    assert caller_id(create_token("user-1", "jane@example.com")) == "user-1"


def test_expired_token():
    token = jwt.encode(
        {"user_id": "user-1", "exp": datetime.now(timezone.utc) - timedelta(minutes=1)},
        JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )
    with pytest.raises(TokenError, match="expired"):
        caller_id(token)


def test_token_without_user():
    token = jwt.encode({"email": "jane@example.com"}, JWT_SECRET, algorithm=JWT_ALGORITHM)
    with pytest.raises(TokenError, match="payload"):
        caller_id(token)


def test_forged_token():
    token = jwt.encode({"user_id": "user-1"}, "someone-elses-secret", algorithm=JWT_ALGORITHM)
    with pytest.raises(TokenError, match="Invalid token"):
        caller_id(token)


def test_empty_credentials_are_dropped():
    stored = encryption_service.encrypt_credentials({"secret_key": "sk_test_1", "webhook_secret": None})
    assert list(stored) == ["secret_key"]
    assert encryption_service.decrypt_token(stored["secret_key"]) == "sk_test_1"


def test_key_rotation(monkeypatch):
    old_key = Fernet.generate_key().decode()
    new_key = Fernet.generate_key().decode()

    monkeypatch.setenv("ENCRYPTION_KEY", old_key)
    stored = encryption_service.encrypt_credentials({"secret_key": "sk_test_1"})

    monkeypatch.setenv("ENCRYPTION_KEY", f"{new_key},{old_key}")
    assert encryption_service.decrypt_token(stored["secret_key"]) == "sk_test_1"
    rotated = encryption_service.rotate_credentials(stored)

    monkeypatch.setenv("ENCRYPTION_KEY", new_key)
    assert encryption_service.decrypt_token(rotated["secret_key"]) == "sk_test_1"
    with pytest.raises(InvalidToken):
        encryption_service.decrypt_token(stored["secret_key"])


def test_missing_key(monkeypatch):
    monkeypatch.delenv("ENCRYPTION_KEY")
    with pytest.raises(RuntimeError):
        encryption_service.encrypt_token("x")
