# FILE: backend/services/encryption_service.py
"""
Encryption at rest for gateway credentials (payment_gateways.api_credentials).

ENCRYPTION_KEY holds one Fernet key, or a comma separated list when keys are
being rotated: the first key encrypts, every key is tried on decrypt.
"""
import os
from typing import Dict, List, Optional

from cryptography.fernet import Fernet, MultiFernet


def _keys() -> List[str]:
    raw = os.environ.get("ENCRYPTION_KEY", "")
    return [k.strip() for k in raw.split(",") if k.strip()]


def _get_fernet() -> MultiFernet:
    keys = _keys()
    if not keys:
        raise RuntimeError("ENCRYPTION_KEY not configured in environment")
    return MultiFernet([Fernet(k.encode()) for k in keys])


def encrypt_token(token: str) -> str:
    return _get_fernet().encrypt(token.encode()).decode()


def decrypt_token(encrypted: str) -> str:
    """Raises cryptography's InvalidToken when no configured key fits."""
    return _get_fernet().decrypt(encrypted.encode()).decode()


def encrypt_credentials(values: Dict[str, Optional[str]]) -> Dict[str, str]:
    """Encrypt a gateway credential mapping, dropping empty entries."""
    return {name: encrypt_token(value) for name, value in values.items() if value}


def rotate_credentials(stored: Dict[str, str]) -> Dict[str, str]:
    """Re-encrypt stored credentials under the current primary key."""
    f = _get_fernet()
    return {name: f.rotate(value.encode()).decode() for name, value in stored.items() if value}
