"""Credential vault for OAuth tokens.

Uses Fernet symmetric encryption for storing access and refresh tokens.

## Security Model

1. A master encryption key is derived from the application secret
2. Each token is encrypted with Fernet before it reaches a repository
3. Plaintext tokens are never stored or logged

## Key Derivation

The encryption key is derived from the application secret using PBKDF2:
- Salt: Configurable (ENCRYPTION_SALT), should be unique per deployment
- Iterations: 480,000 (OWASP recommendation for PBKDF2-HMAC-SHA256)
- Key length: 32 bytes (256 bits)

Key derivation is deliberately slow, so build one vault per process and
reuse it (`get_token_vault()` does this).

## Usage

```python
from family_calendar.database.encryption import get_token_vault

vault = get_token_vault()
stored = vault.encrypt(tokens.access_token)
access_token = vault.decrypt(stored)
```
"""

from __future__ import annotations

import base64
import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = logging.getLogger(__name__)

PBKDF2_ITERATIONS = 480_000


def _create_fernet(secret_key: str, salt: str) -> Fernet:
    """Create a Fernet cipher from the secret key and salt."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,  # 256 bits for Fernet
        salt=salt.encode("utf-8"),
        iterations=PBKDF2_ITERATIONS,
    )
    key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode("utf-8")))
    return Fernet(key)


class TokenVault:
    """Symmetric encryption for OAuth tokens at rest.

    Args:
        secret_key: Application secret key
        salt: Unique salt for this deployment
    """

    def __init__(self, secret_key: str, salt: str):
        self._fernet = _create_fernet(secret_key, salt)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a token for storage. Empty input stays empty."""
        if not plaintext:
            return ""
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("utf-8")

    def decrypt(self, ciphertext: str) -> str:
        """Decrypt a stored token.

        Raises:
            ValueError: If the ciphertext is corrupted or was produced with
                another key
        """
        if not ciphertext:
            return ""
        try:
            return self._fernet.decrypt(ciphertext.encode("utf-8")).decode("utf-8")
        except InvalidToken as e:
            logger.error("Failed to decrypt token: invalid token or key")
            raise ValueError("Failed to decrypt token") from e


@lru_cache
def get_token_vault() -> TokenVault:
    """Get the process-wide vault built from settings."""
    from family_calendar.config import get_settings

    settings = get_settings()
    return TokenVault(settings.secret_key, settings.encryption_salt)


def reset_token_vault() -> None:
    """Drop the cached vault (e.g. after settings change in tests)."""
    get_token_vault.cache_clear()
