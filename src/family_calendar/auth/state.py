"""OAuth state tokens.

The state parameter sent through the provider's consent screen is a signed
JWT. It binds the callback to the user who started the flow and carries the
page to return to afterwards.

## Token Structure

```json
{
  "sub": "user-uuid",
  "iat": 1234567890,
  "exp": 1234568490,
  "nonce": "random-urlsafe-string",
  "type": "oauth_state",
  "rp": "/settings/calendars"
}
```

`rp` (return path) is optional.

## Validation

A token is valid only if all of the following hold:
- the signature verifies with the state secret
- `type` is `oauth_state`
- `iat` is not in the future
- at most `max_age_seconds` have passed since `iat`
"""

from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from jose import JWTError, jwt

from family_calendar.errors import ValidationError

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE = "oauth_state"
DEFAULT_MAX_AGE_SECONDS = 600


@dataclass(frozen=True)
class StateTokenValidation:
    """Outcome of validating a state token."""

    valid: bool
    user_id: uuid.UUID | None = None
    return_path: str | None = None


def validate_return_path(return_path: str) -> str:
    """Check that a post-authorization return path stays on this application.

    Raises:
        ValidationError: If the path is not application-relative
    """
    if (
        not return_path.startswith("/")
        or return_path.startswith("//")
        or "\\" in return_path
        or any(ch in return_path for ch in "\r\n")
    ):
        raise ValidationError(
            "Return path must be an application-relative path",
            fields={"return_path": "must start with a single '/'"},
        )
    return return_path


class StateTokenCodec:
    """Signs and verifies OAuth state tokens.

    Args:
        secret: HMAC signing secret
        max_age_seconds: How long a token stays valid after issue

    Example:
        ```python
        codec = StateTokenCodec(settings.oauth_state_secret)
        state = codec.generate(user_id, "/settings/calendars")
        result = codec.validate(state)
        if result.valid:
            ...
        ```
    """

    def __init__(self, secret: str, max_age_seconds: int = DEFAULT_MAX_AGE_SECONDS):
        if not secret:
            raise ValueError("State token secret must not be empty")
        self._secret = secret
        self.max_age_seconds = max_age_seconds

    def generate(
        self,
        user_id: uuid.UUID,
        return_path: str | None = None,
        *,
        now: datetime | None = None,
    ) -> str:
        """Create a signed state token for a user."""
        issued_at = int((now or datetime.now(timezone.utc)).timestamp())
        payload = {
            "sub": str(user_id),
            "iat": issued_at,
            "exp": issued_at + self.max_age_seconds,
            "nonce": secrets.token_urlsafe(16),
            "type": TOKEN_TYPE,
        }
        if return_path:
            payload["rp"] = return_path
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def validate(
        self,
        token: str,
        *,
        now: datetime | None = None,
    ) -> StateTokenValidation:
        """Verify a state token. Never raises."""
        invalid = StateTokenValidation(valid=False)

        try:
            # Freshness is checked below against `now`
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                options={"verify_exp": False},
            )
        except JWTError as e:
            logger.debug(f"State token verification failed: {e}")
            return invalid

        if payload.get("type") != TOKEN_TYPE:
            logger.debug("State token has wrong type")
            return invalid

        try:
            user_id = uuid.UUID(payload["sub"])
            issued_at = int(payload["iat"])
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"Invalid state token payload: {e}")
            return invalid

        current = int((now or datetime.now(timezone.utc)).timestamp())
        if issued_at > current:
            logger.debug("State token issued in the future")
            return invalid
        if current - issued_at > self.max_age_seconds:
            logger.debug("State token expired")
            return invalid

        return_path = payload.get("rp")
        if return_path is not None and not isinstance(return_path, str):
            return invalid

        return StateTokenValidation(
            valid=True,
            user_id=user_id,
            return_path=return_path,
        )

