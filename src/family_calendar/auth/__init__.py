"""Authentication helpers for the family calendar.

Two kinds of signed tokens live here:

- Session tokens: identify the signed-in user on every API request
- OAuth state tokens: bind an external calendar OAuth callback to the user
  who started the flow

## External Calendar OAuth Flow

1. User asks to connect a Google or Microsoft calendar
2. A state token is generated and the user is redirected to the provider
3. The provider redirects back with an authorization code and the state
4. The state is validated before the code is exchanged for tokens
5. Tokens are encrypted and stored with the connection

## Security

- Both token kinds are HS256 JWTs
- State tokens expire after 10 minutes by default
- OAuth tokens are encrypted at rest
"""

from family_calendar.auth.dependencies import get_current_user_id, get_session_data
from family_calendar.auth.session import (
    SessionData,
    create_session_token,
    verify_session_token,
)
from family_calendar.auth.state import (
    StateTokenCodec,
    StateTokenValidation,
    validate_return_path,
)

__all__ = [
    "SessionData",
    "create_session_token",
    "verify_session_token",
    "get_session_data",
    "get_current_user_id",
    "StateTokenCodec",
    "StateTokenValidation",
    "validate_return_path",
]
