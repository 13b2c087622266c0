"""FastAPI dependencies for authentication.

## Usage

```python
from fastapi import Depends
from family_calendar.auth import get_current_user_id

@router.get("/")
async def list_calendars(user_id: uuid.UUID = Depends(get_current_user_id)):
    ...
```
"""

from __future__ import annotations

import logging
import uuid

from fastapi import Depends, HTTPException, Request, status

from family_calendar.auth.session import SessionData, verify_session_token
from family_calendar.config import get_settings

logger = logging.getLogger(__name__)


async def get_session_data(request: Request) -> SessionData | None:
    """Extract and verify session data from the session cookie.

    The cookie name comes from SESSION_COOKIE_NAME, so it is read from the
    request rather than declared as a fixed `Cookie` parameter.
    """
    token = request.cookies.get(get_settings().session_cookie_name)
    if not token:
        return None
    return verify_session_token(token)


async def get_current_user_id(
    session: SessionData | None = Depends(get_session_data),
) -> uuid.UUID:
    """Get the authenticated user's id.

    Raises 401 if not authenticated.
    """
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session.user_id
