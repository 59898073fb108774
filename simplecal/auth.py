"""Authentication dependency for organizer-side endpoints.

Organizer endpoints (availability CRUD, appointment updates) carry a
Bearer token in the Authorization header and name the acting organizer in
``X-Organizer-Id``.

Behavior matrix:
  ORGANIZER_API_KEY set + valid token   -> allow
  ORGANIZER_API_KEY set + wrong/missing -> 401 Unauthorized
  ORGANIZER_API_KEY empty + DEBUG=true  -> allow (local dev convenience)
  ORGANIZER_API_KEY empty + DEBUG=false -> 403 Forbidden (locked in production)

A missing ``X-Organizer-Id`` header is a 401 once the token checks pass.
"""

from __future__ import annotations

import logging
import re

from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

log = logging.getLogger("simplecal.auth")

_bearer_scheme = HTTPBearer(auto_error=False)

_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


async def require_organizer(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
    organizer_id: str | None = Header(default=None, alias="X-Organizer-Id"),
) -> str:
    """FastAPI dependency: authenticate and return the acting organizer's id.

    Reads the settings the app was created with (``app.state.settings``).
    """
    settings = request.app.state.settings
    key = settings.organizer_api_key

    if not key:
        if not settings.debug:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Organizer API key not configured. Set ORGANIZER_API_KEY in .env.",
            )
    elif credentials is None or credentials.credentials != key:
        log.warning("Rejected organizer request with invalid or missing token")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing organizer token.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not organizer_id or not _ID_PATTERN.match(organizer_id):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing or malformed X-Organizer-Id header.",
        )
    return organizer_id
