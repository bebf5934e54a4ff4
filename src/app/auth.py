from __future__ import annotations

import os
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBasic, HTTPBasicCredentials


security = HTTPBasic(auto_error=False)


def _expected_password() -> Optional[str]:
    pw = os.environ.get("APP_PASSWORD")
    if pw is not None and pw.strip() == "":
        return None
    return pw


def auth_enabled() -> bool:
    return _expected_password() is not None


def require_actor(request: Request, credentials: Optional[HTTPBasicCredentials] = Depends(security)) -> str:
    """
    Audit actor for API calls. With APP_PASSWORD unset the API is open (local use)
    and the actor comes from the X-Actor header; otherwise HTTP Basic is required.
    """
    expected = _expected_password()
    if expected is None:
        return request.headers.get("X-Actor") or os.environ.get("APP_ACTOR_DEFAULT", "api")
    if credentials is None or credentials.password != expected:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Basic"},
        )
    return credentials.username or "api"
