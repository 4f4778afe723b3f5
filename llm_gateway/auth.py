from __future__ import annotations

import secrets
from enum import Enum
from typing import Optional

from fastapi import Depends, HTTPException, Request, Security
from fastapi.security import APIKeyHeader

# Token issuance lives elsewhere; here a caller is whatever role its key maps to.
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


def _matches(candidate: str, expected: Optional[str]) -> bool:
    return bool(expected) and secrets.compare_digest(candidate.encode(), expected.encode())


def caller_role(request: Request, api_key: Optional[str] = Security(api_key_header)) -> Role:
    if not api_key:
        raise HTTPException(status_code=401, detail="API key is required")
    settings = request.app.state.settings
    if _matches(api_key, settings.ADMIN_API_KEY):
        return Role.ADMIN
    if _matches(api_key, settings.API_KEY):
        return Role.USER
    raise HTTPException(status_code=401, detail="Invalid API key")


def require_admin(role: Role = Depends(caller_role)) -> Role:
    if role is not Role.ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required")
    return role
