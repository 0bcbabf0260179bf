"""
auth_context.py — Authenticated caller identity.

AuthContext is what the rest of the engine knows about the caller. It is built
once per request by middleware/auth_middleware.py from the bearer token and
passed to services as a plain argument. Services never read tokens or headers.

The engine trusts this value: identity verification happens before it exists.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass


class SystemRole(str, enum.Enum):
    """Platform-wide role carried in the token's system_role claim."""
    USER       = "user"
    SITE_ADMIN = "site_admin"


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    email: str | None = None
    system_role: SystemRole = SystemRole.USER
    is_authenticated: bool = True
