"""
middleware/auth_middleware.py — JWT authentication decorator.

The @require_auth decorator:
  1. Reads the Authorization header (expected: "Bearer <token>")
  2. Decodes and verifies the JWT signature (and audience, when configured)
  3. Checks token expiry
  4. Attaches an AuthContext to flask.g for the duration of the request
  5. Returns the appropriate 401 error if any step fails

Strict responsibility boundary:
  - This middleware establishes WHO the caller is and nothing else.
  - It does NOT check club membership or ride capabilities. That belongs to
    services/authorization_service.py. Middleware = authentication (401).
    Authorization gate = privileges (403).
  - Services receive the AuthContext as a plain argument, with no knowledge
    of JWT or HTTP headers.

Error codes:
  TOKEN_MISSING  (401) — no Authorization header
  TOKEN_INVALID  (401) — malformed header, invalid signature, or bad payload
  TOKEN_EXPIRED  (401) — valid token but exp claim is in the past
  → 403 INSUFFICIENT_PRIVILEGES is never raised here.
"""

from __future__ import annotations

import functools
from typing import Callable

import jwt
from flask import current_app, g, request

from backend.app.auth_context import AuthContext, SystemRole
from backend.app.errors import AppError, ErrorCode


def require_auth(f: Callable) -> Callable:
    """
    Route decorator that enforces JWT authentication.

    Attaches the caller's identity to flask.g.auth_context (and the bare id to
    flask.g.user_id for convenience).
    Raises AppError for all auth failures — the global error handler converts
    these to the correct JSON response. Routes never catch AppError.

    Usage:
        @rides_bp.route("/clubs/<int:club_id>/rides")
        @require_auth
        def list_rides(club_id):
            auth = g.auth_context
            ...
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        _authenticate_request()
        return f(*args, **kwargs)

    return decorated


def _authenticate_request() -> None:
    """
    Performs the full JWT authentication sequence and sets flask.g.auth_context.

    Separated from the decorator wrapper for testability — can be called
    directly in tests without wrapping a real view function.
    """
    auth_header = request.headers.get("Authorization", "")

    # ── Step 1: Require Authorization header ──────────────────────────────
    if not auth_header:
        raise AppError(
            ErrorCode.TOKEN_MISSING,
            "Authentication required. Provide a Bearer token in the Authorization header.",
            401,
        )

    # ── Step 2: Parse "Bearer <token>" format ─────────────────────────────
    parts = auth_header.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "Authorization header must be in the format: Bearer <token>.",
            401,
        )

    # ── Step 3: Decode and verify the JWT ─────────────────────────────────
    payload = _decode_token(parts[1])

    # ── Step 4: Build the AuthContext ─────────────────────────────────────
    g.auth_context = build_auth_context(payload)
    g.user_id = g.auth_context.user_id


def _decode_token(raw_token: str) -> dict:
    """Verifies signature, expiry and (optionally) audience. Returns the claims."""
    audience = current_app.config.get("JWT_AUDIENCE")
    options = {"require": ["sub", "exp"]}
    if not audience:
        options["verify_aud"] = False

    try:
        return jwt.decode(
            raw_token,
            current_app.config["JWT_SECRET_KEY"],
            algorithms=[current_app.config.get("JWT_ALGORITHM", "HS256")],
            audience=audience,
            options=options,
        )
    except jwt.ExpiredSignatureError:
        raise AppError(
            ErrorCode.TOKEN_EXPIRED,
            "The access token has expired. Obtain a new one from the identity provider.",
            401,
        )
    except jwt.InvalidTokenError:
        # Covers: bad signature, malformed token, missing claims, wrong audience.
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "The access token is invalid or has been tampered with.",
            401,
        )


def build_auth_context(payload: dict) -> AuthContext:
    """
    Maps verified JWT claims onto an AuthContext.

    Claims:
      sub          — user id (string; integers are accepted and stringified)
      email        — optional
      system_role  — "user" | "site_admin"; absent means "user"
    """
    sub = payload.get("sub")
    if sub is None or str(sub).strip() == "":
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            "The access token is missing the required 'sub' claim.",
            401,
        )

    raw_role = payload.get("system_role") or SystemRole.USER.value
    try:
        system_role = SystemRole(raw_role)
    except ValueError:
        raise AppError(
            ErrorCode.TOKEN_INVALID,
            f"The 'system_role' claim {raw_role!r} is not recognised.",
            401,
        )

    return AuthContext(
        user_id=str(sub),
        email=payload.get("email"),
        system_role=system_role,
    )
