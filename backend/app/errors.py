"""
errors.py — AppError base class, error code registry and error kinds.

Every error returned by the ride engine must use a code defined here.
Do not raise strings or generic exceptions from service or route code.

Rules:
  - Error codes are a versioned contract. They do not change once published.
  - Error messages are human-readable prose. They may be improved at any time.
  - Every code belongs to exactly one ErrorKind; callers branch on the kind,
    clients branch on the code.
  - Never conflate 401 (unauthenticated) with 403 (insufficient privileges).
"""

from __future__ import annotations


class AppError(Exception):

    def __init__(
            self,
            code: str,
            message: str,
            http_status: int,
            field: str | None = None,
    ) -> None:
        super().__init__(message)
        self.code        = code
        self.message     = message
        self.http_status = http_status
        self.field       = field  # which request field caused the error

    @property
    def kind(self) -> str:
        """The taxonomy bucket for this error (see ErrorKind)."""
        return ERROR_KINDS.get(self.code, ErrorKind.INTERNAL_ERROR)

    def to_dict(self) -> dict:
        payload = {
            "code":    self.code,
            "message": self.message,
        }
        if self.field is not None:
            payload["field"] = self.field
        return {"error": payload}

    def __repr__(self) -> str:
        return (
            f"AppError(code={self.code!r}, "
            f"http_status={self.http_status}, "
            f"message={self.message!r})"
        )


# ── Error Code Registry ────────────────────────────────────────────────────
#
# Organised by category. HTTP status is indicated in the comment.
#
# IMPORTANT: these are the string values sent in the API response.
# Do not rename them without a major version bump.
# ──────────────────────────────────────────────────────────────────────────

class ErrorCode:

    # ── Schema / Input Errors (400) ────────────────────────────────────────
    MISSING_FIELD                = "MISSING_FIELD"
    INVALID_FIELD                = "INVALID_FIELD"
    INVALID_JSON                 = "INVALID_JSON"
    METHOD_NOT_ALLOWED           = "METHOD_NOT_ALLOWED"           # 405

    # ── Not Found Errors (404) ─────────────────────────────────────────────
    CLUB_NOT_FOUND               = "CLUB_NOT_FOUND"
    RIDE_NOT_FOUND               = "RIDE_NOT_FOUND"
    PARTICIPATION_NOT_FOUND      = "PARTICIPATION_NOT_FOUND"
    ROUTE_NOT_FOUND              = "ROUTE_NOT_FOUND"

    # ── Conflict Errors (409) ──────────────────────────────────────────────
    ALREADY_PARTICIPATING        = "ALREADY_PARTICIPATING"
    RIDE_FULL                    = "RIDE_FULL"
    # Optimistic version check failed; the caller may re-read and retry.
    CONCURRENT_MODIFICATION      = "CONCURRENT_MODIFICATION"

    # ── Business Rule Violations (422) ────────────────────────────────────
    INVALID_RIDE_STATUS          = "INVALID_RIDE_STATUS"
    INVALID_PARTICIPATION_STATUS = "INVALID_PARTICIPATION_STATUS"
    INVALID_ROLE_TRANSITION      = "INVALID_ROLE_TRANSITION"
    CANNOT_REMOVE_CAPTAIN        = "CANNOT_REMOVE_CAPTAIN"

    # ── Auth Errors ────────────────────────────────────────────────────────
    # 401 = we do not know who you are (unauthenticated)
    # 403 = we know who you are, but your role does not grant the capability
    TOKEN_MISSING                = "TOKEN_MISSING"            # 401
    TOKEN_INVALID                = "TOKEN_INVALID"            # 401
    TOKEN_EXPIRED                = "TOKEN_EXPIRED"            # 401
    INSUFFICIENT_PRIVILEGES      = "INSUFFICIENT_PRIVILEGES"  # 403

    # ── System Errors (500) ────────────────────────────────────────────────
    INTERNAL_ERROR               = "INTERNAL_ERROR"


class ErrorKind:
    NOT_FOUND               = "NotFound"
    CONFLICT                = "Conflict"
    INVALID_STATE           = "InvalidState"
    INVALID_ROLE_TRANSITION = "InvalidRoleTransition"
    CANNOT_REMOVE_CAPTAIN   = "CannotRemoveCaptain"
    INSUFFICIENT_PRIVILEGES = "InsufficientPrivileges"
    UNAUTHENTICATED         = "Unauthenticated"
    VALIDATION_ERROR        = "ValidationError"
    INTERNAL_ERROR          = "InternalError"


ERROR_KINDS: dict[str, str] = {
    ErrorCode.MISSING_FIELD:                ErrorKind.VALIDATION_ERROR,
    ErrorCode.INVALID_FIELD:                ErrorKind.VALIDATION_ERROR,
    ErrorCode.INVALID_JSON:                 ErrorKind.VALIDATION_ERROR,
    ErrorCode.METHOD_NOT_ALLOWED:           ErrorKind.VALIDATION_ERROR,
    ErrorCode.CLUB_NOT_FOUND:               ErrorKind.NOT_FOUND,
    ErrorCode.RIDE_NOT_FOUND:               ErrorKind.NOT_FOUND,
    ErrorCode.PARTICIPATION_NOT_FOUND:      ErrorKind.NOT_FOUND,
    ErrorCode.ROUTE_NOT_FOUND:              ErrorKind.NOT_FOUND,
    ErrorCode.ALREADY_PARTICIPATING:        ErrorKind.CONFLICT,
    ErrorCode.RIDE_FULL:                    ErrorKind.CONFLICT,
    ErrorCode.CONCURRENT_MODIFICATION:      ErrorKind.CONFLICT,
    ErrorCode.INVALID_RIDE_STATUS:          ErrorKind.INVALID_STATE,
    ErrorCode.INVALID_PARTICIPATION_STATUS: ErrorKind.INVALID_STATE,
    ErrorCode.INVALID_ROLE_TRANSITION:      ErrorKind.INVALID_ROLE_TRANSITION,
    ErrorCode.CANNOT_REMOVE_CAPTAIN:        ErrorKind.CANNOT_REMOVE_CAPTAIN,
    ErrorCode.TOKEN_MISSING:                ErrorKind.UNAUTHENTICATED,
    ErrorCode.TOKEN_INVALID:                ErrorKind.UNAUTHENTICATED,
    ErrorCode.TOKEN_EXPIRED:                ErrorKind.UNAUTHENTICATED,
    ErrorCode.INSUFFICIENT_PRIVILEGES:      ErrorKind.INSUFFICIENT_PRIVILEGES,
    ErrorCode.INTERNAL_ERROR:               ErrorKind.INTERNAL_ERROR,
}
