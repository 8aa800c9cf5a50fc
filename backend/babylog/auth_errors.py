# babylog/auth_errors.py
from __future__ import annotations

"""
Error taxonomy for login, session and write-gating failures.

Every error carries the HTTP status it maps to, a stable machine code and the
message that is safe to show the user. Only LockedOut and FamilyExpired carry
detail beyond "invalid credentials"; neither reveals whether a credential
would have matched.
"""

import math
from typing import Any, Optional


class AuthError(Exception):
    status_code: int = 401
    code: str = "AUTH_ERROR"
    message: str = "Authentication failed"

    def __init__(self, message: Optional[str] = None, *, data: Optional[dict] = None) -> None:
        self.message = message or self.message
        self.data = data
        super().__init__(self.message)

    @property
    def headers(self) -> Optional[dict]:
        return None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": False, "error": self.message, "code": self.code}
        if self.data is not None:
            payload["data"] = self.data
        return payload


class LockedOut(AuthError):
    status_code = 429
    code = "LOCKED_OUT"

    def __init__(self, retry_after_ms: int) -> None:
        self.retry_after_ms = max(0, int(retry_after_ms))
        minutes = max(1, math.ceil(self.retry_after_ms / 60000))
        super().__init__(
            "You have been locked out due to too many failed attempts. "
            f"Please try again in {minutes} minutes.",
            data={"retryAfterSeconds": self.retry_after_seconds},
        )

    @property
    def retry_after_seconds(self) -> int:
        return max(1, math.ceil(self.retry_after_ms / 1000))

    @property
    def headers(self) -> Optional[dict]:
        return {"Retry-After": str(self.retry_after_seconds)}


class InvalidCredentials(AuthError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    message = "Invalid credentials"


class InvalidLoginRequest(AuthError):
    status_code = 400
    code = "INVALID_REQUEST"
    message = "Invalid login request"


class FamilyNotFound(AuthError):
    status_code = 404
    code = "FAMILY_NOT_FOUND"
    message = "Invalid family"


class FamilyExpired(AuthError):
    status_code = 403
    code = "FAMILY_EXPIRED"
    message = "Family access has expired. Please renew your subscription."


class SystemNotConfigured(AuthError):
    """Operator-facing: a required server-side secret or row is missing."""

    status_code = 500
    code = "SYSTEM_NOT_CONFIGURED"
    message = "System configuration not found"


class TokenInvalid(AuthError):
    status_code = 401
    code = "TOKEN_INVALID"
    message = "Invalid authentication token"


class TokenExpired(AuthError):
    status_code = 401
    code = "TOKEN_EXPIRED"
    message = "Session expired. Please log in again."


class AuthenticationRequired(AuthError):
    status_code = 401
    code = "AUTHENTICATION_REQUIRED"
    message = "Authentication required"

    @property
    def headers(self) -> Optional[dict]:
        return {"WWW-Authenticate": "Bearer"}


class WriteBlocked(AuthError):
    status_code = 403
    code = "WRITE_BLOCKED"
    message = "Your account has expired. Please upgrade to continue."
