"""
core/errors.py -- Error taxonomy shared by every layer of Warden.

Every failure a user can observe is one of seven kinds. Each kind is a
WardenError subclass carrying a machine-readable `code` (used by the HTTP
front door to pick a status and by the CLI to pick a return code) and a
human-readable `message`.

Security notes:
  [E1] Transient and Internal errors never expose their message to users.
       `public_message` returns a generic text; the precise cause goes to the
       log channel only.

  [E2] Password verification collapses every mismatch (wrong password, wrong
       or missing second factor) into LoginIncorrect. The precise reason is
       kept on `reason` and on the chained exception for logging and tests,
       never in the response body.

Layer rule: core/ is the kernel. This module imports nothing from the project.
"""

from __future__ import annotations


class WardenError(Exception):
    """Base class for all expected failures."""

    code = "internal"
    default_message = "An internal error occurred."

    def __init__(self, message: str = "", detail: str | None = None) -> None:
        self.message = message or self.default_message
        self.detail = detail
        super().__init__(self.message)

    @property
    def public_message(self) -> str:
        return self.message


class InvalidInput(WardenError):
    code = "invalid_input"
    default_message = "Invalid input."


class Unauthorized(WardenError):
    code = "unauthorized"
    default_message = "Unauthorized."


class NotFound(WardenError):
    code = "not_found"
    default_message = "Not found."


class Conflict(WardenError):
    code = "conflict"
    default_message = "Conflict."


class RateLimited(WardenError):
    code = "rate_limited"
    default_message = "Too many attempts, please try again later."


class Transient(WardenError):
    """A database or network hiccup that survived the local retry [E1]."""

    code = "transient"
    default_message = "A temporary error occurred, please try again."

    @property
    def public_message(self) -> str:
        return self.default_message


class Internal(WardenError):
    """Invariant violation or misconfiguration [E1]."""

    code = "internal"

    @property
    def public_message(self) -> str:
        return self.default_message


# ---------------------------------------------------------------------------
# Authentication failures
# ---------------------------------------------------------------------------


class LoginIncorrect(Unauthorized):
    """The single user-facing login failure [E2]."""

    default_message = "Login incorrect"

    def __init__(self, reason: str = "", message: str = "") -> None:
        super().__init__(message)
        self.reason = reason


class PasswordMismatch(Unauthorized):
    """The one and only failure of password verification."""

    default_message = "Password mismatch"


class TwoFactorError(Unauthorized):
    """Second-factor verification failed.

    `kind` is one of the class constants below; the message never reveals
    which factor (if any) was tried.
    """

    NOT_PROVIDED = "not_provided"
    INVALID = "invalid"
    REQUIRED_ABSENT = "required_absent"
    UNKNOWN_KIND = "unknown_kind"

    _messages = {
        NOT_PROVIDED: "2FA required but not configured for this user",
        INVALID: "Invalid 2FA",
        REQUIRED_ABSENT: "2FA required, not provided",
        UNKNOWN_KIND: "Unknown 2FA token type",
    }

    def __init__(self, kind: str) -> None:
        super().__init__(self._messages.get(kind, "Invalid 2FA"))
        self.kind = kind


# HTTP status per error code; used by the API exception handler.
STATUS_CODES: dict[str, int] = {
    "invalid_input": 400,
    "unauthorized": 401,
    "not_found": 404,
    "conflict": 409,
    "rate_limited": 429,
    "transient": 503,
    "internal": 500,
}
