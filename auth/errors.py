"""
auth/errors.py -- Error taxonomy for authentication and account operations.

Every failure the core can report is a distinct exception class bound to an
ErrorCode. The ErrorCode carries the HTTP status and the stable external code
so the API layer can map any AuthError with a single exception handler.

Two families are deliberately kept apart:
  Outcome errors   -- the request was understood and refused (wrong password,
                      locked account, duplicate username, bad token ...).
  InfrastructureError -- the store failed or a concurrent write won the race.
                      Callers must never read these as "wrong password".

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from enum import Enum


class ErrorCode(Enum):
    """Stable error codes: (HTTP status, code, default message)."""

    UNAUTHORIZED = (401, "A001", "Authentication required")
    INVALID_CREDENTIALS = (401, "A002", "Invalid credentials")
    TOKEN_EXPIRED = (401, "A003", "Token has expired")
    INVALID_TOKEN = (401, "A004", "Invalid token")
    INSUFFICIENT_PERMISSION = (403, "A005", "Insufficient permission")
    ACCOUNT_LOCKED = (403, "A006", "Account is locked")
    ACCOUNT_DISABLED = (403, "A007", "Account is disabled")

    USER_NOT_FOUND = (404, "U001", "User not found")
    DUPLICATE_USERNAME = (409, "U003", "Username already exists")
    DUPLICATE_EMAIL = (409, "U004", "Email already exists")
    DUPLICATE_EMPLOYEE_ID = (409, "U005", "Employee ID already exists")
    INVALID_PASSWORD = (400, "U006", "Invalid password format")
    PASSWORD_MISMATCH = (400, "U007", "Password confirmation mismatch")
    CURRENT_PASSWORD_INCORRECT = (400, "U008", "Current password is incorrect")

    STORE_UNAVAILABLE = (503, "S001", "Identity store unavailable")
    CONCURRENT_UPDATE = (409, "S002", "Identity was modified concurrently")

    def __init__(self, http_status: int, code: str, message: str) -> None:
        self.http_status = http_status
        self.code = code
        self.message = message


class AuthError(Exception):
    """Base class for every typed failure raised by auth/."""

    error_code: ErrorCode

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.error_code.message)

    @property
    def message(self) -> str:
        return str(self)


# ---------------------------------------------------------------------------
# Authentication outcomes
# ---------------------------------------------------------------------------


class UnauthorizedError(AuthError):
    error_code = ErrorCode.UNAUTHORIZED


class InvalidCredentialsError(AuthError):
    """Unknown username or wrong password. The two are intentionally conflated."""

    error_code = ErrorCode.INVALID_CREDENTIALS


class AccountLockedError(AuthError):
    error_code = ErrorCode.ACCOUNT_LOCKED


class AccountDisabledError(AuthError):
    """Status is INACTIVE, SUSPENDED or RESIGNED."""

    error_code = ErrorCode.ACCOUNT_DISABLED


class InsufficientPermissionError(AuthError):
    error_code = ErrorCode.INSUFFICIENT_PERMISSION


# ---------------------------------------------------------------------------
# Token failures
# ---------------------------------------------------------------------------


class TokenExpiredError(AuthError):
    error_code = ErrorCode.TOKEN_EXPIRED


class TokenInvalidError(AuthError):
    """Parent of the three ways a token can be unusable other than expiry."""

    error_code = ErrorCode.INVALID_TOKEN


class MalformedTokenError(TokenInvalidError):
    pass


class InvalidSignatureError(TokenInvalidError):
    pass


class UnsupportedTokenError(TokenInvalidError):
    pass


# ---------------------------------------------------------------------------
# Account management
# ---------------------------------------------------------------------------


class IdentityNotFoundError(AuthError):
    error_code = ErrorCode.USER_NOT_FOUND


class DuplicateIdentityError(AuthError):
    """A uniqueness constraint on username, email or employee ID was violated."""

    error_code = ErrorCode.DUPLICATE_USERNAME


class DuplicateUsernameError(DuplicateIdentityError):
    error_code = ErrorCode.DUPLICATE_USERNAME


class DuplicateEmailError(DuplicateIdentityError):
    error_code = ErrorCode.DUPLICATE_EMAIL


class DuplicateEmployeeIdError(DuplicateIdentityError):
    error_code = ErrorCode.DUPLICATE_EMPLOYEE_ID


class InvalidPasswordError(AuthError):
    error_code = ErrorCode.INVALID_PASSWORD


class PasswordMismatchError(AuthError):
    error_code = ErrorCode.PASSWORD_MISMATCH


class CurrentPasswordIncorrectError(AuthError):
    error_code = ErrorCode.CURRENT_PASSWORD_INCORRECT


# ---------------------------------------------------------------------------
# Infrastructure
# ---------------------------------------------------------------------------


class InfrastructureError(AuthError):
    """The operation could not complete for reasons unrelated to the credentials."""

    error_code = ErrorCode.STORE_UNAVAILABLE


class IdentityStoreError(InfrastructureError):
    """The identity store failed or timed out. Transient; never retried here."""

    error_code = ErrorCode.STORE_UNAVAILABLE


class ConcurrentUpdateError(InfrastructureError):
    """A compare-and-set write lost to a concurrent writer."""

    error_code = ErrorCode.CONCURRENT_UPDATE
