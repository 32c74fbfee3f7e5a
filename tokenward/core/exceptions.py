# tokenward/core/exceptions.py
from typing import Dict, Optional


class AuthError(Exception):
    """Base for every error the service maps to an HTTP status at the boundary."""

    status_code: int = 500
    default_message: str = "An unexpected error occurred"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidCredentials(AuthError):
    status_code = 401
    default_message = "Invalid credentials"


class InvalidToken(AuthError):
    """Malformed, forged, expired, revoked, orphaned or owned by an inactive account."""

    status_code = 401
    default_message = "Invalid or expired token"


class InvalidIdentity(AuthError):
    """The upstream identity assertion could not be verified."""

    status_code = 401
    default_message = "Invalid identity assertion"


class DuplicateContact(AuthError):
    status_code = 400
    default_message = "Email or mobile number is already registered"


class FieldValidationError(AuthError):
    status_code = 400
    default_message = "Validation failed"

    def __init__(self, errors: Dict[str, str], message: Optional[str] = None):
        self.errors = errors
        super().__init__(message)


class RateLimited(AuthError):
    status_code = 429
    default_message = "Too many attempts, try again later"


class NotFound(AuthError):
    status_code = 404
    default_message = "Resource not found"


# --- Store level ---

class UserNotFound(NotFound):
    default_message = "User not found"


class SessionNotFound(NotFound):
    default_message = "Session not found"


class InactiveAccount(AuthError):
    """Raised by stores when an operation targets a deactivated account."""

    status_code = 401
    default_message = "Account is not active"


# --- Token codec ---

class TokenDecodeError(InvalidToken):
    pass


class MalformedToken(TokenDecodeError):
    default_message = "Malformed token"


class BadSignature(TokenDecodeError):
    default_message = "Invalid token signature"


class TokenExpired(TokenDecodeError):
    default_message = "Token has expired"
