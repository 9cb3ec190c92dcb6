"""
signal_auth/errors.py

Errors that may cross the HTTP boundary.

Every expected failure is a SafeError carrying:
  - kind           : what went wrong, mapped to one status code
  - safe_message   : always acceptable to show a client
  - unsafe_detail  : diagnostic detail for logs only (raw input, key ids, ...)

A client must never be able to tell from a response whether an account or a
key exists, so unsafe_detail is never serialized. Anything that is not a
SafeError is an unexpected fault and is answered with a bare 500.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    SIGNATURE = "signature"
    CONFIGURATION = "configuration"
    DELIVERY = "delivery"


STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.SIGNATURE: 400,
    ErrorKind.CONFIGURATION: 500,
    ErrorKind.DELIVERY: 502,
}


class SafeError(Exception):
    name = "safe_error"
    kind = ErrorKind.VALIDATION

    def __init__(self, safe: str, unsafe: Optional[str] = None):
        super().__init__(safe)
        self.safe_message = safe
        self.unsafe_detail = unsafe

    @property
    def status_code(self) -> int:
        return STATUS_BY_KIND[self.kind]

    @property
    def safe_props(self) -> Dict[str, Any]:
        return {"name": self.name, "message": self.safe_message, "safeError": True}


# -----------------------------------------------------------------------------
# Validation (400)
# -----------------------------------------------------------------------------
class IdentityValidationError(SafeError):
    name = "signal_user_validation_error"


class OAuth2ValidationError(SafeError):
    name = "oauth2_validation_error"


class SessionAlreadyPendingError(SafeError):
    name = "session_already_pending"


class ChallengeMismatchError(SafeError):
    name = "invalid_session"


# -----------------------------------------------------------------------------
# Not found (404)
# -----------------------------------------------------------------------------
class NotFoundError(SafeError):
    name = "not_found"
    kind = ErrorKind.NOT_FOUND


class SessionNotFoundError(NotFoundError):
    pass


class KeyNotFoundError(NotFoundError):
    pass


# -----------------------------------------------------------------------------
# Signature (400, generic message)
# -----------------------------------------------------------------------------
class AuthorizationCodeSignatureError(SafeError):
    name = "oauth2_validation_error"
    kind = ErrorKind.SIGNATURE

    def __init__(self, unsafe: Optional[str] = None):
        super().__init__("invalid authorization_code", unsafe)


# -----------------------------------------------------------------------------
# Faults
# -----------------------------------------------------------------------------
class ConfigurationFault(SafeError):
    name = "server_error"
    kind = ErrorKind.CONFIGURATION

    def __init__(self, unsafe: Optional[str] = None):
        super().__init__("internal server error", unsafe)


class ChallengeDeliveryError(SafeError):
    name = "challenge_delivery_failed"
    kind = ErrorKind.DELIVERY

    def __init__(self, unsafe: Optional[str] = None):
        super().__init__("could not deliver the challenge code, try again later", unsafe)
