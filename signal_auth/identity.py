"""
signal_auth/identity.py

Signal identity validation.

A user proves control of exactly one Signal identity: a username or a phone
number. Both are normalized into a canonical `identifier`, which is:
  - the recipient passed to the Signal channel
  - the message signed into the authorization code
  - the `sub` claim of the access token

Username rules (https://support.signal.org/hc/en-us/articles/6712070553754):
  - 3 to 32 characters from a-z, 0-9 and _
  - may only start with a-z or _
  - followed by ".NN" (two digits, not counted toward the max length)
  - case insensitive; normalized to lowercase

Phone rules:
  - "+" followed by a 1-3 digit country code and exactly 10 digits
    e.g. +12223334444, +8522223334444
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from .errors import IdentityValidationError


USERNAME_RE = re.compile(r"^[a-z_][a-z0-9_]{2,31}\.\d{2}$", re.ASCII)
PHONE_RE = re.compile(r"^\+\d{1,3}\d{10}$", re.ASCII)


class IdentityKind(str, Enum):
    USERNAME = "username"
    PHONE = "phone"


@dataclass(frozen=True)
class Identity:
    kind: IdentityKind
    value: str
    identifier: str = field(init=False)

    def __post_init__(self):
        object.__setattr__(self, "identifier", self.value)

    @property
    def username(self) -> Optional[str]:
        return self.value if self.kind == IdentityKind.USERNAME else None

    @property
    def phone(self) -> Optional[str]:
        return self.value if self.kind == IdentityKind.PHONE else None

    def public_view(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"identifier": self.identifier}
        if self.username:
            out["username"] = self.username
        if self.phone:
            out["phone"] = self.phone
        return out


def _diagnostic(username: Optional[str], phone: Optional[str]) -> str:
    # raw input, for logs only
    return f"username={username!r} phone={phone!r}"


def validate_identity(username: Optional[str] = None, phone: Optional[str] = None) -> Identity:
    """
    Validate a user-supplied Signal username or phone number.

    Exactly one of the two must be given; empty strings count as absent.
    Raises IdentityValidationError. The safe message never echoes the input.
    """
    username = username if isinstance(username, str) and username else None
    phone = phone if isinstance(phone, str) and phone else None

    if username is None and phone is None:
        raise IdentityValidationError(
            "Neither valid username nor phone provided",
            _diagnostic(username, phone),
        )

    if username is not None and phone is not None:
        raise IdentityValidationError(
            "Provide either a username or a phone number, not both",
            _diagnostic(username, phone),
        )

    if username is not None:
        normalized = username.lower()
        if not USERNAME_RE.fullmatch(normalized):
            raise IdentityValidationError(
                f"Invalid username: must match {USERNAME_RE.pattern}",
                _diagnostic(username, phone),
            )
        return Identity(IdentityKind.USERNAME, normalized)

    if not PHONE_RE.fullmatch(phone):
        raise IdentityValidationError(
            f"Invalid phone number: must match {PHONE_RE.pattern}",
            _diagnostic(username, phone),
        )
    return Identity(IdentityKind.PHONE, phone)
