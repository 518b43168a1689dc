"""Typed results for login and second-factor decisions.

These are returned, never raised: throttling, lockout and bad codes are
expected traffic, not failures.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union

from authguard.storage.models import AuthSession


@dataclass(frozen=True)
class Allow:
    pass


@dataclass(frozen=True)
class Throttled:
    seconds: int

    @property
    def minutes(self) -> int:
        return max(1, -(-self.seconds // 60))


@dataclass(frozen=True)
class Locked:
    seconds: int

    @property
    def minutes(self) -> int:
        return max(1, -(-self.seconds // 60))


ThrottleDecision = Union[Allow, Throttled, Locked]


@dataclass(frozen=True)
class LoginAllowed:
    session: AuthSession
    requires_2fa: bool
    trusted_device: bool = False


@dataclass(frozen=True)
class InvalidCredentials:
    pass


@dataclass(frozen=True)
class AuthenticationUnavailable:
    """A collaborator (directory, verifier, counter store) failed; nothing was decided."""


LoginOutcome = Union[LoginAllowed, Throttled, Locked, InvalidCredentials, AuthenticationUnavailable]


@dataclass(frozen=True)
class TwoFactorVerified:
    """Second factor accepted.

    ``newly_verified`` is False when the session had already been verified.
    ``trusted_device_token`` is set only when the caller asked to remember
    the device.
    """

    session: AuthSession
    used_recovery_code: bool = False
    remaining_recovery_codes: Optional[int] = None
    newly_verified: bool = True
    trusted_device_token: Optional[str] = None


@dataclass(frozen=True)
class TwoFactorInvalid:
    retry_after: int = 0
    attempts_remaining: Optional[int] = None


@dataclass(frozen=True)
class TwoFactorExpired:
    pass


@dataclass(frozen=True)
class TwoFactorUnavailable:
    """The directory or code verifier failed; no attempt was counted."""


TwoFactorOutcome = Union[
    TwoFactorVerified, TwoFactorInvalid, TwoFactorExpired, TwoFactorUnavailable
]


class LogoutResult(str, Enum):
    SESSION_DESTROYED = "session_destroyed"
    IMPERSONATION_ENDED = "impersonation_ended"
