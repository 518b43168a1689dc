from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Optional, Sequence, Tuple

from authguard.clock import utcnow


class TerminationReason(str, Enum):
    MANUAL = "manual"
    EXPIRED = "expired"
    LOGOUT_RESTORE = "logout_restore"
    ADMIN_TERMINATED = "admin_terminated"


@dataclass
class UserRecord:
    id: str
    email: str
    role: str = "user"
    two_factor_enabled: bool = False
    two_factor_confirmed: bool = False
    is_banned: bool = False
    created_at: datetime = field(default_factory=utcnow)
    meta: Dict | None = None


@dataclass
class AttemptCounter:
    key: str
    count: int
    expires_at: datetime
    decay_seconds: int

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class LockoutRecord:
    """Failed-attempt ledger entry for one account key (sha256 of identifier)."""

    account_key: str
    failed_count: int = 0
    locked_until: Optional[datetime] = None
    lockout_count: int = 0
    last_failed_at: Optional[datetime] = None
    last_origin: Optional[str] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and self.locked_until > now


@dataclass
class LockoutUpdate:
    """Result of registering one failure against a LockoutRecord."""

    record: LockoutRecord
    lock_started: bool = False
    lock_extended: bool = False


@dataclass
class AuthSession:
    """Web session as seen by the auth core.

    ``user_id`` is always the true principal; ``acting_user_id`` is set only
    while an impersonation is active on this session.
    """

    id: str
    user_id: str
    created_at: datetime
    two_factor_required: bool = False
    two_factor_verified: bool = False
    impersonation_id: Optional[str] = None
    acting_user_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def two_factor_pending(self) -> bool:
        return self.two_factor_required and not self.two_factor_verified

    @property
    def effective_user_id(self) -> str:
        return self.acting_user_id or self.user_id

    @property
    def is_impersonating(self) -> bool:
        return self.impersonation_id is not None

    @classmethod
    def new(
        cls,
        user_id: str,
        *,
        now: Optional[datetime] = None,
        two_factor_required: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "AuthSession":
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=now or utcnow(),
            two_factor_required=two_factor_required,
            ip_address=ip_address,
            user_agent=user_agent,
        )


@dataclass
class TwoFactorChallenge:
    session_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now


@dataclass
class KnownDevice:
    """A (user agent, origin) pair a user has completed a login from."""

    user_id: str
    fingerprint: str
    first_seen: datetime
    last_seen: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class TrustedDevice:
    """Remembered device that may skip the second factor until ``expires_at``.

    Only the sha256 of the bearer token is kept.
    """

    id: str
    user_id: str
    token_hash: str
    fingerprint: str
    created_at: datetime
    expires_at: datetime
    last_used_at: Optional[datetime] = None
    ip_address: Optional[str] = None

    def is_valid(self, now: datetime) -> bool:
        return self.expires_at > now


@dataclass
class ImpersonationSession:
    id: str
    admin_user_id: str
    target_user_id: str
    started_at: datetime
    expires_at: datetime
    token_hash: str = ""
    web_session_id: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    terminated_at: Optional[datetime] = None
    termination_reason: Optional[TerminationReason] = None

    def is_active(self, now: datetime) -> bool:
        return self.terminated_at is None and self.expires_at > now

    def duration_seconds(self, now: datetime) -> int:
        end = self.terminated_at or now
        return max(0, int((end - self.started_at).total_seconds()))

    @classmethod
    def new(
        cls,
        admin_user_id: str,
        target_user_id: str,
        *,
        now: datetime,
        timeout: timedelta,
        token_hash: str = "",
        web_session_id: str | None = None,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> "ImpersonationSession":
        return cls(
            id=str(uuid.uuid4()),
            admin_user_id=admin_user_id,
            target_user_id=target_user_id,
            started_at=now,
            expires_at=now + timeout,
            token_hash=token_hash,
            web_session_id=web_session_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )


def lockout_duration(tiers: Sequence[Tuple[int, int]], failed_count: int) -> int:
    """Lockout seconds owed at ``failed_count``; 0 below the first threshold.

    ``tiers`` is ascending ``(threshold, seconds)``; the last row reached wins.
    """

    seconds = 0
    for threshold, tier_seconds in tiers:
        if failed_count < threshold:
            break
        seconds = tier_seconds
    return seconds
