from __future__ import annotations

from datetime import datetime
from typing import Any, Collection, List, Mapping, Optional, Protocol, Sequence, Tuple

from authguard.storage.models import (
    AuthSession,
    ImpersonationSession,
    KnownDevice,
    LockoutRecord,
    LockoutUpdate,
    TerminationReason,
    TrustedDevice,
    TwoFactorChallenge,
    UserRecord,
)


class CredentialVerifier(Protocol):
    def verify(self, identifier: str, secret: str) -> bool: ...


class CodeVerifier(Protocol):
    """TOTP check plus the single-use recovery code book."""

    def verify_code(self, secret: str, code: str, window: int) -> bool: ...

    def consume_recovery_code(self, user_id: str, code: str) -> bool: ...

    def remaining_recovery_codes(self, user_id: str) -> int: ...


class UserDirectory(Protocol):
    def find_by_identifier(self, identifier: str) -> Optional[UserRecord]: ...

    def get_user(self, user_id: str) -> Optional[UserRecord]: ...

    def role_of(self, user: UserRecord) -> str: ...

    def has_confirmed_two_factor(self, user: UserRecord) -> bool: ...

    def two_factor_secret(self, user: UserRecord) -> Optional[str]: ...

    def disable_two_factor(self, user_id: str) -> None: ...

    def users_with_roles(self, roles: Collection[str]) -> List[UserRecord]: ...


class AuditSink(Protocol):
    def record(self, event_type: str, attributes: Mapping[str, Any]) -> None: ...


class NotificationDispatcher(Protocol):
    def notify(self, user: UserRecord, template: str, context: Mapping[str, Any]) -> None: ...


class CounterStore(Protocol):
    def hit(self, key: str, decay_seconds: int) -> int: ...

    def count(self, key: str) -> int: ...

    def clear(self, key: str) -> None: ...

    def available_in(self, key: str) -> int: ...


class LockoutStore(Protocol):
    def get_lockout(self, account_key: str) -> Optional[LockoutRecord]: ...

    def register_failure(
        self,
        account_key: str,
        *,
        origin: str,
        tiers: Sequence[Tuple[int, int]],
        window_seconds: int,
    ) -> LockoutUpdate: ...

    def clear_lockout(self, account_key: str) -> bool: ...


class SessionStore(Protocol):
    """Web session, challenge and impersonation persistence."""

    def create_session(
        self,
        user_id: str,
        *,
        two_factor_required: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthSession: ...

    def get_session(self, session_id: str) -> Optional[AuthSession]: ...

    def list_pending_sessions(self) -> List[AuthSession]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def mark_session_verified(self, session_id: str) -> Optional[AuthSession]: ...

    def bind_impersonation(
        self, session_id: str, impersonation_id: str, acting_user_id: str
    ) -> AuthSession: ...

    def save_challenge(self, challenge: TwoFactorChallenge) -> TwoFactorChallenge: ...

    def get_challenge(self, session_id: str) -> Optional[TwoFactorChallenge]: ...

    def delete_challenge(self, session_id: str) -> bool: ...

    def create_impersonation(self, record: ImpersonationSession) -> ImpersonationSession: ...

    def get_impersonation(self, impersonation_id: str) -> Optional[ImpersonationSession]: ...

    def list_impersonations(
        self,
        *,
        admin_user_id: Optional[str] = None,
        active_at: Optional[datetime] = None,
    ) -> list[ImpersonationSession]: ...

    def count_active_impersonations(
        self, now: datetime, *, admin_user_id: Optional[str] = None
    ) -> int: ...

    def extend_impersonation(
        self, impersonation_id: str, expires_at: datetime
    ) -> ImpersonationSession: ...

    def terminate_impersonation(
        self,
        impersonation_id: str,
        reason: TerminationReason,
        terminated_at: datetime,
    ) -> Optional[ImpersonationSession]: ...

    def delete_impersonations_before(self, cutoff: datetime, now: datetime) -> int: ...


class DeviceStore(Protocol):
    """Known and trusted device records."""

    def touch_known_device(
        self,
        user_id: str,
        fingerprint: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool: ...

    def save_trusted_device(self, device: TrustedDevice) -> TrustedDevice: ...

    def find_trusted_device(self, user_id: str, token_hash: str) -> Optional[TrustedDevice]: ...

    def touch_trusted_device(self, device_id: str, used_at: datetime) -> None: ...

    def delete_trusted_device(self, device_id: str) -> bool: ...

    def delete_trusted_devices(self, user_id: str) -> int: ...

    def delete_expired_trusted_devices(self, now: datetime) -> int: ...

    def list_known_devices(self, user_id: str) -> List[KnownDevice]: ...
