from __future__ import annotations

import hashlib
import hmac
import secrets
import threading
from datetime import timedelta
from typing import Any, Dict, List, Optional

from authguard.clock import Clock, seconds_until, utcnow
from authguard.config import Settings
from authguard.logging import get_logger
from authguard.service.errors import (
    AlreadyImpersonating,
    AuthenticationError,
    ForbiddenError,
    ImpersonationDenied,
    ImpersonationErrorKind,
    ImpersonationNotFound,
    ImpersonationTerminated,
    NotFoundError,
    ValidationError,
)
from authguard.service.events import SecurityEventRecorder
from authguard.service.interfaces import SessionStore, UserDirectory
from authguard.storage.errors import ConstraintViolation
from authguard.storage.models import (
    AuthSession,
    ImpersonationSession,
    TerminationReason,
    UserRecord,
)

logger = get_logger(__name__)

_DENIAL_MESSAGES = {
    ImpersonationErrorKind.NOT_PERMITTED: "Your role is not allowed to impersonate users.",
    ImpersonationErrorKind.TARGET_ROLE_BLOCKED: "Users with this role cannot be impersonated.",
    ImpersonationErrorKind.TARGET_IS_SELF: "You cannot impersonate yourself.",
    ImpersonationErrorKind.TARGET_BANNED: "Suspended users cannot be impersonated.",
    ImpersonationErrorKind.ADMIN_LACKS_2FA: (
        "Two-factor authentication must be enabled before impersonating users."
    ),
    ImpersonationErrorKind.GLOBAL_CEILING_REACHED: (
        "Maximum concurrent impersonation sessions reached."
    ),
    ImpersonationErrorKind.PER_ADMIN_CEILING_REACHED: (
        "You have reached your maximum number of concurrent impersonation sessions."
    ),
}


class ImpersonationManager:
    """Creates, extends and ends admin-acting-as-user sessions.

    Ceiling checks and record creation run under the admin's lock and then the
    global lock (always in that order), so concurrent starts can never exceed
    either ceiling. Expiry is evaluated lazily on every access; ``sweep_expired``
    is housekeeping on top of that.
    """

    def __init__(
        self,
        store: SessionStore,
        directory: UserDirectory,
        settings: Settings,
        *,
        recorder: SecurityEventRecorder,
        secret_key: str,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.directory = directory
        self.settings = settings
        self.recorder = recorder
        self._secret_key = secret_key.encode("utf-8")
        self._clock = clock
        self._global_lock = threading.Lock()
        self._admin_locks: Dict[str, threading.Lock] = {}
        self._admin_locks_guard = threading.Lock()

    @property
    def timeout(self) -> timedelta:
        return timedelta(minutes=self.settings.impersonation_timeout_minutes)

    def _admin_lock(self, admin_user_id: str) -> threading.Lock:
        with self._admin_locks_guard:
            lock = self._admin_locks.get(admin_user_id)
            if lock is None:
                lock = threading.Lock()
                self._admin_locks[admin_user_id] = lock
            return lock

    def _token_hash(self, admin_user_id: str, target_user_id: str, issued_at: int) -> str:
        material = "|".join(
            [admin_user_id, target_user_id, str(issued_at), secrets.token_hex(16)]
        )
        token = hmac.new(self._secret_key, material.encode("utf-8"), hashlib.sha256).hexdigest()
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def _deny(
        self, kind: ImpersonationErrorKind, admin: UserRecord, target: UserRecord
    ) -> None:
        logger.warning(
            "impersonation_denied",
            kind=kind.value,
            admin_user_id=admin.id,
            target_user_id=target.id,
        )
        self.recorder.record(
            "impersonation.denied",
            kind=kind.value,
            admin_user_id=admin.id,
            target_user_id=target.id,
        )
        raise ImpersonationDenied(
            kind,
            _DENIAL_MESSAGES[kind],
            detail={"admin_user_id": admin.id, "target_user_id": target.id},
        )

    def _precondition_failure(
        self, admin: UserRecord, target: UserRecord
    ) -> Optional[ImpersonationErrorKind]:
        if self.directory.role_of(admin) not in self.settings.impersonation_allowed_roles:
            return ImpersonationErrorKind.NOT_PERMITTED
        if self.directory.role_of(target) in self.settings.impersonation_blocked_roles:
            return ImpersonationErrorKind.TARGET_ROLE_BLOCKED
        if target.id == admin.id:
            return ImpersonationErrorKind.TARGET_IS_SELF
        if target.is_banned:
            return ImpersonationErrorKind.TARGET_BANNED
        if self.settings.impersonation_require_2fa and not self.directory.has_confirmed_two_factor(
            admin
        ):
            return ImpersonationErrorKind.ADMIN_LACKS_2FA
        return None

    def _check_web_session(self, web_session_id: str, admin: UserRecord) -> AuthSession:
        session = self.store.get_session(web_session_id)
        if session is None:
            raise NotFoundError("session not found", detail={"session_id": web_session_id})
        if session.user_id != admin.id:
            raise ForbiddenError("session does not belong to the acting admin")
        if session.two_factor_pending:
            raise AuthenticationError(
                "two-factor verification required", error_code="two_factor_required"
            )
        if session.impersonation_id and self.is_active(session.impersonation_id):
            raise AlreadyImpersonating(
                "session is already impersonating another user",
                detail={"impersonation_id": session.impersonation_id},
            )
        return session

    def start(
        self,
        admin_user_id: str,
        target_user_id: str,
        *,
        web_session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ImpersonationSession:
        admin = self.directory.get_user(admin_user_id)
        if admin is None:
            raise NotFoundError("admin not found", detail={"user_id": admin_user_id})
        target = self.directory.get_user(target_user_id)
        if target is None:
            raise NotFoundError("target user not found", detail={"user_id": target_user_id})

        failure = self._precondition_failure(admin, target)
        if failure is not None:
            self._deny(failure, admin, target)
        if web_session_id is not None:
            self._check_web_session(web_session_id, admin)

        with self._admin_lock(admin.id), self._global_lock:
            now = self._clock()
            if self.store.count_active_impersonations(now) >= self.settings.impersonation_max_global:
                failure = ImpersonationErrorKind.GLOBAL_CEILING_REACHED
            elif (
                self.store.count_active_impersonations(now, admin_user_id=admin.id)
                >= self.settings.impersonation_max_per_admin
            ):
                failure = ImpersonationErrorKind.PER_ADMIN_CEILING_REACHED
            else:
                record = self.store.create_impersonation(
                    ImpersonationSession.new(
                        admin.id,
                        target.id,
                        now=now,
                        timeout=self.timeout,
                        token_hash=self._token_hash(admin.id, target.id, int(now.timestamp())),
                        web_session_id=web_session_id,
                        ip_address=ip_address,
                        user_agent=user_agent,
                    )
                )
        if failure is not None:
            self._deny(failure, admin, target)

        if web_session_id is not None:
            try:
                self.store.bind_impersonation(web_session_id, record.id, target.id)
            except ConstraintViolation as exc:
                # lost a race with another start on the same web session
                self.store.terminate_impersonation(
                    record.id, TerminationReason.MANUAL, self._clock()
                )
                raise AlreadyImpersonating(
                    "session is already impersonating another user", detail=exc.detail
                ) from exc

        logger.info(
            "impersonation_started",
            impersonation_id=record.id,
            admin_user_id=admin.id,
            target_user_id=target.id,
        )
        self.recorder.record(
            "impersonation.start",
            impersonation_id=record.id,
            admin_user_id=admin.id,
            target_user_id=target.id,
            expires_at=record.expires_at.isoformat(),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        return record

    def get(self, impersonation_id: str) -> Optional[ImpersonationSession]:
        return self.store.get_impersonation(impersonation_id)

    def extend(self, impersonation_id: str) -> ImpersonationSession:
        record = self.store.get_impersonation(impersonation_id)
        if record is None:
            raise ImpersonationNotFound(
                "impersonation session not found", detail={"id": impersonation_id}
            )
        now = self._clock()
        if record.terminated_at is None and not record.is_active(now):
            self._terminate(record, TerminationReason.EXPIRED)
            record = self.store.get_impersonation(impersonation_id) or record
        if record.terminated_at is not None:
            raise ImpersonationTerminated(
                "impersonation session already ended",
                detail={
                    "id": impersonation_id,
                    "reason": record.termination_reason.value
                    if record.termination_reason
                    else None,
                },
            )
        try:
            extended = self.store.extend_impersonation(impersonation_id, now + self.timeout)
        except ConstraintViolation as exc:
            raise ImpersonationTerminated(
                "impersonation session already ended", detail={"id": impersonation_id}
            ) from exc
        self.recorder.record(
            "impersonation.extend",
            impersonation_id=impersonation_id,
            admin_user_id=extended.admin_user_id,
            target_user_id=extended.target_user_id,
            expires_at=extended.expires_at.isoformat(),
        )
        return extended

    def _terminate(self, record: ImpersonationSession, reason: TerminationReason) -> bool:
        now = self._clock()
        ended_at = now
        if record.expires_at <= now:
            # it ran out before anyone ended it
            reason = TerminationReason.EXPIRED
            ended_at = record.expires_at
        ended = self.store.terminate_impersonation(record.id, reason, ended_at)
        if ended is None:
            return False
        duration = ended.duration_seconds(now)
        logger.info(
            "impersonation_ended",
            impersonation_id=ended.id,
            reason=reason.value,
            duration_seconds=duration,
        )
        self.recorder.record(
            "impersonation.stop",
            impersonation_id=ended.id,
            admin_user_id=ended.admin_user_id,
            target_user_id=ended.target_user_id,
            reason=reason.value,
            duration_seconds=duration,
        )
        return True

    def terminate(
        self, impersonation_id: str, reason: TerminationReason = TerminationReason.MANUAL
    ) -> bool:
        """End a session; a no-op (False) when already terminated or unknown."""
        record = self.store.get_impersonation(impersonation_id)
        if record is None:
            logger.info("impersonation_terminate_unknown", impersonation_id=impersonation_id)
            return False
        return self._terminate(record, TerminationReason(reason))

    def force_terminate(self, impersonation_id: str, actor_user_id: str) -> bool:
        record = self.store.get_impersonation(impersonation_id)
        if record is None or not record.is_active(self._clock()):
            return False
        ended = self._terminate(record, TerminationReason.ADMIN_TERMINATED)
        if ended:
            self.recorder.record(
                "impersonation.force_terminate",
                impersonation_id=impersonation_id,
                actor_user_id=actor_user_id,
                admin_user_id=record.admin_user_id,
                target_user_id=record.target_user_id,
            )
        return ended

    def is_active(self, impersonation_id: str) -> bool:
        record = self.store.get_impersonation(impersonation_id)
        if record is None or record.terminated_at is not None:
            return False
        if not record.is_active(self._clock()):
            self._terminate(record, TerminationReason.EXPIRED)
            return False
        return True

    def remaining_seconds(self, impersonation_id: str) -> int:
        if not self.is_active(impersonation_id):
            return 0
        record = self.store.get_impersonation(impersonation_id)
        return seconds_until(record.expires_at, self._clock()) if record else 0

    def list_active(self, admin_user_id: Optional[str] = None) -> List[ImpersonationSession]:
        self.sweep_expired()
        return self.store.list_impersonations(
            admin_user_id=admin_user_id, active_at=self._clock()
        )

    def sweep_expired(self) -> int:
        now = self._clock()
        expired = [
            record
            for record in self.store.list_impersonations()
            if record.terminated_at is None and record.expires_at <= now
        ]
        swept = sum(1 for record in expired if self._terminate(record, TerminationReason.EXPIRED))
        if swept:
            logger.info("impersonation_sweep", terminated=swept)
        return swept

    def intercept_logout(self, session: AuthSession) -> bool:
        """End the impersonation bound to ``session`` instead of logging out.

        Returns True when an impersonation was ended and the admin's own
        session must be kept.
        """
        if not session.impersonation_id:
            return False
        record = self.store.get_impersonation(session.impersonation_id)
        if record is None or record.terminated_at is not None:
            return False
        return self._terminate(record, TerminationReason.LOGOUT_RESTORE)

    def cleanup(self, older_than_days: Optional[int] = None) -> int:
        days = (
            older_than_days
            if older_than_days is not None
            else self.settings.impersonation_retention_days
        )
        if days < 1:
            raise ValidationError(
                "older_than_days must be at least 1", detail={"older_than_days": days}
            )
        self.sweep_expired()
        now = self._clock()
        deleted = self.store.delete_impersonations_before(now - timedelta(days=days), now)
        logger.info("impersonation_cleanup", deleted=deleted, older_than_days=days)
        self.recorder.record("impersonation.cleanup", deleted=deleted, older_than_days=days)
        return deleted

    def sanitized_context(self, impersonation_id: str) -> Optional[Dict[str, Any]]:
        """Front-end safe view of a session; never includes token material."""
        if not self.is_active(impersonation_id):
            return None
        record = self.store.get_impersonation(impersonation_id)
        if record is None:
            return None
        admin = self.directory.get_user(record.admin_user_id)
        target = self.directory.get_user(record.target_user_id)
        if admin is None or target is None:
            return None
        return {
            "is_active": True,
            "impersonator": {"id": admin.id, "email": admin.email},
            "target": {"id": target.id, "email": target.email},
            "started_at": record.started_at.isoformat(),
            "expires_at": record.expires_at.isoformat(),
            "remaining_seconds": seconds_until(record.expires_at, self._clock()),
        }
