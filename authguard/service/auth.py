from __future__ import annotations

import dataclasses
from typing import Any, Dict, List, Optional

from authguard.clock import Clock, utcnow
from authguard.config import Settings
from authguard.logging import get_logger, identifier_digest, set_correlation_id
from authguard.service.devices import DeviceRegistry
from authguard.service.errors import AuthenticationError, NotFoundError
from authguard.service.events import BestEffortNotifier, SecurityEventRecorder, hash_identifier
from authguard.service.impersonation import ImpersonationManager
from authguard.service.interfaces import CredentialVerifier, SessionStore, UserDirectory
from authguard.service.lockout import AccountLockoutLedger, LockoutStatus
from authguard.service.normalize import normalize_identifier, normalize_origin
from authguard.service.outcomes import (
    AuthenticationUnavailable,
    InvalidCredentials,
    Locked,
    LoginAllowed,
    LoginOutcome,
    LogoutResult,
    Throttled,
    TwoFactorOutcome,
    TwoFactorVerified,
)
from authguard.service.throttle import LoginThrottlePolicy
from authguard.service.two_factor import TwoFactorChallengeService
from authguard.storage.errors import StoreUnavailable
from authguard.storage.models import AuthSession, ImpersonationSession, TerminationReason

logger = get_logger(__name__)


class AuthService:
    """Entry points offered to the web and CLI layers."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: SessionStore,
        directory: UserDirectory,
        credentials: CredentialVerifier,
        throttle: LoginThrottlePolicy,
        lockouts: AccountLockoutLedger,
        two_factor: TwoFactorChallengeService,
        impersonation: ImpersonationManager,
        devices: DeviceRegistry,
        recorder: SecurityEventRecorder,
        notifier: Optional[BestEffortNotifier] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.settings = settings
        self.store = store
        self.directory = directory
        self.credentials = credentials
        self.throttle = throttle
        self.lockouts = lockouts
        self.two_factor = two_factor
        self.impersonation = impersonation
        self.devices = devices
        self.recorder = recorder
        self.notifier = notifier
        self._clock = clock
        self.logger = logger

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def attempt_login(
        self,
        identifier: str,
        secret: str,
        origin: Optional[str],
        *,
        user_agent: Optional[str] = None,
        trusted_device_token: Optional[str] = None,
    ) -> LoginOutcome:
        set_correlation_id()
        normalized = normalize_identifier(identifier)
        normalized_origin = normalize_origin(origin)
        digest = identifier_digest(normalized)

        try:
            decision = self.throttle.check(normalized, normalized_origin)
        except StoreUnavailable as exc:
            self.logger.error("login_throttle_unavailable", identifier_hash=digest, error=str(exc))
            return AuthenticationUnavailable()

        if isinstance(decision, Locked):
            self.logger.info("login_locked", identifier_hash=digest, seconds=decision.seconds)
            self.recorder.record(
                "login.locked",
                identifier_hash=hash_identifier(normalized),
                origin=normalized_origin,
                retry_after=decision.seconds,
            )
            return decision
        if isinstance(decision, Throttled):
            self.logger.info("login_throttled", identifier_hash=digest, seconds=decision.seconds)
            self.recorder.record(
                "login.throttled",
                identifier_hash=hash_identifier(normalized),
                origin=normalized_origin,
                retry_after=decision.seconds,
            )
            return decision

        try:
            ok = self.credentials.verify(normalized, secret)
            user = self.directory.find_by_identifier(normalized) if ok else None
            requires_2fa = bool(user) and self.two_factor.requires_challenge(user)
        except Exception as exc:
            self.logger.error(
                "login_collaborator_failed",
                identifier_hash=digest,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.recorder.record(
                "login.unavailable",
                identifier_hash=hash_identifier(normalized),
                origin=normalized_origin,
            )
            return AuthenticationUnavailable()

        if ok and user is None:
            # verifier and directory disagree; decide nothing
            self.logger.error("login_directory_mismatch", identifier_hash=digest)
            return AuthenticationUnavailable()

        try:
            self.throttle.record_outcome(normalized, normalized_origin, ok)
        except StoreUnavailable as exc:
            self.logger.error("login_outcome_unrecorded", identifier_hash=digest, error=str(exc))
            return AuthenticationUnavailable()

        if not ok:
            self.recorder.record(
                "login.failed",
                identifier_hash=hash_identifier(normalized),
                origin=normalized_origin,
            )
            return InvalidCredentials()

        try:
            trusted = requires_2fa and self.devices.is_trusted(
                user, trusted_device_token, normalized_origin, user_agent
            )
            session = self.store.create_session(
                user.id,
                two_factor_required=requires_2fa and not trusted,
                ip_address=normalized_origin,
                user_agent=user_agent,
            )
            if session.two_factor_pending:
                self.two_factor.begin(session, user)
        except Exception as exc:
            self.logger.error(
                "login_session_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            self.recorder.record("login.unavailable", user_id=user.id, origin=normalized_origin)
            return AuthenticationUnavailable()

        if trusted:
            self.recorder.record(
                "2fa.skipped_trusted_device", user_id=user.id, session_id=session.id
            )
        if not session.two_factor_pending:
            self.devices.observe_login(user, normalized_origin, user_agent)
        self.logger.info(
            "login_succeeded",
            user_id=user.id,
            requires_2fa=session.two_factor_pending,
            trusted_device=trusted,
        )
        self.recorder.record(
            "login.succeeded",
            user_id=user.id,
            session_id=session.id,
            origin=normalized_origin,
            requires_2fa=session.two_factor_pending,
        )
        return LoginAllowed(
            session=session, requires_2fa=session.two_factor_pending, trusted_device=trusted
        )

    def submit_2fa(
        self, session_id: str, code: str, *, remember_device: bool = False
    ) -> TwoFactorOutcome:
        """Check a second-factor code for a pending session.

        With ``remember_device`` a verified outcome carries a trusted-device
        token for the client to store; a failure to issue it does not undo
        the verification.
        """
        outcome = self.two_factor.submit(session_id, code)
        if not isinstance(outcome, TwoFactorVerified) or not outcome.newly_verified:
            return outcome

        session = outcome.session
        try:
            user = self.directory.get_user(session.user_id)
        except Exception as exc:
            self.logger.error(
                "post_verification_lookup_failed",
                user_id=session.user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return outcome
        if user is None:
            return outcome

        self.devices.observe_login(user, session.ip_address, session.user_agent)
        if not remember_device:
            return outcome
        try:
            token = self.devices.trust(user, session.ip_address, session.user_agent)
        except Exception as exc:
            self.logger.error(
                "trusted_device_create_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return outcome
        return dataclasses.replace(outcome, trusted_device_token=token)

    def resolve_session(self, session_id: str, *, allow_pending: bool = False) -> AuthSession:
        """Current view of a web session with impersonation and challenge expiry applied.

        Sessions still waiting on a second factor are rejected unless
        ``allow_pending`` is set (e.g. for the code submission page); a pending
        session whose challenge has lapsed is destroyed either way.
        """
        session = self.store.get_session(session_id)
        if session is None:
            raise AuthenticationError("session not found")
        if session.two_factor_pending:
            if self.two_factor.expire_if_stale(session):
                raise AuthenticationError(
                    "two-factor challenge expired", error_code="two_factor_expired"
                )
            if not allow_pending:
                self.two_factor.ensure_verified(session)
        if session.impersonation_id and not self.impersonation.is_active(
            session.impersonation_id
        ):
            session = self.store.get_session(session_id)
            if session is None:
                raise AuthenticationError("session not found")
        return session

    def handle_logout(self, session_id: str) -> LogoutResult:
        session = self.store.get_session(session_id)
        if session is not None and self.impersonation.intercept_logout(session):
            return LogoutResult.IMPERSONATION_ENDED
        self.store.delete_session(session_id)
        if session is not None:
            self.recorder.record("logout", user_id=session.user_id, session_id=session_id)
        return LogoutResult.SESSION_DESTROYED

    # ------------------------------------------------------------------
    # Two-factor administration
    # ------------------------------------------------------------------

    def disable_two_factor(self, user_id: str, *, actor_user_id: Optional[str] = None) -> int:
        """Turn off 2FA for a user and forget their trusted devices.

        Returns the number of trusted devices revoked.
        """
        user = self.directory.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        self.directory.disable_two_factor(user_id)
        revoked = self.devices.revoke_all(user_id)
        self.logger.info(
            "two_factor_disabled", user_id=user_id, actor_user_id=actor_user_id, revoked=revoked
        )
        self.recorder.record(
            "2fa.disabled",
            user_id=user_id,
            actor_user_id=actor_user_id or user_id,
            trusted_devices_revoked=revoked,
        )
        if self.notifier:
            self.notifier.notify(user, "two_factor_disabled", actor_user_id=actor_user_id)
        return revoked

    def sweep_expired_challenges(self) -> int:
        return self.two_factor.purge_expired()

    def purge_expired_trusted_devices(self) -> int:
        return self.devices.purge_expired()

    # ------------------------------------------------------------------
    # Lockout administration
    # ------------------------------------------------------------------

    def lockout_status(self, identifier: str) -> LockoutStatus:
        return self.lockouts.status(identifier)

    def unlock_account(self, identifier: str, admin_user_id: str) -> bool:
        normalized = normalize_identifier(identifier)
        self.throttle.reset_identifier(normalized)
        return self.lockouts.unlock(normalized, admin_user_id)

    # ------------------------------------------------------------------
    # Impersonation
    # ------------------------------------------------------------------

    def start_impersonation(
        self,
        admin_user_id: str,
        target_user_id: str,
        *,
        session_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> ImpersonationSession:
        return self.impersonation.start(
            admin_user_id,
            target_user_id,
            web_session_id=session_id,
            ip_address=ip_address,
            user_agent=user_agent,
        )

    def extend_impersonation(self, impersonation_id: str) -> ImpersonationSession:
        return self.impersonation.extend(impersonation_id)

    def terminate_impersonation(
        self,
        impersonation_id: str,
        reason: TerminationReason = TerminationReason.MANUAL,
    ) -> None:
        self.impersonation.terminate(impersonation_id, reason)

    def force_terminate_impersonation(self, impersonation_id: str, actor_user_id: str) -> bool:
        return self.impersonation.force_terminate(impersonation_id, actor_user_id)

    def list_active_impersonations(
        self, admin_user_id: Optional[str] = None
    ) -> List[ImpersonationSession]:
        return self.impersonation.list_active(admin_user_id)

    def impersonation_status(self, impersonation_id: str) -> Optional[Dict[str, Any]]:
        return self.impersonation.sanitized_context(impersonation_id)

    def sweep_expired_impersonations(self) -> int:
        return self.impersonation.sweep_expired()

    def cleanup_old_impersonation_records(self, older_than_days: Optional[int] = None) -> int:
        return self.impersonation.cleanup(older_than_days)
