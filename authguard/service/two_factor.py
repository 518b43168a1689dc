from __future__ import annotations

import re
from datetime import datetime, timedelta
from enum import Enum
from typing import List, Optional

from authguard.clock import Clock, utcnow
from authguard.config import Settings
from authguard.logging import get_logger
from authguard.service.errors import AuthenticationError
from authguard.service.events import BestEffortNotifier, SecurityEventRecorder
from authguard.service.interfaces import CodeVerifier, CounterStore, SessionStore, UserDirectory
from authguard.service.outcomes import (
    TwoFactorExpired,
    TwoFactorInvalid,
    TwoFactorOutcome,
    TwoFactorUnavailable,
    TwoFactorVerified,
)
from authguard.storage.memory import StripedLocks
from authguard.storage.models import AuthSession, TwoFactorChallenge, UserRecord

logger = get_logger(__name__)

_TOTP_PATTERN = re.compile(r"^\d{6,8}$")


class ChallengeState(str, Enum):
    NO_CHALLENGE = "no_challenge"
    PENDING = "pending"
    VERIFIED = "verified"


class TwoFactorChallengeService:
    """Gates a partially authenticated session until a code is presented.

    A session enters PENDING when primary credentials succeed for a user with
    confirmed 2FA, and leaves it only by a valid TOTP or single-use recovery
    code (VERIFIED) or by the challenge expiring, which destroys the session.
    Failed submissions are counted per user and per code kind, so a fresh
    login does not buy a fresh set of guesses.
    """

    def __init__(
        self,
        store: SessionStore,
        counters: CounterStore,
        verifier: CodeVerifier,
        directory: UserDirectory,
        settings: Settings,
        *,
        recorder: SecurityEventRecorder,
        notifier: Optional[BestEffortNotifier] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.counters = counters
        self.verifier = verifier
        self.directory = directory
        self.settings = settings
        self.recorder = recorder
        self.notifier = notifier
        self._clock = clock
        self._user_locks = StripedLocks()

    @staticmethod
    def attempt_key(user_id: str, action: str) -> str:
        return f"2fa:{user_id}:{action}"

    def requires_challenge(self, user: UserRecord) -> bool:
        return self.directory.has_confirmed_two_factor(user)

    def begin(self, session: AuthSession, user: UserRecord) -> TwoFactorChallenge:
        now = self._clock()
        challenge = TwoFactorChallenge(
            session_id=session.id,
            user_id=user.id,
            created_at=now,
            expires_at=now + timedelta(seconds=self.settings.two_factor_challenge_ttl_seconds),
        )
        self.store.save_challenge(challenge)
        self.recorder.record("2fa.challenge_started", user_id=user.id, session_id=session.id)
        return challenge

    def state(self, session_id: str) -> ChallengeState:
        session = self.store.get_session(session_id)
        if session is None or not session.two_factor_required:
            return ChallengeState.NO_CHALLENGE
        if session.two_factor_verified:
            return ChallengeState.VERIFIED
        return ChallengeState.PENDING

    def ensure_verified(self, session: AuthSession) -> None:
        """Raise unless the session has cleared any required second factor."""
        if session.two_factor_pending:
            raise AuthenticationError(
                "two-factor verification required",
                detail={"session_id": session.id},
                error_code="two_factor_required",
            )

    def discard(self, session_id: str) -> None:
        self.store.delete_challenge(session_id)

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    def _is_stale(
        self, session: AuthSession, challenge: Optional[TwoFactorChallenge], now: datetime
    ) -> bool:
        if challenge is not None:
            return challenge.is_expired(now)
        # pending without a challenge: give begin() the challenge TTL to catch up
        ttl = timedelta(seconds=self.settings.two_factor_challenge_ttl_seconds)
        return session.created_at + ttl <= now

    def expire_if_stale(self, session: AuthSession) -> bool:
        """Destroy a pending session whose challenge has lapsed; True if it was destroyed."""
        if not session.two_factor_pending:
            return False
        challenge = self.store.get_challenge(session.id)
        if not self._is_stale(session, challenge, self._clock()):
            return False
        self._expire(session, challenge)
        return True

    def stale_sessions(self) -> List[AuthSession]:
        now = self._clock()
        return [
            session
            for session in self.store.list_pending_sessions()
            if self._is_stale(session, self.store.get_challenge(session.id), now)
        ]

    def purge_expired(self) -> int:
        """Destroy every pending session whose challenge has lapsed."""
        removed = sum(1 for session in self.stale_sessions() if self.expire_if_stale(session))
        if removed:
            logger.info("two_factor_challenges_purged", removed=removed)
        return removed

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, session_id: str, code: str) -> TwoFactorOutcome:
        session = self.store.get_session(session_id)
        if session is None:
            return TwoFactorExpired()
        if not session.two_factor_pending:
            return TwoFactorVerified(session=session, newly_verified=False)

        challenge = self.store.get_challenge(session_id)
        now = self._clock()
        if challenge is None or challenge.is_expired(now):
            self._expire(session, challenge)
            return TwoFactorExpired()

        try:
            user = self.directory.get_user(challenge.user_id)
        except Exception as exc:
            self._log_unavailable(challenge.user_id, exc)
            return TwoFactorUnavailable()
        if user is None:
            self._expire(session, challenge)
            return TwoFactorExpired()

        submitted = (code or "").strip()
        is_totp = bool(_TOTP_PATTERN.match(submitted))
        action = "verify" if is_totp else "recovery"
        max_attempts = (
            self.settings.two_factor_max_attempts if is_totp else self.settings.recovery_max_attempts
        )
        decay = (
            self.settings.two_factor_decay_seconds if is_totp else self.settings.recovery_decay_seconds
        )
        key = self.attempt_key(user.id, action)
        if self.counters.count(key) >= max_attempts:
            retry_after = self.counters.available_in(key)
            logger.warning("two_factor_throttled", user_id=user.id, action=action)
            self.recorder.record(
                "2fa.throttled", user_id=user.id, action=action, retry_after=retry_after
            )
            return TwoFactorInvalid(retry_after=retry_after, attempts_remaining=0)

        remaining_codes: Optional[int] = None
        try:
            if is_totp:
                secret = self.directory.two_factor_secret(user)
                ok = bool(secret) and self.verifier.verify_code(
                    secret, submitted, self.settings.two_factor_window
                )
            else:
                with self._user_locks.for_key(user.id):
                    ok = self.verifier.consume_recovery_code(user.id, submitted)
                    if ok:
                        remaining_codes = self.verifier.remaining_recovery_codes(user.id)
        except Exception as exc:
            self._log_unavailable(user.id, exc)
            return TwoFactorUnavailable()

        if not ok:
            attempts = self.counters.hit(key, decay)
            attempts_remaining = max(0, max_attempts - attempts)
            retry_after = self.counters.available_in(key) if attempts_remaining == 0 else 0
            logger.info(
                "two_factor_failed",
                user_id=user.id,
                action=action,
                attempts_remaining=attempts_remaining,
            )
            self.recorder.record(
                "2fa.failed",
                user_id=user.id,
                session_id=session_id,
                action=action,
                attempts_remaining=attempts_remaining,
            )
            return TwoFactorInvalid(retry_after=retry_after, attempts_remaining=attempts_remaining)

        self.counters.clear(self.attempt_key(user.id, "verify"))
        self.counters.clear(self.attempt_key(user.id, "recovery"))
        verified = self.store.mark_session_verified(session_id)
        if verified is None:
            return TwoFactorExpired()
        self.recorder.record(
            "2fa.verified",
            user_id=user.id,
            session_id=session_id,
            method="totp" if is_totp else "recovery_code",
        )
        if not is_totp:
            self._after_recovery_code(user, remaining_codes or 0)
        return TwoFactorVerified(
            session=verified,
            used_recovery_code=not is_totp,
            remaining_recovery_codes=remaining_codes,
        )

    def _log_unavailable(self, user_id: str, exc: Exception) -> None:
        logger.error(
            "two_factor_verifier_failed",
            user_id=user_id,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        self.recorder.record("2fa.unavailable", user_id=user_id)

    def _after_recovery_code(self, user: UserRecord, remaining: int) -> None:
        self.recorder.record("recovery_code_used", user_id=user.id, remaining=remaining)
        if self.notifier:
            self.notifier.notify(user, "recovery_code_used", remaining=remaining)
        if remaining <= self.settings.recovery_low_watermark:
            logger.warning("recovery_codes_low", user_id=user.id, remaining=remaining)
            self.recorder.record("recovery_codes_low", user_id=user.id, remaining=remaining)
            if self.notifier:
                self.notifier.notify(user, "recovery_codes_low", remaining=remaining)

    def _expire(self, session: AuthSession, challenge: Optional[TwoFactorChallenge]) -> None:
        self.store.delete_session(session.id)
        self.recorder.record(
            "2fa.expired",
            user_id=challenge.user_id if challenge else session.user_id,
            session_id=session.id,
        )
