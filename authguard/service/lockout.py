from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from authguard.clock import Clock, seconds_until, utcnow
from authguard.config import Settings
from authguard.logging import get_logger
from authguard.service.events import BestEffortNotifier, SecurityEventRecorder, hash_identifier
from authguard.service.interfaces import LockoutStore, UserDirectory
from authguard.service.normalize import account_key, normalize_identifier, normalize_origin
from authguard.storage.models import LockoutRecord

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    remaining_seconds: int
    failed_count: int
    lockout_count: int


class AccountLockoutLedger:
    """Per-account failed-attempt ledger with escalating lockout windows.

    Consulted before credential verification; a locked account never reaches
    the verifier. Durations come from an ordered ``(failed_count, seconds)``
    table so they are non-decreasing in failed_count, and a new failure never
    shortens a lock already in force.
    """

    def __init__(
        self,
        store: LockoutStore,
        settings: Settings,
        *,
        recorder: SecurityEventRecorder,
        notifier: Optional[BestEffortNotifier] = None,
        directory: Optional[UserDirectory] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.recorder = recorder
        self.notifier = notifier
        self.directory = directory
        self._clock = clock

    def is_locked(self, identifier: str) -> bool:
        return self.remaining_lockout_seconds(identifier) > 0

    def remaining_lockout_seconds(self, identifier: str) -> int:
        record = self.store.get_lockout(account_key(identifier))
        if record is None or record.locked_until is None:
            return 0
        return seconds_until(record.locked_until, self._clock())

    def status(self, identifier: str) -> LockoutStatus:
        record = self.store.get_lockout(account_key(identifier))
        if record is None:
            return LockoutStatus(locked=False, remaining_seconds=0, failed_count=0, lockout_count=0)
        remaining = (
            seconds_until(record.locked_until, self._clock()) if record.locked_until else 0
        )
        return LockoutStatus(
            locked=remaining > 0,
            remaining_seconds=remaining,
            failed_count=record.failed_count,
            lockout_count=record.lockout_count,
        )

    def record_failed_attempt(self, identifier: str, origin: str | None) -> None:
        normalized = normalize_identifier(identifier)
        update = self.store.register_failure(
            account_key(normalized),
            origin=normalize_origin(origin),
            tiers=self.settings.lockout_tiers,
            window_seconds=self.settings.lockout_window_seconds,
        )
        record = update.record
        if not (update.lock_started or update.lock_extended):
            return

        now = self._clock()
        remaining = seconds_until(record.locked_until, now) if record.locked_until else 0
        identifier_hash = hash_identifier(normalized)
        logger.warning(
            "account_locked",
            identifier_hash=identifier_hash[:16],
            failed_count=record.failed_count,
            lockout_seconds=remaining,
            extended=update.lock_extended,
        )
        self.recorder.record(
            "lockout.triggered",
            identifier_hash=identifier_hash,
            origin=record.last_origin,
            failed_count=record.failed_count,
            lockout_count=record.lockout_count,
            lockout_seconds=remaining,
            locked_until=record.locked_until.isoformat() if record.locked_until else None,
            extended=update.lock_extended,
        )
        if update.lock_started and record.lockout_count >= self.settings.lockout_alert_threshold:
            self.recorder.record(
                "lockout.repeated",
                identifier_hash=identifier_hash,
                lockout_count=record.lockout_count,
                origin=record.last_origin,
            )
            self._alert_admins(identifier_hash, record)
        if update.lock_started:
            self._notify_locked(normalized, remaining)

    def _notify_locked(self, identifier: str, remaining: int) -> None:
        if self.notifier is None or self.directory is None:
            return
        try:
            user = self.directory.find_by_identifier(identifier)
        except Exception as exc:
            logger.warning("lockout_notify_lookup_failed", error=str(exc))
            return
        if user is not None:
            self.notifier.notify(user, "account_locked", lockout_seconds=remaining)

    def _alert_admins(self, identifier_hash: str, record: LockoutRecord) -> None:
        logger.critical(
            "persistent_attack_detected",
            identifier_hash=identifier_hash[:16],
            lockout_count=record.lockout_count,
            failed_count=record.failed_count,
            origin=record.last_origin,
        )
        if self.notifier is None or self.directory is None:
            return
        try:
            admins = self.directory.users_with_roles(self.settings.lockout_alert_roles)
        except Exception as exc:
            logger.warning("lockout_alert_lookup_failed", error=str(exc))
            return
        for admin in admins:
            self.notifier.notify(
                admin,
                "persistent_attack_detected",
                identifier_hash=identifier_hash,
                lockout_count=record.lockout_count,
                failed_count=record.failed_count,
                origin=record.last_origin,
            )

    def clear(self, identifier: str) -> None:
        self.store.clear_lockout(account_key(identifier))

    def unlock(self, identifier: str, admin_user_id: str) -> bool:
        """Administrative unlock; returns whether a ledger entry existed."""
        normalized = normalize_identifier(identifier)
        existed = self.store.clear_lockout(account_key(normalized))
        self.recorder.record(
            "lockout.manual_unlock",
            identifier_hash=hash_identifier(normalized),
            admin_user_id=admin_user_id,
            had_record=existed,
        )
        logger.info("account_unlocked", admin_user_id=admin_user_id, had_record=existed)
        return existed
