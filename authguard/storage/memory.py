from __future__ import annotations

import fcntl
import json
import os
import threading
import uuid
import zlib
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from authguard.clock import Clock, seconds_until, utcnow
from authguard.logging import get_logger
from authguard.storage.errors import ConstraintViolation
from authguard.storage.models import (
    AttemptCounter,
    AuthSession,
    ImpersonationSession,
    KnownDevice,
    LockoutRecord,
    LockoutUpdate,
    TerminationReason,
    TrustedDevice,
    TwoFactorChallenge,
    lockout_duration,
)


class StripedLocks:
    """Fixed pool of locks selected by key hash.

    Bounded memory regardless of how many keys an attacker generates, while
    unrelated keys rarely contend.
    """

    def __init__(self, stripes: int = 64) -> None:
        self._locks = [threading.Lock() for _ in range(max(1, stripes))]

    def for_key(self, key: str) -> threading.Lock:
        return self._locks[zlib.crc32(key.encode("utf-8")) % len(self._locks)]


class MemoryCounterStore:
    """In-process keyed counters with per-key expiry."""

    def __init__(
        self,
        *,
        clock: Clock = utcnow,
        stripes: int = 64,
        cleanup_interval_seconds: int = 60,
    ) -> None:
        self._clock = clock
        self._counters: Dict[str, AttemptCounter] = {}
        self._locks = StripedLocks(stripes)
        self._cleanup_lock = threading.Lock()
        self._cleanup_interval = timedelta(seconds=cleanup_interval_seconds)
        self._last_cleanup = clock()
        self.logger = get_logger(__name__)

    def _live(self, key: str, now: datetime) -> Optional[AttemptCounter]:
        counter = self._counters.get(key)
        if counter is None:
            return None
        if counter.is_expired(now):
            self._counters.pop(key, None)
            return None
        return counter

    def hit(self, key: str, decay_seconds: int) -> int:
        now = self._clock()
        with self._locks.for_key(key):
            counter = self._live(key, now)
            if counter is None:
                counter = AttemptCounter(
                    key=key,
                    count=0,
                    expires_at=now + timedelta(seconds=decay_seconds),
                    decay_seconds=decay_seconds,
                )
                self._counters[key] = counter
            elif decay_seconds > counter.decay_seconds:
                # A longer decay may push expiry out; a shorter one never pulls it in.
                candidate = now + timedelta(seconds=decay_seconds)
                if candidate > counter.expires_at:
                    counter.expires_at = candidate
                counter.decay_seconds = decay_seconds
            counter.count += 1
            count = counter.count
        self.maybe_cleanup()
        return count

    def count(self, key: str) -> int:
        now = self._clock()
        with self._locks.for_key(key):
            counter = self._live(key, now)
            return counter.count if counter else 0

    def clear(self, key: str) -> None:
        with self._locks.for_key(key):
            self._counters.pop(key, None)

    def available_in(self, key: str) -> int:
        now = self._clock()
        with self._locks.for_key(key):
            counter = self._live(key, now)
            if counter is None:
                return 0
            return seconds_until(counter.expires_at, now)

    def cleanup_expired(self) -> int:
        """Drop every expired counter; returns how many were removed."""
        now = self._clock()
        removed = 0
        for key in list(self._counters.keys()):
            with self._locks.for_key(key):
                counter = self._counters.get(key)
                if counter is not None and counter.is_expired(now):
                    self._counters.pop(key, None)
                    removed += 1
        return removed

    def maybe_cleanup(self) -> None:
        now = self._clock()
        if now - self._last_cleanup < self._cleanup_interval:
            return
        if not self._cleanup_lock.acquire(blocking=False):
            return
        try:
            self._last_cleanup = now
            removed = self.cleanup_expired()
            if removed:
                self.logger.debug("counter_cleanup", removed=removed)
        finally:
            self._cleanup_lock.release()

    def __len__(self) -> int:
        return len(self._counters)


class MemoryLockoutStore:
    """In-process lockout ledger records keyed by account key."""

    def __init__(self, *, clock: Clock = utcnow, stripes: int = 64) -> None:
        self._clock = clock
        self._records: Dict[str, LockoutRecord] = {}
        self._locks = StripedLocks(stripes)

    def get_lockout(self, account_key: str) -> Optional[LockoutRecord]:
        with self._locks.for_key(account_key):
            record = self._records.get(account_key)
            return replace(record) if record else None

    def register_failure(
        self,
        account_key: str,
        *,
        origin: str,
        tiers: Sequence[Tuple[int, int]],
        window_seconds: int,
    ) -> LockoutUpdate:
        now = self._clock()
        with self._locks.for_key(account_key):
            record = self._records.get(account_key)
            stale = (
                record is not None
                and not record.is_locked(now)
                and record.last_failed_at is not None
                and record.last_failed_at + timedelta(seconds=window_seconds) <= now
            )
            if record is None or stale:
                record = LockoutRecord(account_key=account_key)
                self._records[account_key] = record
            record.failed_count += 1
            record.last_failed_at = now
            record.last_origin = origin

            update = LockoutUpdate(record=record)
            seconds = lockout_duration(tiers, record.failed_count)
            if seconds:
                candidate = now + timedelta(seconds=seconds)
                was_locked = record.is_locked(now)
                if record.locked_until is None or candidate > record.locked_until:
                    record.locked_until = candidate
                    if was_locked:
                        update.lock_extended = True
                    else:
                        record.lockout_count += 1
                        update.lock_started = True
            update.record = replace(record)
            return update

    def clear_lockout(self, account_key: str) -> bool:
        with self._locks.for_key(account_key):
            return self._records.pop(account_key, None) is not None


class MemoryStore:
    """In-process store for web sessions, 2FA challenges, devices and impersonation records.

    Every mutation is written through to a JSON snapshot under ``fs_root/state``.
    Several processes (the app and the maintenance CLI) may share one snapshot:
    writers hold an exclusive ``flock`` on a sidecar lock file, and any access
    first reloads the snapshot if its revision changed since this process last
    wrote or read it.
    """

    def __init__(self, fs_root: str = "/tmp/authguard", *, clock: Clock = utcnow) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self.sessions: Dict[str, AuthSession] = {}
        self.challenges: Dict[str, TwoFactorChallenge] = {}
        self.impersonations: Dict[str, ImpersonationSession] = {}
        self.known_devices: Dict[str, KnownDevice] = {}
        self.trusted_devices: Dict[str, TrustedDevice] = {}
        # RLock so store methods can nest (e.g. terminate -> restore session)
        self._data_lock = threading.RLock()
        self._lock_depth = 0
        self._revision: Optional[str] = None
        self._loaded = False
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        with self._shared_state():
            pass

    def _state_dir(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir

    def _state_path(self) -> Path:
        return self._state_dir() / "authguard_state.json"

    def _revision_path(self) -> Path:
        return self._state_dir() / "authguard_state.rev"

    def _lock_path(self) -> Path:
        return self._state_dir() / "authguard_state.lock"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    # ------------------------------------------------------------------
    # Cross-process coordination
    # ------------------------------------------------------------------

    @contextmanager
    def _shared_state(self) -> Iterator[None]:
        """Exclusive access for a mutation, across threads and processes."""
        with self._data_lock:
            if self._lock_depth:
                self._lock_depth += 1
                try:
                    yield
                finally:
                    self._lock_depth -= 1
                return
            fd = os.open(str(self._lock_path()), os.O_RDWR | os.O_CREAT, 0o600)
            try:
                fcntl.flock(fd, fcntl.LOCK_EX)
                self._lock_depth = 1
                try:
                    self._refresh_if_changed()
                    yield
                finally:
                    self._lock_depth = 0
                    fcntl.flock(fd, fcntl.LOCK_UN)
            finally:
                os.close(fd)

    @contextmanager
    def _fresh(self) -> Iterator[None]:
        """Read access with any newer snapshot from another process applied."""
        with self._data_lock:
            if not self._lock_depth:
                self._refresh_if_changed()
            yield

    def _read_revision(self) -> Optional[str]:
        try:
            return self._revision_path().read_text().strip() or None
        except FileNotFoundError:
            return None

    def _refresh_if_changed(self) -> None:
        revision = self._read_revision()
        if self._loaded and revision == self._revision:
            return
        self._load_state()
        self._revision = revision
        self._loaded = True

    # ------------------------------------------------------------------
    # Web sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        user_id: str,
        *,
        two_factor_required: bool = False,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> AuthSession:
        with self._shared_state():
            sess = AuthSession.new(
                user_id,
                now=self._clock(),
                two_factor_required=two_factor_required,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[AuthSession]:
        with self._fresh():
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def list_pending_sessions(self) -> List[AuthSession]:
        """Sessions still waiting on a second factor."""
        with self._fresh():
            return [replace(s) for s in self.sessions.values() if s.two_factor_pending]

    def delete_session(self, session_id: str) -> bool:
        with self._shared_state():
            removed = self.sessions.pop(session_id, None)
            self.challenges.pop(session_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def mark_session_verified(self, session_id: str) -> Optional[AuthSession]:
        with self._shared_state():
            sess = self.sessions.get(session_id)
            if not sess:
                return None
            sess.two_factor_verified = True
            self.challenges.pop(session_id, None)
            self._persist_state()
            return replace(sess)

    def bind_impersonation(
        self, session_id: str, impersonation_id: str, acting_user_id: str
    ) -> AuthSession:
        with self._shared_state():
            sess = self.sessions.get(session_id)
            if not sess:
                raise ConstraintViolation("session not found", {"session_id": session_id})
            if sess.impersonation_id and sess.impersonation_id != impersonation_id:
                raise ConstraintViolation(
                    "session already bound to an impersonation",
                    {"session_id": session_id, "impersonation_id": sess.impersonation_id},
                )
            sess.impersonation_id = impersonation_id
            sess.acting_user_id = acting_user_id
            self._persist_state()
            return replace(sess)

    def release_impersonation(self, session_id: str, impersonation_id: str) -> bool:
        """Restore the true principal if the session is still bound to this impersonation."""
        with self._shared_state():
            sess = self.sessions.get(session_id)
            if not sess or sess.impersonation_id != impersonation_id:
                return False
            sess.impersonation_id = None
            sess.acting_user_id = None
            self._persist_state()
            return True

    # ------------------------------------------------------------------
    # Two-factor challenges
    # ------------------------------------------------------------------

    def save_challenge(self, challenge: TwoFactorChallenge) -> TwoFactorChallenge:
        with self._shared_state():
            if challenge.session_id not in self.sessions:
                raise ConstraintViolation(
                    "session not found for challenge", {"session_id": challenge.session_id}
                )
            self.challenges[challenge.session_id] = replace(challenge)
            self._persist_state()
            return challenge

    def get_challenge(self, session_id: str) -> Optional[TwoFactorChallenge]:
        with self._fresh():
            challenge = self.challenges.get(session_id)
            return replace(challenge) if challenge else None

    def delete_challenge(self, session_id: str) -> bool:
        with self._shared_state():
            removed = self.challenges.pop(session_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    @staticmethod
    def _device_key(user_id: str, fingerprint: str) -> str:
        return f"{user_id}|{fingerprint}"

    def touch_known_device(
        self,
        user_id: str,
        fingerprint: str,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> bool:
        """Record a login from this device; True when it was not seen before."""
        now = self._clock()
        key = self._device_key(user_id, fingerprint)
        with self._shared_state():
            device = self.known_devices.get(key)
            created = device is None
            if created:
                self.known_devices[key] = KnownDevice(
                    user_id=user_id,
                    fingerprint=fingerprint,
                    first_seen=now,
                    last_seen=now,
                    ip_address=ip_address,
                    user_agent=user_agent,
                )
            else:
                device.last_seen = now
            self._persist_state()
            return created

    def list_known_devices(self, user_id: str) -> List[KnownDevice]:
        with self._fresh():
            return [replace(d) for d in self.known_devices.values() if d.user_id == user_id]

    def save_trusted_device(self, device: TrustedDevice) -> TrustedDevice:
        with self._shared_state():
            if device.id in self.trusted_devices:
                raise ConstraintViolation("trusted device id exists", {"id": device.id})
            self.trusted_devices[device.id] = replace(device)
            self._persist_state()
            return replace(device)

    def find_trusted_device(self, user_id: str, token_hash: str) -> Optional[TrustedDevice]:
        with self._fresh():
            for device in self.trusted_devices.values():
                if device.user_id == user_id and device.token_hash == token_hash:
                    return replace(device)
            return None

    def touch_trusted_device(self, device_id: str, used_at: datetime) -> None:
        with self._shared_state():
            device = self.trusted_devices.get(device_id)
            if device is None:
                return
            device.last_used_at = used_at
            self._persist_state()

    def delete_trusted_device(self, device_id: str) -> bool:
        with self._shared_state():
            removed = self.trusted_devices.pop(device_id, None)
            if removed is not None:
                self._persist_state()
            return removed is not None

    def delete_trusted_devices(self, user_id: str) -> int:
        with self._shared_state():
            doomed = [d.id for d in self.trusted_devices.values() if d.user_id == user_id]
            for device_id in doomed:
                self.trusted_devices.pop(device_id, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    def delete_expired_trusted_devices(self, now: datetime) -> int:
        with self._shared_state():
            doomed = [d.id for d in self.trusted_devices.values() if not d.is_valid(now)]
            for device_id in doomed:
                self.trusted_devices.pop(device_id, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # ------------------------------------------------------------------
    # Impersonation records
    # ------------------------------------------------------------------

    def create_impersonation(self, record: ImpersonationSession) -> ImpersonationSession:
        with self._shared_state():
            if record.id in self.impersonations:
                raise ConstraintViolation("impersonation id exists", {"id": record.id})
            self.impersonations[record.id] = replace(record)
            self._persist_state()
            return replace(record)

    def get_impersonation(self, impersonation_id: str) -> Optional[ImpersonationSession]:
        with self._fresh():
            record = self.impersonations.get(impersonation_id)
            return replace(record) if record else None

    def list_impersonations(
        self,
        *,
        admin_user_id: Optional[str] = None,
        active_at: Optional[datetime] = None,
    ) -> List[ImpersonationSession]:
        """Records newest first, optionally only those active at ``active_at``."""
        with self._fresh():
            results = [
                replace(r)
                for r in self.impersonations.values()
                if (admin_user_id is None or r.admin_user_id == admin_user_id)
                and (active_at is None or r.is_active(active_at))
            ]
        return sorted(results, key=lambda r: r.started_at, reverse=True)

    def count_active_impersonations(
        self, now: datetime, *, admin_user_id: Optional[str] = None
    ) -> int:
        with self._fresh():
            return sum(
                1
                for r in self.impersonations.values()
                if r.is_active(now)
                and (admin_user_id is None or r.admin_user_id == admin_user_id)
            )

    def extend_impersonation(
        self, impersonation_id: str, expires_at: datetime
    ) -> ImpersonationSession:
        with self._shared_state():
            record = self.impersonations.get(impersonation_id)
            if not record:
                raise ConstraintViolation("impersonation not found", {"id": impersonation_id})
            if record.terminated_at is not None:
                raise ConstraintViolation(
                    "impersonation already terminated", {"id": impersonation_id}
                )
            record.expires_at = expires_at
            self._persist_state()
            return replace(record)

    def terminate_impersonation(
        self,
        impersonation_id: str,
        reason: TerminationReason,
        terminated_at: datetime,
    ) -> Optional[ImpersonationSession]:
        """Mark a record terminated.

        Returns the updated record, or None when it was missing or already
        terminated. Also releases the bound web session, if any.
        """
        with self._shared_state():
            record = self.impersonations.get(impersonation_id)
            if not record or record.terminated_at is not None:
                return None
            record.terminated_at = terminated_at
            record.termination_reason = TerminationReason(reason)
            if record.web_session_id:
                self.release_impersonation(record.web_session_id, impersonation_id)
            self._persist_state()
            return replace(record)

    def delete_impersonations_before(self, cutoff: datetime, now: datetime) -> int:
        """Delete inactive records that ended before ``cutoff``."""
        with self._shared_state():
            doomed = []
            for record in self.impersonations.values():
                if record.is_active(now):
                    continue
                ended_at = record.terminated_at or record.expires_at
                if ended_at < cutoff:
                    doomed.append(record.id)
            for impersonation_id in doomed:
                self.impersonations.pop(impersonation_id, None)
            if doomed:
                self._persist_state()
            return len(doomed)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "challenges": [
                self._serialize_challenge(c) for c in self.challenges.values()
            ],
            "impersonations": [
                self._serialize_impersonation(r) for r in self.impersonations.values()
            ],
            "known_devices": [
                self._serialize_known_device(d) for d in self.known_devices.values()
            ],
            "trusted_devices": [
                self._serialize_trusted_device(d) for d in self.trusted_devices.values()
            ],
        }
        path = self._state_path()
        revision_path = self._revision_path()
        revision = uuid.uuid4().hex
        try:
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(state, indent=2))
            tmp_path.replace(path)
            # written after the snapshot so a reader never sees a revision ahead of it
            tmp_rev = revision_path.with_suffix(".rev.tmp")
            tmp_rev.write_text(revision)
            tmp_rev.replace(revision_path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc
        self._revision = revision

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.challenges = {
            c["session_id"]: self._deserialize_challenge(c)
            for c in data.get("challenges", [])
        }
        self.impersonations = {
            r["id"]: self._deserialize_impersonation(r)
            for r in data.get("impersonations", [])
        }
        known = [self._deserialize_known_device(d) for d in data.get("known_devices", [])]
        self.known_devices = {self._device_key(d.user_id, d.fingerprint): d for d in known}
        self.trusted_devices = {
            d["id"]: self._deserialize_trusted_device(d)
            for d in data.get("trusted_devices", [])
        }
        self.logger.debug(
            "memory_store_loaded",
            sessions=len(self.sessions),
            impersonations=len(self.impersonations),
        )
        return True

    def _serialize_session(self, sess: AuthSession) -> dict:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "created_at": self._serialize_datetime(sess.created_at),
            "two_factor_required": sess.two_factor_required,
            "two_factor_verified": sess.two_factor_verified,
            "impersonation_id": sess.impersonation_id,
            "acting_user_id": sess.acting_user_id,
            "ip_address": sess.ip_address,
            "user_agent": sess.user_agent,
        }

    def _deserialize_session(self, data: dict) -> AuthSession:
        return AuthSession(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            two_factor_required=data.get("two_factor_required", False),
            two_factor_verified=data.get("two_factor_verified", False),
            impersonation_id=data.get("impersonation_id"),
            acting_user_id=data.get("acting_user_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )

    def _serialize_challenge(self, challenge: TwoFactorChallenge) -> dict:
        return {
            "session_id": challenge.session_id,
            "user_id": challenge.user_id,
            "created_at": self._serialize_datetime(challenge.created_at),
            "expires_at": self._serialize_datetime(challenge.expires_at),
        }

    def _deserialize_challenge(self, data: dict) -> TwoFactorChallenge:
        return TwoFactorChallenge(
            session_id=data["session_id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
        )

    def _serialize_known_device(self, device: KnownDevice) -> dict:
        return {
            "user_id": device.user_id,
            "fingerprint": device.fingerprint,
            "first_seen": self._serialize_datetime(device.first_seen),
            "last_seen": self._serialize_datetime(device.last_seen),
            "ip_address": device.ip_address,
            "user_agent": device.user_agent,
        }

    def _deserialize_known_device(self, data: dict) -> KnownDevice:
        return KnownDevice(
            user_id=data["user_id"],
            fingerprint=data["fingerprint"],
            first_seen=self._deserialize_datetime(data["first_seen"]),
            last_seen=self._deserialize_datetime(data["last_seen"]),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
        )

    def _serialize_trusted_device(self, device: TrustedDevice) -> dict:
        return {
            "id": device.id,
            "user_id": device.user_id,
            "token_hash": device.token_hash,
            "fingerprint": device.fingerprint,
            "created_at": self._serialize_datetime(device.created_at),
            "expires_at": self._serialize_datetime(device.expires_at),
            "last_used_at": self._serialize_datetime(device.last_used_at),
            "ip_address": device.ip_address,
        }

    def _deserialize_trusted_device(self, data: dict) -> TrustedDevice:
        return TrustedDevice(
            id=data["id"],
            user_id=data["user_id"],
            token_hash=data["token_hash"],
            fingerprint=data["fingerprint"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            last_used_at=self._deserialize_datetime(data.get("last_used_at")),
            ip_address=data.get("ip_address"),
        )

    def _serialize_impersonation(self, record: ImpersonationSession) -> dict:
        return {
            "id": record.id,
            "admin_user_id": record.admin_user_id,
            "target_user_id": record.target_user_id,
            "started_at": self._serialize_datetime(record.started_at),
            "expires_at": self._serialize_datetime(record.expires_at),
            "token_hash": record.token_hash,
            "web_session_id": record.web_session_id,
            "ip_address": record.ip_address,
            "user_agent": record.user_agent,
            "terminated_at": self._serialize_datetime(record.terminated_at),
            "termination_reason": (
                record.termination_reason.value if record.termination_reason else None
            ),
        }

    def _deserialize_impersonation(self, data: dict) -> ImpersonationSession:
        reason = data.get("termination_reason")
        return ImpersonationSession(
            id=data["id"],
            admin_user_id=data["admin_user_id"],
            target_user_id=data["target_user_id"],
            started_at=self._deserialize_datetime(data["started_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            token_hash=data.get("token_hash", ""),
            web_session_id=data.get("web_session_id"),
            ip_address=data.get("ip_address"),
            user_agent=data.get("user_agent"),
            terminated_at=self._deserialize_datetime(data.get("terminated_at")),
            termination_reason=TerminationReason(reason) if reason else None,
        )
