"""Known-device tracking and "remember this device" tokens.

A device is identified by the sha256 of ``user_agent|origin``. A completed
login from a fingerprint the user has not used before raises a
``login.new_device`` event and a ``new_device_login`` notification. A trusted
device token lets a later login from the same fingerprint skip the second
factor until it expires; a token presented from a different fingerprint is
revoked on sight.
"""

from __future__ import annotations

import hashlib
import hmac
import secrets
import uuid
from datetime import timedelta
from typing import Optional

from authguard.clock import Clock, utcnow
from authguard.config import Settings
from authguard.logging import get_logger
from authguard.service.events import BestEffortNotifier, SecurityEventRecorder
from authguard.service.interfaces import DeviceStore
from authguard.service.normalize import normalize_origin
from authguard.storage.models import TrustedDevice, UserRecord

logger = get_logger(__name__)

MIN_DEVICE_TOKEN_LENGTH = 32


def device_fingerprint(user_agent: Optional[str], origin: Optional[str]) -> str:
    raw = f"{user_agent or ''}|{normalize_origin(origin)}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def hash_device_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class DeviceRegistry:
    def __init__(
        self,
        store: DeviceStore,
        settings: Settings,
        *,
        recorder: SecurityEventRecorder,
        notifier: Optional[BestEffortNotifier] = None,
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.settings = settings
        self.recorder = recorder
        self.notifier = notifier
        self._clock = clock

    def observe_login(
        self, user: UserRecord, origin: Optional[str], user_agent: Optional[str]
    ) -> bool:
        """Remember the device a login completed from; True when it is new.

        Bookkeeping failures are logged and reported as "not new"; they never
        fail the login.
        """
        normalized_origin = normalize_origin(origin)
        fingerprint = device_fingerprint(user_agent, normalized_origin)
        try:
            is_new = self.store.touch_known_device(
                user.id, fingerprint, ip_address=normalized_origin, user_agent=user_agent
            )
        except Exception as exc:
            logger.error(
                "device_tracking_failed",
                user_id=user.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        if not is_new:
            return False

        logger.info("new_device_login", user_id=user.id, origin=normalized_origin)
        self.recorder.record(
            "login.new_device",
            user_id=user.id,
            origin=normalized_origin,
            device_fingerprint=fingerprint[:16],
        )
        if self.notifier:
            self.notifier.notify(
                user, "new_device_login", origin=normalized_origin, user_agent=user_agent
            )
        return True

    def trust(self, user: UserRecord, origin: Optional[str], user_agent: Optional[str]) -> str:
        """Issue a trusted-device token for the current device; only its hash is stored."""
        now = self._clock()
        token = secrets.token_urlsafe(32)
        device = TrustedDevice(
            id=str(uuid.uuid4()),
            user_id=user.id,
            token_hash=hash_device_token(token),
            fingerprint=device_fingerprint(user_agent, origin),
            created_at=now,
            expires_at=now + timedelta(days=self.settings.trusted_device_days),
            last_used_at=now,
            ip_address=normalize_origin(origin),
        )
        self.store.save_trusted_device(device)
        logger.info("trusted_device_created", user_id=user.id, device_id=device.id)
        self.recorder.record(
            "trusted_device.created",
            user_id=user.id,
            device_id=device.id,
            expires_at=device.expires_at.isoformat(),
        )
        return token

    def is_trusted(
        self,
        user: UserRecord,
        token: Optional[str],
        origin: Optional[str],
        user_agent: Optional[str],
    ) -> bool:
        if not token:
            return False
        if len(token) < MIN_DEVICE_TOKEN_LENGTH:
            logger.warning("trusted_device_token_malformed", user_id=user.id)
            self.recorder.record(
                "trusted_device.invalid_token", user_id=user.id, token_length=len(token)
            )
            return False

        now = self._clock()
        device = self.store.find_trusted_device(user.id, hash_device_token(token))
        if device is None or not device.is_valid(now):
            return False
        if not hmac.compare_digest(device.fingerprint, device_fingerprint(user_agent, origin)):
            logger.warning(
                "trusted_device_fingerprint_mismatch", user_id=user.id, device_id=device.id
            )
            self.store.delete_trusted_device(device.id)
            self.recorder.record(
                "trusted_device.fingerprint_mismatch", user_id=user.id, device_id=device.id
            )
            return False
        self.store.touch_trusted_device(device.id, now)
        return True

    def revoke_all(self, user_id: str) -> int:
        removed = self.store.delete_trusted_devices(user_id)
        if removed:
            self.recorder.record("trusted_device.revoked", user_id=user_id, count=removed)
        return removed

    def purge_expired(self) -> int:
        return self.store.delete_expired_trusted_devices(self._clock())
