from __future__ import annotations

import base64
import hashlib
import hmac
import secrets
import threading
import uuid
from typing import Collection, Dict, List, Optional

import pyotp
from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from cryptography.fernet import Fernet, InvalidToken

from authguard.clock import Clock, utcnow
from authguard.logging import get_logger
from authguard.service.normalize import normalize_identifier
from authguard.storage.errors import ConstraintViolation
from authguard.storage.models import UserRecord

RECOVERY_CODE_COUNT = 10
RECOVERY_CODE_LENGTH = 10


def normalize_recovery_code(code: str) -> str:
    return "".join(ch for ch in (code or "").upper() if ch not in " -")


def _hash_recovery_code(code: str) -> str:
    return hashlib.sha256(normalize_recovery_code(code).encode()).hexdigest()


class MemoryUserDirectory:
    """In-process user directory, credential verifier and recovery code book.

    Passwords are argon2id hashes; TOTP secrets are Fernet-encrypted at rest;
    recovery codes are kept only as sha256 digests.
    """

    def __init__(self, secret_key: str, *, clock: Clock = utcnow) -> None:
        self.logger = get_logger(__name__)
        self._clock = clock
        self._data_lock = threading.RLock()
        self._users: Dict[str, UserRecord] = {}
        self._by_identifier: Dict[str, str] = {}
        self._password_hashes: Dict[str, str] = {}
        self._totp_secrets: Dict[str, str] = {}
        self._recovery_codes: Dict[str, List[str]] = {}
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        # Verified against when the identifier is unknown so both paths cost the same.
        self._dummy_hash = self._pwd_hasher.hash(secrets.token_urlsafe(16))
        self._cipher = Fernet(self._derive_cipher_key(secret_key))

    @staticmethod
    def _derive_cipher_key(key_material: str) -> bytes:
        return base64.urlsafe_b64encode(hashlib.sha256(key_material.encode()).digest())

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def add_user(
        self,
        email: str,
        password: str,
        *,
        role: str = "user",
        is_banned: bool = False,
        meta: Optional[Dict] = None,
    ) -> UserRecord:
        identifier = normalize_identifier(email)
        with self._data_lock:
            if identifier in self._by_identifier:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = UserRecord(
                id=str(uuid.uuid4()),
                email=email,
                role=role,
                is_banned=is_banned,
                created_at=self._clock(),
                meta=meta.copy() if meta else {},
            )
            self._users[user.id] = user
            self._by_identifier[identifier] = user.id
            self._password_hashes[user.id] = self._pwd_hasher.hash(password)
            return user

    def set_role(self, user_id: str, role: str) -> UserRecord:
        with self._data_lock:
            user = self._require(user_id)
            user.role = role
            return user

    def set_banned(self, user_id: str, banned: bool) -> UserRecord:
        with self._data_lock:
            user = self._require(user_id)
            user.is_banned = banned
            return user

    def enable_two_factor(
        self, user_id: str, secret: str, *, confirmed: bool = True
    ) -> List[str]:
        """Store the TOTP secret and issue a fresh set of recovery codes.

        Returns the plaintext codes; only their digests are retained.
        """
        codes = [
            secrets.token_hex(RECOVERY_CODE_LENGTH // 2).upper()
            for _ in range(RECOVERY_CODE_COUNT)
        ]
        with self._data_lock:
            user = self._require(user_id)
            self._totp_secrets[user_id] = self._cipher.encrypt(secret.encode()).decode()
            self._recovery_codes[user_id] = [_hash_recovery_code(c) for c in codes]
            user.two_factor_enabled = True
            user.two_factor_confirmed = confirmed
        return codes

    def disable_two_factor(self, user_id: str) -> None:
        with self._data_lock:
            user = self._require(user_id)
            self._totp_secrets.pop(user_id, None)
            self._recovery_codes.pop(user_id, None)
            user.two_factor_enabled = False
            user.two_factor_confirmed = False

    def _require(self, user_id: str) -> UserRecord:
        user = self._users.get(user_id)
        if not user:
            raise ConstraintViolation("user not found", {"user_id": user_id})
        return user

    # ------------------------------------------------------------------
    # UserDirectory
    # ------------------------------------------------------------------

    def find_by_identifier(self, identifier: str) -> Optional[UserRecord]:
        with self._data_lock:
            user_id = self._by_identifier.get(normalize_identifier(identifier))
            return self._users.get(user_id) if user_id else None

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._data_lock:
            return self._users.get(user_id)

    def role_of(self, user: UserRecord) -> str:
        return (user.role or "").lower()

    def users_with_roles(self, roles: Collection[str]) -> List[UserRecord]:
        wanted = {r.lower() for r in roles}
        with self._data_lock:
            return [
                u for u in self._users.values() if self.role_of(u) in wanted and not u.is_banned
            ]

    def has_confirmed_two_factor(self, user: UserRecord) -> bool:
        with self._data_lock:
            return (
                user.two_factor_enabled
                and user.two_factor_confirmed
                and user.id in self._totp_secrets
            )

    def two_factor_secret(self, user: UserRecord) -> Optional[str]:
        with self._data_lock:
            encrypted = self._totp_secrets.get(user.id)
        if not encrypted:
            return None
        try:
            return self._cipher.decrypt(encrypted.encode()).decode()
        except InvalidToken:
            self.logger.warning("totp_secret_decrypt_failed", user_id=user.id)
            return None

    # ------------------------------------------------------------------
    # CredentialVerifier
    # ------------------------------------------------------------------

    def verify(self, identifier: str, secret: str) -> bool:
        user = self.find_by_identifier(identifier)
        with self._data_lock:
            stored = self._password_hashes.get(user.id) if user else None
        try:
            self._pwd_hasher.verify(stored or self._dummy_hash, secret)
        except (VerifyMismatchError, VerificationError, InvalidHashError):
            return False
        return stored is not None

    # ------------------------------------------------------------------
    # Recovery code book
    # ------------------------------------------------------------------

    def consume_recovery_code(self, user_id: str, code: str) -> bool:
        candidate = _hash_recovery_code(code)
        with self._data_lock:
            digests = self._recovery_codes.get(user_id) or []
            for index, digest in enumerate(digests):
                if hmac.compare_digest(digest, candidate):
                    del digests[index]
                    return True
        return False

    def remaining_recovery_codes(self, user_id: str) -> int:
        with self._data_lock:
            return len(self._recovery_codes.get(user_id) or [])


class TwoFactorCodeVerifier:
    """Code verifier backed by pyotp for TOTP and a recovery code book."""

    def __init__(
        self,
        recovery_book: MemoryUserDirectory,
        *,
        period_seconds: int = 30,
        clock: Clock = utcnow,
    ) -> None:
        self._book = recovery_book
        self._period = period_seconds
        self._clock = clock

    def verify_code(self, secret: str, code: str, window: int) -> bool:
        if not secret or not code:
            return False
        totp = pyotp.TOTP(secret, interval=self._period)
        return bool(totp.verify(code, for_time=self._clock(), valid_window=window))

    def consume_recovery_code(self, user_id: str, code: str) -> bool:
        return self._book.consume_recovery_code(user_id, code)

    def remaining_recovery_codes(self, user_id: str) -> int:
        return self._book.remaining_recovery_codes(user_id)
