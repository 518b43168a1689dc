from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Optional, Sequence, Tuple

from redis import Redis
from redis.exceptions import RedisError

from authguard.clock import Clock, utcnow
from authguard.logging import get_logger
from authguard.storage.errors import StoreUnavailable
from authguard.storage.models import LockoutRecord, LockoutUpdate

logger = get_logger(__name__)


def _connect(redis_url: str, socket_timeout: float) -> Redis:
    return Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


def _from_epoch(raw: Optional[str]) -> Optional[datetime]:
    if raw in (None, "", "0"):
        return None
    return datetime.fromtimestamp(int(float(raw)), tz=timezone.utc)


class RedisCounterStore:
    """Attempt counters in Redis with per-key TTL.

    Each counter is a hash ``{count, decay}``; the key's TTL is its expiry.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # Atomic increment; a longer decay may extend the TTL, a shorter one never trims it.
    _HIT_SCRIPT = """
local count = redis.call('HINCRBY', KEYS[1], 'count', 1)
local decay = tonumber(ARGV[1])
local current_decay = tonumber(redis.call('HGET', KEYS[1], 'decay') or '0')
if count == 1 or decay > current_decay then
  redis.call('HSET', KEYS[1], 'decay', decay)
  local ttl = redis.call('TTL', KEYS[1])
  if ttl < decay then
    redis.call('EXPIRE', KEYS[1], decay)
  end
end
return count
"""

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self.client = client or _connect(redis_url, socket_timeout)
        self._hit = self.client.register_script(self._HIT_SCRIPT)

    @staticmethod
    def _normalize_key(key: str) -> str:
        """Hash caller keys so attacker-controlled identifiers cannot inject delimiters."""

        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return f"authguard:counter:{digest}"

    def verify_connection(self) -> None:
        self.client.ping()

    def hit(self, key: str, decay_seconds: int) -> int:
        try:
            return int(self._hit(keys=[self._normalize_key(key)], args=[int(decay_seconds)]))
        except RedisError as exc:
            logger.error("counter_hit_failed", error_type=type(exc).__name__, error=str(exc))
            raise StoreUnavailable("counter store unavailable") from exc

    def count(self, key: str) -> int:
        try:
            raw = self.client.hget(self._normalize_key(key), "count")
        except RedisError as exc:
            raise StoreUnavailable("counter store unavailable") from exc
        return int(raw) if raw else 0

    def clear(self, key: str) -> None:
        try:
            self.client.delete(self._normalize_key(key))
        except RedisError as exc:
            raise StoreUnavailable("counter store unavailable") from exc

    def available_in(self, key: str) -> int:
        try:
            ttl = self.client.ttl(self._normalize_key(key))
        except RedisError as exc:
            raise StoreUnavailable("counter store unavailable") from exc
        return max(0, int(ttl))


class RedisLockoutStore:
    """Lockout ledger records as Redis hashes, updated by one Lua script."""

    DEFAULT_OPERATION_TIMEOUT = 5.0

    # ARGV: now, window, origin, then threshold/seconds pairs ascending.
    # Returns {failed_count, locked_until, lockout_count, state}; state 1 = lock
    # started, 2 = lock extended, 0 = unchanged.
    _FAILURE_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local origin = ARGV[3]
local data = redis.call('HMGET', KEYS[1], 'failed_count', 'locked_until', 'lockout_count')
local failed = (tonumber(data[1]) or 0) + 1
local locked_until = tonumber(data[2]) or 0
local lockouts = tonumber(data[3]) or 0

local seconds = 0
local i = 4
while i + 1 <= #ARGV do
  if failed < tonumber(ARGV[i]) then
    break
  end
  seconds = tonumber(ARGV[i + 1])
  i = i + 2
end

local state = 0
if seconds > 0 then
  local candidate = now + seconds
  if candidate > locked_until then
    if locked_until > now then
      state = 2
    else
      state = 1
      lockouts = lockouts + 1
    end
    locked_until = candidate
  end
end

redis.call('HSET', KEYS[1],
  'failed_count', failed,
  'locked_until', locked_until,
  'lockout_count', lockouts,
  'last_failed_at', now,
  'last_origin', origin)
local ttl = window
if locked_until - now > ttl then
  ttl = locked_until - now
end
redis.call('EXPIRE', KEYS[1], ttl)
return {failed, locked_until, lockouts, state}
"""

    def __init__(
        self,
        redis_url: str,
        *,
        clock: Clock = utcnow,
        socket_timeout: float = DEFAULT_OPERATION_TIMEOUT,
        client: Optional[Redis] = None,
    ) -> None:
        self.redis_url = redis_url
        self._clock = clock
        self.client = client or _connect(redis_url, socket_timeout)
        self._register = self.client.register_script(self._FAILURE_SCRIPT)

    @staticmethod
    def _record_key(account_key: str) -> str:
        return f"authguard:lockout:{account_key}"

    def verify_connection(self) -> None:
        self.client.ping()

    def get_lockout(self, account_key: str) -> Optional[LockoutRecord]:
        try:
            data = self.client.hgetall(self._record_key(account_key))
        except RedisError as exc:
            raise StoreUnavailable("lockout store unavailable") from exc
        if not data:
            return None
        return LockoutRecord(
            account_key=account_key,
            failed_count=int(data.get("failed_count", 0)),
            locked_until=_from_epoch(data.get("locked_until")),
            lockout_count=int(data.get("lockout_count", 0)),
            last_failed_at=_from_epoch(data.get("last_failed_at")),
            last_origin=data.get("last_origin") or None,
        )

    def register_failure(
        self,
        account_key: str,
        *,
        origin: str,
        tiers: Sequence[Tuple[int, int]],
        window_seconds: int,
    ) -> LockoutUpdate:
        now = self._clock()
        args: list = [int(now.timestamp()), int(window_seconds), origin]
        for threshold, seconds in tiers:
            args.extend([int(threshold), int(seconds)])
        try:
            failed, locked_until, lockouts, state = self._register(
                keys=[self._record_key(account_key)], args=args
            )
        except RedisError as exc:
            logger.error("lockout_update_failed", error_type=type(exc).__name__, error=str(exc))
            raise StoreUnavailable("lockout store unavailable") from exc
        record = LockoutRecord(
            account_key=account_key,
            failed_count=int(failed),
            locked_until=_from_epoch(str(locked_until)),
            lockout_count=int(lockouts),
            last_failed_at=now,
            last_origin=origin,
        )
        return LockoutUpdate(
            record=record,
            lock_started=int(state) == 1,
            lock_extended=int(state) == 2,
        )

    def clear_lockout(self, account_key: str) -> bool:
        try:
            return bool(self.client.delete(self._record_key(account_key)))
        except RedisError as exc:
            raise StoreUnavailable("lockout store unavailable") from exc
