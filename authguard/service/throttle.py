from __future__ import annotations

from authguard.config import IdentifierTier, Settings
from authguard.service.interfaces import CounterStore
from authguard.service.lockout import AccountLockoutLedger
from authguard.service.normalize import identifier_counter_key, origin_counter_key
from authguard.service.outcomes import Allow, Locked, Throttled, ThrottleDecision


class LoginThrottlePolicy:
    """Combines the two login rate limits with the lockout ledger.

    Keys are deliberately asymmetric: the origin limit is keyed by
    identifier+origin, the identifier limit by identifier alone, so rotating
    origins still runs into the per-identifier counter.
    """

    def __init__(
        self,
        counters: CounterStore,
        ledger: AccountLockoutLedger,
        settings: Settings,
    ) -> None:
        self.counters = counters
        self.ledger = ledger
        self.settings = settings
        self._tiers = settings.identifier_tiers

    def identifier_limits(self, attempts: int) -> IdentifierTier:
        """Step-table row for the identifier's current attempt count."""
        selected = self._tiers[0]
        for tier in self._tiers:
            if attempts < tier.threshold:
                break
            selected = tier
        return selected

    def check(self, identifier: str, origin: str | None) -> ThrottleDecision:
        remaining = self.ledger.remaining_lockout_seconds(identifier)
        if remaining > 0:
            return Locked(seconds=remaining)

        waits = []
        origin_key = origin_counter_key(identifier, origin)
        if self.counters.count(origin_key) >= self.settings.login_origin_max_attempts:
            waits.append(self.counters.available_in(origin_key))

        identifier_key = identifier_counter_key(identifier)
        attempts = self.counters.count(identifier_key)
        if attempts >= self.identifier_limits(attempts).max_attempts:
            waits.append(self.counters.available_in(identifier_key))

        if waits:
            # Never under-promise when both limits are hit.
            return Throttled(seconds=max(1, max(waits)))
        return Allow()

    def record_outcome(self, identifier: str, origin: str | None, success: bool) -> None:
        origin_key = origin_counter_key(identifier, origin)
        identifier_key = identifier_counter_key(identifier)
        if success:
            self.counters.clear(origin_key)
            self.counters.clear(identifier_key)
            self.ledger.clear(identifier)
            return

        tier = self.identifier_limits(self.counters.count(identifier_key))
        self.counters.hit(origin_key, self.settings.login_origin_decay_seconds)
        self.counters.hit(identifier_key, tier.decay_seconds)
        self.ledger.record_failed_attempt(identifier, origin)

    def reset_identifier(self, identifier: str) -> None:
        """Drop the per-identifier counter (used by administrative unlock)."""
        self.counters.clear(identifier_counter_key(identifier))
