"""Tests for the audit recorder, notifier wrapper and log redaction."""

from concurrent.futures import ThreadPoolExecutor

from authguard.logging import _redact_pii, identifier_digest
from authguard.service.events import (
    BestEffortNotifier,
    LoggingAuditSink,
    SecurityEventRecorder,
    hash_identifier,
)
from authguard.storage.models import UserRecord

from conftest import FailingSink


class TestSecurityEventRecorder:
    def test_record_adds_timestamp(self, recorder, sink, clock):
        recorder.record("login.failed", origin="203.0.113.7")

        [(event_type, attrs)] = sink.events
        assert event_type == "login.failed"
        assert attrs == {"occurred_at": clock().isoformat(), "origin": "203.0.113.7"}

    def test_failing_sink_is_swallowed(self, clock):
        recorder = SecurityEventRecorder(FailingSink(), clock=clock)

        recorder.record("login.failed", origin="203.0.113.7")

    def test_logging_sink_accepts_events(self, clock):
        recorder = SecurityEventRecorder(LoggingAuditSink(), clock=clock)

        recorder.record("impersonation.start", impersonation_id="abc")

    def test_hash_identifier_is_stable(self):
        assert hash_identifier("a@example.com") == hash_identifier("a@example.com")
        assert hash_identifier("a@example.com") != hash_identifier("b@example.com")
        assert identifier_digest("a@example.com") == hash_identifier("a@example.com")[:16]


class TestBestEffortNotifier:
    def test_inline_delivery(self, dispatcher):
        user = UserRecord(id="u1", email="u1@example.com")

        BestEffortNotifier(dispatcher).notify(user, "account_locked", lockout_seconds=900)

        assert dispatcher.sent == [("u1", "account_locked", {"lockout_seconds": 900})]

    def test_executor_delivery(self, dispatcher):
        user = UserRecord(id="u1", email="u1@example.com")
        with ThreadPoolExecutor(max_workers=1) as pool:
            BestEffortNotifier(dispatcher, executor=pool).notify(user, "recovery_codes_low")

        assert dispatcher.templates() == ["recovery_codes_low"]

    def test_dispatcher_errors_are_contained(self):
        class Boom:
            def notify(self, user, template, context):
                raise RuntimeError("smtp down")

        user = UserRecord(id="u1", email="u1@example.com")

        BestEffortNotifier(Boom()).notify(user, "account_locked")

    def test_missing_dispatcher_is_noop(self):
        BestEffortNotifier(None).notify(UserRecord(id="u1", email="x@example.com"), "t")

    def test_shut_down_executor_drops_notification(self, dispatcher):
        pool = ThreadPoolExecutor(max_workers=1)
        pool.shutdown()

        BestEffortNotifier(dispatcher, executor=pool).notify(
            UserRecord(id="u1", email="u1@example.com"), "account_locked"
        )

        assert dispatcher.sent == []


class TestRedaction:
    def test_sensitive_keys_are_masked(self):
        event = _redact_pii(
            None,
            "info",
            {
                "event": "login_failed",
                "email": "someone@example.com",
                "token_hash": "abcdef0123456789",
                "origin": "203.0.113.7",
            },
        )

        assert event["email"] == "so***om"
        assert event["token_hash"] == "ab***89"
        assert event["origin"] == "203.0.113.7"
        assert event["event"] == "login_failed"
