"""End-to-end tests for the login, second factor and logout entry points."""

import pytest

from authguard.service.auth import AuthService
from authguard.service.errors import AuthenticationError, NotFoundError
from authguard.service.events import SecurityEventRecorder
from authguard.service.outcomes import (
    AuthenticationUnavailable,
    InvalidCredentials,
    Locked,
    LoginAllowed,
    LogoutResult,
    Throttled,
    TwoFactorInvalid,
    TwoFactorVerified,
)
from authguard.service.throttle import LoginThrottlePolicy
from authguard.service.two_factor import TwoFactorChallengeService
from authguard.storage.errors import StoreUnavailable

from conftest import PASSWORD, FailingSink, enable_totp, totp_code

EMAIL = "member@example.com"
ORIGIN = "203.0.113.7"


class CountingVerifier:
    """Credential verifier that counts calls and can be made to fail."""

    def __init__(self, inner, *, error=None):
        self.inner = inner
        self.error = error
        self.calls = 0

    def verify(self, identifier, secret):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.inner.verify(identifier, secret)


class CountingCodeVerifier:
    def __init__(self, inner):
        self.inner = inner
        self.calls = 0

    def verify_code(self, secret, code, window):
        self.calls += 1
        return self.inner.verify_code(secret, code, window)

    def consume_recovery_code(self, user_id, code):
        self.calls += 1
        return self.inner.consume_recovery_code(user_id, code)

    def remaining_recovery_codes(self, user_id):
        return self.inner.remaining_recovery_codes(user_id)


class BrokenCounters:
    def hit(self, key, decay_seconds):
        raise StoreUnavailable("redis down")

    def count(self, key):
        raise StoreUnavailable("redis down")

    def clear(self, key):
        raise StoreUnavailable("redis down")

    def available_in(self, key):
        raise StoreUnavailable("redis down")


def _build(auth_service, **overrides):
    params = dict(
        store=auth_service.store,
        directory=auth_service.directory,
        credentials=auth_service.credentials,
        throttle=auth_service.throttle,
        lockouts=auth_service.lockouts,
        two_factor=auth_service.two_factor,
        impersonation=auth_service.impersonation,
        devices=auth_service.devices,
        recorder=auth_service.recorder,
        notifier=auth_service.notifier,
        clock=auth_service._clock,
    )
    params.update(overrides)
    return AuthService(auth_service.settings, **params)


@pytest.fixture
def counting(auth_service, directory):
    verifier = CountingVerifier(directory)
    return _build(auth_service, credentials=verifier), verifier


class TestLogin:
    """attempt_login outcomes."""

    def test_valid_credentials_without_2fa(self, auth_service, make_user, sink, store):
        user = make_user(EMAIL)

        outcome = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN, user_agent="pytest")

        assert isinstance(outcome, LoginAllowed)
        assert outcome.requires_2fa is False
        assert outcome.session.user_id == user.id
        assert store.get_session(outcome.session.id).ip_address == ORIGIN
        assert sink.of("login.succeeded")[0]["user_id"] == user.id

    def test_identifier_is_normalized(self, auth_service, make_user):
        make_user(EMAIL)

        outcome = auth_service.attempt_login("  Member@Example.COM ", PASSWORD, ORIGIN)

        assert isinstance(outcome, LoginAllowed)

    def test_wrong_password(self, auth_service, make_user, sink):
        make_user(EMAIL)

        outcome = auth_service.attempt_login(EMAIL, "wrong", ORIGIN)

        assert outcome == InvalidCredentials()
        [event] = sink.of("login.failed")
        assert event["origin"] == ORIGIN
        assert EMAIL not in str(sink.events)

    def test_unknown_identifier_looks_like_wrong_password(self, auth_service):
        outcome = auth_service.attempt_login("ghost@example.com", PASSWORD, ORIGIN)

        assert outcome == InvalidCredentials()

    def test_sixth_attempt_is_throttled_without_verifying(self, counting, make_user, sink):
        service, verifier = counting
        make_user(EMAIL)
        for _ in range(5):
            assert service.attempt_login(EMAIL, "wrong", ORIGIN) == InvalidCredentials()

        outcome = service.attempt_login(EMAIL, PASSWORD, ORIGIN)

        assert isinstance(outcome, Throttled)
        assert outcome.seconds == 900
        assert verifier.calls == 5
        assert sink.of("login.throttled")[0]["retry_after"] == 900

    def test_locked_account_never_reaches_verifier(self, counting, make_user, sink):
        service, verifier = counting
        make_user(EMAIL)
        for i in range(6):
            service.attempt_login(EMAIL, "wrong", f"198.51.100.{i}")

        outcome = service.attempt_login(EMAIL, PASSWORD, "192.0.2.50")

        assert isinstance(outcome, Locked)
        assert outcome.seconds == 900
        assert verifier.calls == 6
        assert len(sink.of("login.locked")) == 1

    def test_lock_escalates_and_never_shrinks(self, auth_service, make_user, clock):
        make_user(EMAIL)
        for i in range(6):
            auth_service.attempt_login(EMAIL, "wrong", f"198.51.100.{i}")
        first = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN)

        clock.advance(900)
        for i in range(4):
            clock.advance(1800)
            auth_service.attempt_login(EMAIL, "wrong", f"192.0.2.{i}")
        second = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN)

        assert isinstance(first, Locked)
        assert isinstance(second, Locked)
        assert second.seconds >= 1800
        assert second.seconds > first.seconds

    def test_success_resets_failures(self, auth_service, make_user):
        make_user(EMAIL)
        for _ in range(4):
            auth_service.attempt_login(EMAIL, "wrong", ORIGIN)

        assert isinstance(auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN), LoginAllowed)

        for _ in range(4):
            assert auth_service.attempt_login(EMAIL, "wrong", ORIGIN) == InvalidCredentials()
        assert auth_service.lockout_status(EMAIL).failed_count == 4

    def test_repeated_success_is_stable(self, auth_service, make_user):
        make_user(EMAIL)

        first = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN)
        second = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN)

        assert isinstance(first, LoginAllowed)
        assert isinstance(second, LoginAllowed)
        assert first.session.id != second.session.id
        assert auth_service.lockout_status(EMAIL).failed_count == 0


class TestCollaboratorFailures:
    """Failures of collaborators decide nothing and count nothing."""

    def test_verifier_error_is_unavailable(self, auth_service, directory, make_user, counters):
        make_user(EMAIL)
        broken = CountingVerifier(directory, error=ConnectionError("ldap down"))
        service = _build(auth_service, credentials=broken)

        outcome = service.attempt_login(EMAIL, PASSWORD, ORIGIN)

        assert outcome == AuthenticationUnavailable()
        assert counters.count(f"login:email:{EMAIL}") == 0
        assert service.lockout_status(EMAIL).failed_count == 0

    def test_counter_store_outage_is_unavailable(
        self, auth_service, make_user, throttle, directory
    ):
        make_user(EMAIL)
        verifier = CountingVerifier(directory)
        broken = LoginThrottlePolicy(BrokenCounters(), throttle.ledger, auth_service.settings)
        service = _build(auth_service, throttle=broken, credentials=verifier)

        outcome = service.attempt_login(EMAIL, PASSWORD, ORIGIN)

        assert outcome == AuthenticationUnavailable()
        assert verifier.calls == 0

    def test_failing_audit_sink_does_not_block_login(self, auth_service, make_user, clock):
        make_user(EMAIL)
        service = _build(
            auth_service, recorder=SecurityEventRecorder(FailingSink(), clock=clock)
        )

        assert isinstance(service.attempt_login(EMAIL, PASSWORD, ORIGIN), LoginAllowed)
        assert service.attempt_login(EMAIL, "wrong", ORIGIN) == InvalidCredentials()

    def test_two_factor_lookup_error_is_unavailable(
        self, auth_service, make_user, directory, store, sink
    ):
        user = make_user(EMAIL)
        enable_totp(directory, user)

        class BrokenTwoFactor:
            def requires_challenge(self, user):
                raise ConnectionError("directory unreachable")

        service = _build(auth_service, two_factor=BrokenTwoFactor())

        outcome = service.attempt_login(EMAIL, PASSWORD, ORIGIN)

        assert outcome == AuthenticationUnavailable()
        assert service.lockout_status(EMAIL).failed_count == 0
        assert store.list_pending_sessions() == []
        assert len(sink.of("login.unavailable")) == 1

    def test_session_store_error_is_unavailable(self, auth_service, make_user, sink):
        user = make_user(EMAIL)

        class BrokenStore:
            def __init__(self, inner):
                self.inner = inner

            def create_session(self, *args, **kwargs):
                raise OSError("disk full")

            def __getattr__(self, name):
                return getattr(self.inner, name)

        service = _build(auth_service, store=BrokenStore(auth_service.store))

        outcome = service.attempt_login(EMAIL, PASSWORD, ORIGIN)

        assert outcome == AuthenticationUnavailable()
        assert sink.of("login.unavailable")[0]["user_id"] == user.id
        assert sink.of("login.succeeded") == []


class TestSecondFactor:
    """Login followed by a code submission."""

    def test_login_with_2fa_returns_pending_session(self, auth_service, make_user, directory):
        user = make_user(EMAIL)
        enable_totp(directory, user)

        outcome = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN)

        assert isinstance(outcome, LoginAllowed)
        assert outcome.requires_2fa is True
        assert outcome.session.two_factor_pending

    def test_pending_session_is_not_authenticated(self, auth_service, make_user, directory):
        user = make_user(EMAIL)
        enable_totp(directory, user)
        session = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN).session

        with pytest.raises(AuthenticationError):
            auth_service.resolve_session(session.id)
        assert auth_service.resolve_session(session.id, allow_pending=True).id == session.id

    def test_code_completes_login(self, auth_service, make_user, directory, clock):
        user = make_user(EMAIL)
        secret, _ = enable_totp(directory, user)
        session = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN).session

        outcome = auth_service.submit_2fa(session.id, totp_code(secret, clock))

        assert isinstance(outcome, TwoFactorVerified)
        assert auth_service.resolve_session(session.id).user_id == user.id

    def test_unknown_session_is_rejected(self, auth_service):
        with pytest.raises(AuthenticationError):
            auth_service.resolve_session("missing")

    def test_relogin_does_not_reset_code_attempts(
        self, auth_service, make_user, directory, code_verifier, settings, recorder, clock
    ):
        user = make_user(EMAIL)
        enable_totp(directory, user)
        counting = CountingCodeVerifier(code_verifier)
        two_factor = TwoFactorChallengeService(
            auth_service.store,
            auth_service.two_factor.counters,
            counting,
            directory,
            settings,
            recorder=recorder,
            clock=clock,
        )
        service = _build(auth_service, two_factor=two_factor)

        for _ in range(10):
            login = service.attempt_login(EMAIL, PASSWORD, ORIGIN)
            assert isinstance(login, LoginAllowed)
            for _ in range(5):
                assert isinstance(service.submit_2fa(login.session.id, "000000"), TwoFactorInvalid)

        assert counting.calls == settings.two_factor_max_attempts

    def test_lapsed_challenge_is_destroyed_on_resolve(
        self, auth_service, make_user, directory, store, clock
    ):
        user = make_user(EMAIL)
        enable_totp(directory, user)
        session = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN).session
        clock.advance(300)

        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.resolve_session(session.id, allow_pending=True)

        assert exc_info.value.error_code == "two_factor_expired"
        assert store.get_session(session.id) is None

    def test_abandoned_logins_are_swept(self, auth_service, make_user, directory, store, clock):
        user = make_user(EMAIL)
        enable_totp(directory, user)
        for _ in range(20):
            assert auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN).requires_2fa
        clock.advance(86400)

        assert auth_service.sweep_expired_challenges() == 20
        assert store.list_pending_sessions() == []
        assert store.sessions == {}
        assert store.challenges == {}


class TestDevices:
    """New-device notices and remembered devices."""

    UA = "Mozilla/5.0 (X11; Linux x86_64)"

    def _remember(self, auth_service, secret, clock):
        login = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN, user_agent=self.UA)
        outcome = auth_service.submit_2fa(
            login.session.id, totp_code(secret, clock), remember_device=True
        )
        assert isinstance(outcome, TwoFactorVerified)
        return outcome.trusted_device_token

    def test_first_login_from_device_is_notified_once(self, auth_service, make_user, dispatcher):
        make_user(EMAIL)

        auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN, user_agent=self.UA)
        auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN, user_agent=self.UA)
        auth_service.attempt_login(EMAIL, PASSWORD, "198.51.100.9", user_agent=self.UA)

        notices = [ctx for _, template, ctx in dispatcher.sent if template == "new_device_login"]
        assert [n["origin"] for n in notices] == [ORIGIN, "198.51.100.9"]

    def test_pending_login_is_not_a_known_device_until_verified(
        self, auth_service, make_user, directory, dispatcher, sink, clock
    ):
        user = make_user(EMAIL)
        secret, _ = enable_totp(directory, user)

        login = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN, user_agent=self.UA)
        assert dispatcher.templates() == []

        auth_service.submit_2fa(login.session.id, totp_code(secret, clock))

        assert dispatcher.templates() == ["new_device_login"]
        assert sink.of("login.new_device")[0]["user_id"] == user.id

    def test_trusted_device_skips_second_factor(
        self, auth_service, make_user, directory, sink, clock
    ):
        user = make_user(EMAIL)
        secret, _ = enable_totp(directory, user)
        token = self._remember(auth_service, secret, clock)
        assert token

        outcome = auth_service.attempt_login(
            EMAIL, PASSWORD, ORIGIN, user_agent=self.UA, trusted_device_token=token
        )

        assert isinstance(outcome, LoginAllowed)
        assert outcome.requires_2fa is False
        assert outcome.trusted_device is True
        assert auth_service.resolve_session(outcome.session.id).user_id == user.id
        assert sink.of("2fa.skipped_trusted_device")[0]["session_id"] == outcome.session.id

    def test_token_from_other_device_is_revoked(
        self, auth_service, make_user, directory, sink, clock
    ):
        user = make_user(EMAIL)
        secret, _ = enable_totp(directory, user)
        token = self._remember(auth_service, secret, clock)

        stolen = auth_service.attempt_login(
            EMAIL, PASSWORD, "192.0.2.99", user_agent="curl/8.0", trusted_device_token=token
        )
        assert stolen.requires_2fa is True
        assert len(sink.of("trusted_device.fingerprint_mismatch")) == 1

        again = auth_service.attempt_login(
            EMAIL, PASSWORD, ORIGIN, user_agent=self.UA, trusted_device_token=token
        )
        assert again.requires_2fa is True

    def test_trusted_device_expires(self, auth_service, make_user, directory, settings, clock):
        user = make_user(EMAIL)
        secret, _ = enable_totp(directory, user)
        token = self._remember(auth_service, secret, clock)
        clock.advance(days=settings.trusted_device_days)

        outcome = auth_service.attempt_login(
            EMAIL, PASSWORD, ORIGIN, user_agent=self.UA, trusted_device_token=token
        )

        assert outcome.requires_2fa is True
        assert auth_service.purge_expired_trusted_devices() == 1

    def test_short_token_is_ignored(self, auth_service, make_user, directory, sink):
        user = make_user(EMAIL)
        enable_totp(directory, user)

        outcome = auth_service.attempt_login(
            EMAIL, PASSWORD, ORIGIN, user_agent=self.UA, trusted_device_token="short"
        )

        assert outcome.requires_2fa is True
        assert sink.of("trusted_device.invalid_token")[0]["token_length"] == 5


class TestTwoFactorAdministration:
    """Turning 2FA off through the facade."""

    def test_disable_revokes_devices_and_notifies(
        self, auth_service, make_user, directory, dispatcher, sink, clock
    ):
        user = make_user(EMAIL)
        secret, _ = enable_totp(directory, user)
        login = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN)
        auth_service.submit_2fa(login.session.id, totp_code(secret, clock), remember_device=True)

        assert auth_service.disable_two_factor(user.id, actor_user_id="admin-1") == 1

        assert "two_factor_disabled" in dispatcher.templates()
        [event] = sink.of("2fa.disabled")
        assert event["actor_user_id"] == "admin-1"
        assert event["trusted_devices_revoked"] == 1
        assert auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN).requires_2fa is False

    def test_disable_for_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            auth_service.disable_two_factor("missing")


class TestLogout:
    """handle_logout in plain and impersonating sessions."""

    def test_plain_logout_destroys_session(self, auth_service, make_user, store, sink):
        make_user(EMAIL)
        session = auth_service.attempt_login(EMAIL, PASSWORD, ORIGIN).session

        assert auth_service.handle_logout(session.id) == LogoutResult.SESSION_DESTROYED
        assert store.get_session(session.id) is None
        assert sink.of("logout")[0]["session_id"] == session.id

    def test_logout_while_impersonating_restores_admin(
        self, auth_service, make_admin, make_user, store
    ):
        admin = make_admin()
        target = make_user(EMAIL)
        web = store.create_session(admin.id)
        record = auth_service.start_impersonation(admin.id, target.id, session_id=web.id)
        assert auth_service.resolve_session(web.id).effective_user_id == target.id

        assert auth_service.handle_logout(web.id) == LogoutResult.IMPERSONATION_ENDED

        restored = auth_service.resolve_session(web.id)
        assert restored.effective_user_id == admin.id
        assert auth_service.impersonation_status(record.id) is None

        assert auth_service.handle_logout(web.id) == LogoutResult.SESSION_DESTROYED
        assert store.get_session(web.id) is None

    def test_expired_impersonation_resolves_to_admin(
        self, auth_service, make_admin, make_user, store, clock
    ):
        admin = make_admin()
        target = make_user(EMAIL)
        web = store.create_session(admin.id)
        auth_service.start_impersonation(admin.id, target.id, session_id=web.id)
        clock.advance(minutes=31)

        session = auth_service.resolve_session(web.id)

        assert session.effective_user_id == admin.id
        assert session.impersonation_id is None


class TestAdministration:
    """Lockout and impersonation administration through the facade."""

    def test_unlock_account(self, auth_service, make_user, sink):
        make_user(EMAIL)
        for i in range(6):
            auth_service.attempt_login(EMAIL, "wrong", f"198.51.100.{i}")
        assert auth_service.lockout_status(EMAIL).locked

        assert auth_service.unlock_account(EMAIL, "admin-1") is True

        assert isinstance(auth_service.attempt_login(EMAIL, PASSWORD, "192.0.2.1"), LoginAllowed)

    def test_impersonation_lifecycle(self, auth_service, make_admin, make_user, clock):
        admin = make_admin()
        target = make_user(EMAIL)
        record = auth_service.start_impersonation(admin.id, target.id)

        clock.advance(minutes=10)
        auth_service.extend_impersonation(record.id)
        assert [r.id for r in auth_service.list_active_impersonations()] == [record.id]

        auth_service.terminate_impersonation(record.id)
        auth_service.terminate_impersonation(record.id)
        assert auth_service.list_active_impersonations() == []

    def test_sweep_and_cleanup(self, auth_service, make_admin, make_user, clock):
        admin = make_admin()
        record = auth_service.start_impersonation(admin.id, make_user(EMAIL).id)
        clock.advance(minutes=31)

        assert auth_service.sweep_expired_impersonations() == 1
        clock.advance(days=2)
        assert auth_service.cleanup_old_impersonation_records(1) == 1
        assert auth_service.impersonation.get(record.id) is None
