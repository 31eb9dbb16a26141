"""Tests for the email verification engine.

Covers both strategies:
- OTP: issue, resend cooldown, expiry, mismatch, replacement of old codes
- link: single use, supersession by newer links, tolerance window
- delivery failure handling per deployment mode
"""

import pytest

from wowziri.config import DeploymentMode, VerificationStrategy
from wowziri.service.email import EmailService
from wowziri.service.errors import (
    ChallengeExpiredError,
    ChallengeMismatchError,
    InvalidLinkError,
    NoActiveChallengeError,
    ServerError,
    SupersededError,
    ThrottledError,
)
from wowziri.service.tokens import TokenIssuer
from wowziri.service.verification import VerificationEngine
from wowziri.storage.memory import MemoryStore


def _wrong_code(code: str) -> str:
    return "000000" if code != "000000" else "111111"


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user(
        full_name="Ada Lovelace",
        gender="female",
        email="Ada@Example.com",
        phone="+15550000001",
        password_hash="not-a-real-hash",
    )


def _engine(store, outbox, settings, clock):
    tokens = TokenIssuer(settings, clock=clock)
    email = EmailService(outbox, app_name=settings.app_name)
    return VerificationEngine(store, email, tokens, settings, clock=clock)


@pytest.fixture
def engine(store, outbox, settings, clock):
    return _engine(store, outbox, settings, clock)


@pytest.fixture
def link_engine(store, outbox, settings, clock):
    link_settings = settings.model_copy(
        update={"verification_strategy": VerificationStrategy.LINK}
    )
    return _engine(store, outbox, link_settings, clock)


class TestOtpIssue:
    def test_issue_sends_code_and_stores_only_hash(self, engine, store, user, outbox):
        issued = engine.issue_challenge(user)

        assert issued.strategy == VerificationStrategy.OTP
        assert len(issued.secret) == 6 and issued.secret.isdigit()
        assert issued.delivered is True
        assert len(outbox.messages) == 1
        assert issued.secret in outbox.messages[0].text_body
        assert outbox.messages[0].to == "ada@example.com"

        stored = store.get_user(user.id)
        assert stored.otp is not None
        assert stored.otp.code_hash != issued.secret
        assert issued.secret not in stored.otp.code_hash

    def test_correct_code_verifies_and_clears_challenge(self, engine, store, user):
        issued = engine.issue_challenge(user)

        verified = engine.consume_challenge(user, issued.secret)

        assert verified.email_verified is True
        stored = store.get_user(user.id)
        assert stored.email_verified is True
        assert stored.otp is None

    def test_code_is_single_use(self, engine, user):
        issued = engine.issue_challenge(user)
        engine.consume_challenge(user, issued.secret)

        with pytest.raises(NoActiveChallengeError):
            engine.consume_challenge(user, issued.secret)

    def test_consume_without_challenge(self, engine, user):
        with pytest.raises(NoActiveChallengeError):
            engine.consume_challenge(user, "123456")

    def test_wrong_code_rejected_and_challenge_kept(self, engine, store, user):
        issued = engine.issue_challenge(user)

        with pytest.raises(ChallengeMismatchError):
            engine.consume_challenge(user, _wrong_code(issued.secret))

        assert store.get_user(user.id).email_verified is False
        # the genuine code still works afterwards
        assert engine.consume_challenge(user, issued.secret).email_verified is True


class TestOtpLifetime:
    def test_code_expires_after_ttl(self, engine, user, clock):
        issued = engine.issue_challenge(user)
        clock.advance(seconds=301)

        with pytest.raises(ChallengeExpiredError):
            engine.consume_challenge(user, issued.secret)

    def test_code_valid_just_before_ttl(self, engine, user, clock):
        issued = engine.issue_challenge(user)
        clock.advance(seconds=299)

        assert engine.consume_challenge(user, issued.secret).email_verified is True

    def test_new_code_replaces_old(self, engine, user, clock):
        first = engine.issue_challenge(user)
        clock.advance(seconds=46)
        second = engine.resend_challenge(user)

        if first.secret != second.secret:
            with pytest.raises(ChallengeMismatchError):
                engine.consume_challenge(user, first.secret)
        assert engine.consume_challenge(user, second.secret).email_verified is True


class TestResendCooldown:
    def test_resend_inside_cooldown_is_throttled(self, engine, user, clock, outbox):
        engine.issue_challenge(user)
        clock.advance(seconds=10)

        with pytest.raises(ThrottledError) as excinfo:
            engine.resend_challenge(user)

        assert excinfo.value.retry_after_seconds == 35
        assert excinfo.value.status_code == 429
        assert len(outbox.messages) == 1

    def test_retry_after_rounds_up(self, engine, user, clock):
        engine.issue_challenge(user)
        clock.advance(seconds=44, milliseconds=900)

        with pytest.raises(ThrottledError) as excinfo:
            engine.resend_challenge(user)

        assert excinfo.value.retry_after_seconds == 1

    def test_resend_after_cooldown_issues_new_code(self, engine, user, clock, outbox):
        engine.issue_challenge(user)
        clock.advance(seconds=45)

        issued = engine.resend_challenge(user)

        assert issued.delivered is True
        assert len(outbox.messages) == 2

    def test_resend_without_previous_challenge(self, engine, user, outbox):
        engine.resend_challenge(user)

        assert len(outbox.messages) == 1


class TestLinkStrategy:
    def test_link_issue_records_marker(self, link_engine, store, user, outbox, settings):
        issued = link_engine.issue_challenge(user)

        assert issued.strategy == VerificationStrategy.LINK
        assert issued.secret.startswith(f"{settings.app_base_url}/verify-email?token=")
        assert outbox.messages[0].subject == "Verify your Wowziri email"
        assert issued.secret in outbox.messages[0].text_body
        stored = store.get_user(user.id)
        assert stored.email_verify_issued_at is not None
        assert stored.otp.code_hash is None

    def test_link_verifies_once(self, link_engine, user):
        token = link_engine.issue_challenge(user).secret.split("token=", 1)[1]

        verified = link_engine.consume_link(token)
        assert verified.email_verified is True

        with pytest.raises(InvalidLinkError):
            link_engine.consume_link(token)

    def test_newer_link_supersedes_older(self, link_engine, user, clock):
        old = link_engine.issue_challenge(user).secret.split("token=", 1)[1]
        clock.advance(seconds=5)
        new = link_engine.issue_challenge(user).secret.split("token=", 1)[1]

        with pytest.raises(SupersededError):
            link_engine.consume_link(old)
        assert link_engine.consume_link(new).email_verified is True

    def test_links_within_tolerance_both_accepted(self, link_engine, user, clock):
        old = link_engine.issue_challenge(user).secret.split("token=", 1)[1]
        clock.advance(milliseconds=500)
        link_engine.issue_challenge(user)

        assert link_engine.consume_link(old).email_verified is True

    def test_expired_link_rejected(self, link_engine, user, clock):
        token = link_engine.issue_challenge(user).secret.split("token=", 1)[1]
        clock.advance(minutes=61)

        with pytest.raises(InvalidLinkError):
            link_engine.consume_link(token)

    def test_otp_issue_retires_outstanding_link(self, link_engine, engine, user, clock):
        token = link_engine.issue_challenge(user).secret.split("token=", 1)[1]
        clock.advance(seconds=1)
        engine.issue_challenge(user)

        with pytest.raises(InvalidLinkError):
            link_engine.consume_link(token)

    def test_link_for_changed_email_rejected(self, link_engine, store, user):
        token = link_engine.issue_challenge(user).secret.split("token=", 1)[1]
        store.users[user.id].email = "someone-else@example.com"

        with pytest.raises(InvalidLinkError):
            link_engine.consume_link(token)

    @pytest.mark.parametrize("token", ["not.a.token", "garbage", "abc.def.ghi\u00e9"])
    def test_unreadable_link_is_bad_request(self, link_engine, token):
        with pytest.raises(InvalidLinkError) as excinfo:
            link_engine.consume_link(token)
        assert excinfo.value.status_code == 400


class FailingTransport:
    def send(self, message):
        return False


class TestDeliveryFailure:
    def test_development_falls_back_to_logging(self, store, user, settings, clock):
        engine = _engine(store, FailingTransport(), settings, clock)

        issued = engine.issue_challenge(user)

        assert issued.delivered is False
        assert store.get_user(user.id).otp is not None

    def test_production_raises_server_error(self, store, user, settings, clock):
        prod = settings.model_copy(update={"deployment_mode": DeploymentMode.PRODUCTION})
        engine = _engine(store, FailingTransport(), prod, clock)

        with pytest.raises(ServerError) as excinfo:
            engine.issue_challenge(user)

        assert excinfo.value.message == "Failed to send verification email"

    def test_transport_exception_treated_as_failure(self, store, user, settings, clock):
        class ExplodingTransport:
            def send(self, message):
                raise ConnectionError("smtp down")

        engine = _engine(store, ExplodingTransport(), settings, clock)

        assert engine.issue_challenge(user).delivered is False
