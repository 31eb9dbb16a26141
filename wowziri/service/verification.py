from __future__ import annotations

import math
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from wowziri.config import Settings, VerificationStrategy
from wowziri.logging import get_logger
from wowziri.service.email import EmailService
from wowziri.service.errors import (
    ChallengeExpiredError,
    ChallengeMismatchError,
    InvalidLinkError,
    InvalidTokenError,
    NoActiveChallengeError,
    NotFoundError,
    ServerError,
    SupersededError,
    ThrottledError,
)
from wowziri.service.tokens import EMAIL_VERIFY, TokenIssuer
from wowziri.storage.models import User, VerificationChallenge

logger = get_logger(__name__)

# Two links minted within this window are treated as the same issuance
SUPERSESSION_TOLERANCE = timedelta(seconds=1)


class ChallengeStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def set_verification_challenge(
        self,
        user_id: str,
        challenge: Optional[VerificationChallenge],
        *,
        email_verify_issued_at: Optional[datetime] = None,
    ) -> Optional[User]:
        ...

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        ...


@dataclass
class IssuedChallenge:
    """What was just sent to the user.

    ``secret`` is the plaintext code or link. It only ever leaves the
    process as ``devLink`` outside production.
    """

    strategy: VerificationStrategy
    secret: str
    resend_available_at: datetime
    delivered: bool = True


class VerificationEngine:
    """Drives a user from unverified to verified.

    At most one challenge is live per user: every issuance overwrites the
    stored code hash and link marker in a single store update, whichever
    strategy is configured.
    """

    def __init__(
        self,
        store: ChallengeStore,
        email: EmailService,
        tokens: TokenIssuer,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.email = email
        self.tokens = tokens
        self.settings = settings
        self.strategy = settings.verification_strategy
        self._clock = clock or tokens.now
        self._hasher = PasswordHasher(
            time_cost=settings.otp_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            type=Type.ID,
        )
        self._otp_ttl = timedelta(seconds=settings.otp_ttl_seconds)
        self._cooldown = timedelta(seconds=settings.otp_resend_cooldown_seconds)
        self._link_ttl = timedelta(minutes=settings.email_verify_ttl_minutes)

    def _now(self) -> datetime:
        return self._clock()

    def _generate_code(self) -> str:
        length = self.settings.otp_length
        return f"{secrets.randbelow(10 ** length):0{length}d}"

    def issue_challenge(self, user: User) -> IssuedChallenge:
        if self.strategy == VerificationStrategy.LINK:
            return self._issue_link(user)
        return self._issue_code(user)

    def _issue_code(self, user: User) -> IssuedChallenge:
        now = self._now()
        code = self._generate_code()
        challenge = VerificationChallenge(
            code_hash=self._hasher.hash(code),
            expires_at=now + self._otp_ttl,
            resend_available_at=now + self._cooldown,
        )
        # clearing the link marker retires any outstanding link as well
        self.store.set_verification_challenge(user.id, challenge, email_verify_issued_at=None)
        logger.info("otp_issued", user_id=user.id)
        ttl_minutes = max(1, math.ceil(self._otp_ttl.total_seconds() / 60))
        delivered = self._deliver(
            user,
            lambda: self.email.send_verification_code(user.email, code, ttl_minutes),
            dev_otp=code,
        )
        return IssuedChallenge(
            strategy=VerificationStrategy.OTP,
            secret=code,
            resend_available_at=challenge.resend_available_at,
            delivered=delivered,
        )

    def _issue_link(self, user: User) -> IssuedChallenge:
        now = self._now()
        token = self.tokens.issue_email_verify_token(user.id, user.email, issued_at=now)
        link = f"{self.settings.app_base_url}/verify-email?token={token}"
        challenge = VerificationChallenge(
            code_hash=None,
            expires_at=now + self._link_ttl,
            resend_available_at=now + self._cooldown,
        )
        self.store.set_verification_challenge(user.id, challenge, email_verify_issued_at=now)
        logger.info("verification_link_issued", user_id=user.id)
        delivered = self._deliver(
            user,
            lambda: self.email.send_verification_link(
                user.email,
                user.full_name,
                link,
                self.settings.email_verify_ttl_minutes,
            ),
            dev_url=link,
        )
        return IssuedChallenge(
            strategy=VerificationStrategy.LINK,
            secret=link,
            resend_available_at=challenge.resend_available_at,
            delivered=delivered,
        )

    def _deliver(self, user: User, send: Callable[[], bool], **fallback) -> bool:
        try:
            sent = send()
        except Exception as exc:
            logger.error("verification_email_error", user_id=user.id, error=str(exc))
            sent = False
        if sent:
            return True
        if self.settings.is_production:
            logger.error("verification_email_failed", user_id=user.id)
            raise ServerError("Failed to send verification email")
        logger.warning("verification_fallback", user_id=user.id, **fallback)
        return False

    def resend_challenge(self, user: User) -> IssuedChallenge:
        current = self.store.get_user(user.id)
        if not current:
            raise NotFoundError("User not found")
        now = self._now()
        challenge = current.otp
        if challenge and challenge.resend_available_at and now < challenge.resend_available_at:
            remaining = (challenge.resend_available_at - now).total_seconds()
            retry_after = max(1, math.ceil(remaining))
            logger.info("verification_resend_throttled", user_id=user.id, retry_after=retry_after)
            raise ThrottledError(retry_after)
        return self.issue_challenge(current)

    def consume_challenge(self, user: User, code: str) -> User:
        current = self.store.get_user(user.id)
        if not current:
            raise NotFoundError("User not found")
        challenge = current.otp
        if not challenge or not challenge.code_hash or not challenge.expires_at:
            raise NoActiveChallengeError()
        if self._now() > challenge.expires_at:
            raise ChallengeExpiredError()
        try:
            self._hasher.verify(challenge.code_hash, code)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.info("otp_mismatch", user_id=user.id)
            raise ChallengeMismatchError()
        verified = self.store.mark_email_verified(user.id)
        if not verified:
            raise NotFoundError("User not found")
        logger.info("email_verified", user_id=user.id, method="otp")
        return verified

    def consume_link(self, token: str) -> User:
        try:
            claims = self.tokens.verify(token, EMAIL_VERIFY)
        except InvalidTokenError:
            logger.info("verification_link_rejected")
            raise InvalidLinkError()
        user = self.store.get_user(str(claims.get("sub")))
        if not user or str(claims.get("email", "")).lower() != user.email.lower():
            raise InvalidLinkError()
        if user.email_verify_issued_at is None:
            raise InvalidLinkError()
        try:
            token_issued_at = float(claims.get("iat"))
        except (TypeError, ValueError):
            raise InvalidLinkError()
        marker = user.email_verify_issued_at.timestamp()
        if marker - token_issued_at > SUPERSESSION_TOLERANCE.total_seconds():
            logger.info("verification_link_superseded", user_id=user.id)
            raise SupersededError()
        verified = self.store.mark_email_verified(user.id)
        if not verified:
            raise InvalidLinkError()
        logger.info("email_verified", user_id=user.id, method="link")
        return verified
