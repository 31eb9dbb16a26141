from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Protocol, Union

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from wowziri.config import Settings
from wowziri.logging import get_logger
from wowziri.service.errors import (
    AuthenticationError,
    BadRequestError,
    ConflictError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
)
from wowziri.service.tokens import ACCESS, REFRESH, TokenIssuer
from wowziri.service.verification import IssuedChallenge, VerificationEngine
from wowziri.storage.errors import ConstraintViolation
from wowziri.storage.models import User, VerificationChallenge

logger = get_logger(__name__)

MAX_INTERESTS = 50
MAX_INTEREST_LENGTH = 64


class UserStore(Protocol):
    def create_user(
        self,
        *,
        full_name: str,
        gender: str,
        email: str,
        phone: str,
        password_hash: str,
        interests: Optional[List[str]] = None,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def set_verification_challenge(
        self,
        user_id: str,
        challenge: Optional[VerificationChallenge],
        *,
        email_verify_issued_at: Optional[datetime] = None,
    ) -> Optional[User]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...

    def set_interests(self, user_id: str, interests: List[str]) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    email: str


@dataclass
class SessionResult:
    access_token: str
    refresh_token: str
    user: User


@dataclass
class SignupResult:
    user_id: str
    email: str
    challenge: IssuedChallenge


@dataclass
class VerificationRequired:
    """Login succeeded on credentials but the email is not yet proven."""

    email: str
    challenge: IssuedChallenge


def normalize_interests(tags: Iterable[str]) -> List[str]:
    seen = set()
    cleaned: List[str] = []
    for raw in tags:
        tag = str(raw).strip()[:MAX_INTEREST_LENGTH]
        if not tag or tag in seen:
            continue
        seen.add(tag)
        cleaned.append(tag)
        if len(cleaned) >= MAX_INTERESTS:
            break
    return cleaned


class AuthService:
    """Signup, login, refresh and verification flows over one user store."""

    def __init__(
        self,
        store: UserStore,
        tokens: TokenIssuer,
        verification: VerificationEngine,
        settings: Settings,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.verification = verification
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            type=Type.ID,
        )
        # verified against for unknown emails so response timing matches
        self._dummy_hash = self._pwd_hasher.hash("wowziri-dummy-password-1!")

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, password_hash: str, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            return False

    def _issue_session(self, user: User) -> SessionResult:
        return SessionResult(
            access_token=self.tokens.issue_access_token(user.id, user.email),
            refresh_token=self.tokens.issue_refresh_token(user.id, user.email),
            user=user,
        )

    def signup(
        self,
        *,
        full_name: str,
        gender: str,
        email: str,
        phone: str,
        password: str,
        interests: Optional[List[str]] = None,
    ) -> SignupResult:
        password_hash = self.hash_password(password)
        try:
            user = self.store.create_user(
                full_name=full_name,
                gender=gender,
                email=email,
                phone=phone,
                password_hash=password_hash,
                interests=normalize_interests(interests or []),
            )
        except ConstraintViolation as exc:
            logger.info("signup_conflict", field=exc.field)
            raise ConflictError("Email or phone already registered", detail=exc.detail)
        logger.info("signup_created", user_id=user.id)
        challenge = self.verification.issue_challenge(user)
        return SignupResult(user_id=user.id, email=user.email, challenge=challenge)

    def login(self, email: str, password: str) -> Union[SessionResult, VerificationRequired]:
        user = self.store.get_user_by_email(email)
        if not user:
            self.verify_password(self._dummy_hash, password)
            logger.info("login_failed", reason="unknown_user")
            raise InvalidCredentialsError()
        if not self.verify_password(user.password_hash, password):
            logger.info("login_failed", reason="bad_password", user_id=user.id)
            raise InvalidCredentialsError()
        if not user.email_verified:
            logger.info("login_requires_verification", user_id=user.id)
            challenge = self.verification.issue_challenge(user)
            return VerificationRequired(email=user.email, challenge=challenge)
        logger.info("login_succeeded", user_id=user.id)
        return self._issue_session(user)

    def refresh(self, refresh_token: Optional[str]) -> SessionResult:
        if not refresh_token:
            raise AuthenticationError("No refresh token")
        try:
            claims = self.tokens.verify(refresh_token, REFRESH)
        except InvalidTokenError:
            raise AuthenticationError("Invalid refresh token")
        user = self.store.get_user(str(claims["sub"]))
        if not user:
            raise AuthenticationError("Invalid refresh token")
        logger.info("session_refreshed", user_id=user.id)
        return self._issue_session(user)

    def logout(self) -> None:
        # refresh tokens are stateless; the route clears the cookie
        return None

    def verify_otp(self, email: str, code: str) -> SessionResult:
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("User not found")
        verified = self.verification.consume_challenge(user, code)
        return self._issue_session(verified)

    def verify_link(self, token: str) -> SessionResult:
        verified = self.verification.consume_link(token)
        return self._issue_session(verified)

    def request_verification(self, email: str) -> IssuedChallenge:
        user = self.store.get_user_by_email(email)
        if not user:
            raise NotFoundError("User not found")
        if user.email_verified:
            raise BadRequestError("Email already verified")
        return self.verification.resend_challenge(user)

    def get_profile(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("User not found")
        return user

    def set_interests(self, user_id: str, tags: Iterable[str]) -> User:
        user = self.store.set_interests(user_id, normalize_interests(tags))
        if not user:
            raise NotFoundError("User not found")
        return user

    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        token = token.strip()
        return token or None

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve an ``Authorization`` header to an identity, or None."""

        token = self._extract_bearer(authorization)
        if not token:
            return None
        try:
            claims = self.tokens.verify(token, ACCESS)
        except InvalidTokenError:
            return None
        return AuthContext(user_id=str(claims["sub"]), email=str(claims.get("email", "")))
