from __future__ import annotations

import base64
import hashlib
import hmac
import json
import threading
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from wowziri.config import Settings
from wowziri.logging import get_logger
from wowziri.service.errors import ConfigurationError, InvalidTokenError
from wowziri.storage.models import utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"
EMAIL_VERIFY = "email-verify"

TOKEN_KINDS = (ACCESS, REFRESH, EMAIL_VERIFY)

# Development-only signing keys, distinct per kind so a token of one kind
# never verifies as another even without configuration
_DEV_FALLBACK_SECRETS = {
    ACCESS: "dev-only-insecure-access-secret",
    REFRESH: "dev-only-insecure-refresh-secret",
    EMAIL_VERIFY: "dev-only-insecure-email-verify-secret",
}

_fallback_warned: set[str] = set()
_fallback_lock = threading.Lock()


def _warn_fallback_once(kind: str) -> None:
    with _fallback_lock:
        if kind in _fallback_warned:
            return
        _fallback_warned.add(kind)
    logger.warning("jwt_dev_fallback_secret", kind=kind)


class TokenIssuer:
    """Mints and verifies the three HS256 token kinds.

    Each kind is signed with its own secret and carries a ``type`` tag, so an
    access token presented as a refresh token fails twice over: wrong key and
    wrong tag.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.settings = settings
        self._clock = clock or utcnow
        self._secrets = {
            ACCESS: self._resolve_secret(ACCESS, settings.jwt_access_secret),
            REFRESH: self._resolve_secret(REFRESH, settings.jwt_refresh_secret),
            EMAIL_VERIFY: self._resolve_secret(EMAIL_VERIFY, settings.jwt_email_secret),
        }
        self._check_distinct_secrets()
        self._ttls = {
            ACCESS: timedelta(minutes=settings.access_token_ttl_minutes),
            REFRESH: timedelta(days=settings.refresh_token_ttl_days),
            EMAIL_VERIFY: timedelta(minutes=settings.email_verify_ttl_minutes),
        }

    def _resolve_secret(self, kind: str, configured: Optional[str]) -> str:
        if configured:
            return configured
        if self.settings.is_production:
            raise ConfigurationError(f"signing secret for {kind} tokens is not configured")
        _warn_fallback_once(kind)
        return _DEV_FALLBACK_SECRETS[kind]

    def _check_distinct_secrets(self) -> None:
        values = list(self._secrets.values())
        if len(set(values)) == len(values):
            return
        if self.settings.is_production:
            raise ConfigurationError("access, refresh and email-verify secrets must differ")
        logger.warning("jwt_secrets_not_distinct")

    def now(self) -> datetime:
        return self._clock()

    def issue_access_token(self, subject_id: str, email: str) -> str:
        return self._issue(ACCESS, subject_id, email, with_jti=False)

    def issue_refresh_token(self, subject_id: str, email: str) -> str:
        return self._issue(REFRESH, subject_id, email)

    def issue_email_verify_token(
        self, subject_id: str, email: str, *, issued_at: Optional[datetime] = None
    ) -> str:
        return self._issue(EMAIL_VERIFY, subject_id, email, issued_at=issued_at)

    def _issue(
        self,
        kind: str,
        subject_id: str,
        email: str,
        *,
        issued_at: Optional[datetime] = None,
        with_jti: bool = True,
    ) -> str:
        now = issued_at or self.now()
        payload: Dict[str, Any] = {
            "sub": subject_id,
            "email": email,
            "type": kind,
            "iat": now.timestamp(),
            "exp": int((now + self._ttls[kind]).timestamp()),
        }
        if with_jti:
            payload["jti"] = str(uuid.uuid4())
        return self._encode_jwt(payload, self._secrets[kind])

    def verify(self, token: Optional[str], kind: str) -> Dict[str, Any]:
        """Return the claims of ``token`` or raise :class:`InvalidTokenError`."""

        if kind not in self._secrets:
            raise ValueError(f"unknown token kind '{kind}'")
        if not token or not isinstance(token, str):
            raise InvalidTokenError()
        payload = self._decode_jwt(token, self._secrets[kind])
        if payload is None:
            raise InvalidTokenError()
        if payload.get("type") != kind:
            logger.warning("jwt_kind_mismatch", expected=kind, actual=payload.get("type"))
            raise InvalidTokenError()
        if not payload.get("sub"):
            raise InvalidTokenError()
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            raise InvalidTokenError()
        if exp_ts <= self.now().timestamp():
            raise InvalidTokenError("Token expired")
        return payload

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: Dict[str, Any], secret: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str, secret: str) -> Optional[Dict[str, Any]]:
        # base64url segments are ASCII
        if not token.isascii():
            logger.warning("jwt_non_ascii_token")
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        expected_sig = self._encode_segment(
            hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
        )
        if not hmac.compare_digest(expected_sig.encode("ascii"), sig_b64.encode("ascii")):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        return payload if isinstance(payload, dict) else None
