from __future__ import annotations

import re
import unicodedata
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from wowziri.storage.models import CHAT_ROLES, Gender

PASSWORD_POLICY_MESSAGE = (
    "Password must be at least 8 characters, include a number and a special symbol."
)
PASSWORD_SYMBOLS = frozenset("!@#$%^&*()_+-[]{};':\"\\|,.<>/?")
MAX_PASSWORD_LENGTH = 128
MAX_FULL_NAME_LENGTH = 120
MAX_PHONE_LENGTH = 32
MAX_INTERESTS = 50
MAX_MESSAGE_CHARS = 32000
MAX_CHAT_TURNS = 200


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC-normalize."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("Valid email is required")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254 or len(normalized) < 3:
        raise ValueError("Valid email is required")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Valid email is required")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Valid email is required")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Valid email is required")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Valid email is required")
    return normalized


def validate_password_strength(value: str) -> str:
    if (
        len(value) < 8
        or len(value) > MAX_PASSWORD_LENGTH
        or not any(c.isdigit() for c in value)
        or not any(c in PASSWORD_SYMBOLS for c in value)
    ):
        raise ValueError(PASSWORD_POLICY_MESSAGE)
    return value


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SignupRequest(_CamelModel):
    full_name: str = Field(..., alias="fullName")
    gender: Gender
    email: str
    phone: str
    password: str
    interests: List[str] = Field(default_factory=list, max_length=MAX_INTERESTS)

    @field_validator("full_name")
    @classmethod
    def _validate_full_name(cls, value: str) -> str:
        cleaned = _normalize_unicode(value).strip()
        if not cleaned:
            raise ValueError("Full name is required")
        if len(cleaned) > MAX_FULL_NAME_LENGTH:
            raise ValueError(f"Full name must be at most {MAX_FULL_NAME_LENGTH} characters")
        return cleaned

    @field_validator("gender", mode="before")
    @classmethod
    def _validate_gender(cls, value):
        if isinstance(value, str) and value.strip().lower() in {g.value for g in Gender}:
            return value.strip().lower()
        raise ValueError("Gender must be male or female")

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("phone")
    @classmethod
    def _validate_phone(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("Phone is required")
        if len(cleaned) > MAX_PHONE_LENGTH:
            raise ValueError(f"Phone must be at most {MAX_PHONE_LENGTH} characters")
        return cleaned

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return validate_password_strength(value)


class LoginRequest(_CamelModel):
    email: str
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("email")
    @classmethod
    def _validate_login_email(cls, value: str) -> str:
        return validate_email(value)


class VerifyOtpRequest(_CamelModel):
    email: str
    code: str

    @field_validator("email")
    @classmethod
    def _validate_verify_email(cls, value: str) -> str:
        return validate_email(value)

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        cleaned = value.strip()
        if not re.fullmatch(r"\d{6}", cleaned):
            raise ValueError("Code must be 6 digits")
        return cleaned


class VerifyEmailRequest(_CamelModel):
    token: str = Field(..., min_length=1, max_length=4096)


class EmailRequest(_CamelModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_request_email(cls, value: str) -> str:
        return validate_email(value)


class InterestsRequest(_CamelModel):
    interests: List[str] = Field(..., max_length=MAX_INTERESTS)


class ChatTurn(_CamelModel):
    role: str
    content: str = Field(..., max_length=MAX_MESSAGE_CHARS)

    @field_validator("role")
    @classmethod
    def _validate_role(cls, value: str) -> str:
        if value not in CHAT_ROLES:
            raise ValueError(f"role must be one of: {', '.join(CHAT_ROLES)}")
        return value


class ChatStreamRequest(_CamelModel):
    messages: Optional[List[ChatTurn]] = Field(default=None, max_length=MAX_CHAT_TURNS)


class ChatCreateRequest(_CamelModel):
    title: Optional[str] = Field(default=None, max_length=200)
    messages: Optional[List[ChatTurn]] = Field(default=None, max_length=MAX_CHAT_TURNS)


class ChatUpdateRequest(ChatCreateRequest):
    pass
