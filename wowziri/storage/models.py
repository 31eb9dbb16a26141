from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Gender(str, Enum):
    MALE = "male"
    FEMALE = "female"


CHAT_ROLES = ("user", "assistant", "system")


@dataclass
class VerificationChallenge:
    """One outstanding email-verification code.

    Only a one-way hash of the code is kept. A new challenge replaces the
    previous one wholesale, so at most one is live per user.
    """

    code_hash: Optional[str]
    expires_at: Optional[datetime]
    resend_available_at: Optional[datetime]


@dataclass
class User:
    id: str
    full_name: str
    gender: str
    email: str
    phone: str
    password_hash: str
    interests: List[str] = field(default_factory=list)
    email_verified: bool = False
    email_verify_issued_at: Optional[datetime] = None
    otp: Optional[VerificationChallenge] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def public_profile(self) -> Dict[str, Any]:
        """Fields safe to return to clients; never the hash or challenge."""
        return {
            "id": self.id,
            "fullName": self.full_name,
            "gender": self.gender,
            "email": self.email,
            "phone": self.phone,
            "interests": list(self.interests),
            "emailVerified": self.email_verified,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }


@dataclass
class ChatMessage:
    role: str
    content: str
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "createdAt": self.created_at.isoformat(),
        }


@dataclass
class Chat:
    id: str
    user_id: str
    title: str = "New Chat"
    messages: List[ChatMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, user_id: str, title: str = "New Chat", messages: Optional[List[ChatMessage]] = None
    ) -> "Chat":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            title=title or "New Chat",
            messages=list(messages or []),
            created_at=now,
            updated_at=now,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "messages": [m.to_dict() for m in self.messages],
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }
