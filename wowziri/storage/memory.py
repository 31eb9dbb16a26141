from __future__ import annotations

import copy
import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from wowziri.logging import get_logger
from wowziri.storage.errors import ConstraintViolation
from wowziri.storage.models import (
    Chat,
    ChatMessage,
    User,
    VerificationChallenge,
    utcnow,
)


class MemoryStore:
    """In-memory backing store for development and tests.

    Every read returns a detached copy, so callers observe the same
    "fetch a fresh record" behaviour they get from Postgres. When ``fs_root``
    is set the whole state is snapshotted to JSON after each write.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.chats: Dict[str, Chat] = {}
        # RLock so nested helpers can re-acquire within one operation
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

    def verify_connection(self) -> None:
        return None

    # user / auth
    def create_user(
        self,
        *,
        full_name: str,
        gender: str,
        email: str,
        phone: str,
        password_hash: str,
        interests: Optional[List[str]] = None,
    ) -> User:
        normalized_email = email.strip().lower()
        normalized_phone = phone.strip()
        with self._data_lock:
            for existing in self.users.values():
                if existing.email == normalized_email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                if existing.phone == normalized_phone:
                    raise ConstraintViolation("phone already exists", {"field": "phone"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                full_name=full_name.strip(),
                gender=gender,
                email=normalized_email,
                phone=normalized_phone,
                password_hash=password_hash,
                interests=list(interests or []),
                email_verified=False,
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return copy.deepcopy(user)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = (email or "").strip().lower()
        with self._data_lock:
            user = next((u for u in self.users.values() if u.email == normalized), None)
            return copy.deepcopy(user) if user else None

    def set_verification_challenge(
        self,
        user_id: str,
        challenge: Optional[VerificationChallenge],
        *,
        email_verify_issued_at: Optional[datetime] = None,
    ) -> Optional[User]:
        """Overwrite the live challenge and link marker in one update."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.otp = copy.deepcopy(challenge)
            user.email_verify_issued_at = email_verify_issued_at
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.email_verified = True
            user.otp = None
            user.email_verify_issued_at = None
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    def set_interests(self, user_id: str, interests: List[str]) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.interests = list(interests)
            user.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(user)

    # chat history
    def create_chat(
        self, user_id: str, title: str = "New Chat", messages: Optional[List[ChatMessage]] = None
    ) -> Chat:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("chat owner missing", {"user_id": user_id})
            chat = Chat.new(user_id, title=title, messages=messages)
            self.chats[chat.id] = chat
            self._persist_state()
            return copy.deepcopy(chat)

    def list_chats(self, user_id: str, limit: int = 50) -> List[Chat]:
        with self._data_lock:
            owned = [c for c in self.chats.values() if c.user_id == user_id]
            owned.sort(key=lambda c: c.updated_at, reverse=True)
            return [copy.deepcopy(c) for c in owned[:limit]]

    def get_chat(self, chat_id: str, *, user_id: str) -> Optional[Chat]:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat or chat.user_id != user_id:
                return None
            return copy.deepcopy(chat)

    def update_chat(
        self,
        chat_id: str,
        *,
        user_id: str,
        title: Optional[str] = None,
        messages: Optional[List[ChatMessage]] = None,
    ) -> Optional[Chat]:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat or chat.user_id != user_id:
                return None
            if title:
                chat.title = title
            if messages is not None:
                chat.messages = list(messages)
            chat.updated_at = utcnow()
            self._persist_state()
            return copy.deepcopy(chat)

    def delete_chat(self, chat_id: str, *, user_id: str) -> bool:
        with self._data_lock:
            chat = self.chats.get(chat_id)
            if not chat or chat.user_id != user_id:
                return False
            self.chats.pop(chat_id, None)
            self._persist_state()
            return True

    # persistence
    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "chats": [self._serialize_chat(c) for c in self.chats.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.chats = {c["id"]: self._deserialize_chat(c) for c in data.get("chats", [])}
        self.logger.info("memory_store_loaded", users=len(self.users), chats=len(self.chats))
        return True

    def _serialize_user(self, user: User) -> dict:
        otp = None
        if user.otp:
            otp = {
                "code_hash": user.otp.code_hash,
                "expires_at": self._serialize_datetime(user.otp.expires_at),
                "resend_available_at": self._serialize_datetime(user.otp.resend_available_at),
            }
        return {
            "id": user.id,
            "full_name": user.full_name,
            "gender": user.gender,
            "email": user.email,
            "phone": user.phone,
            "password_hash": user.password_hash,
            "interests": user.interests,
            "email_verified": user.email_verified,
            "email_verify_issued_at": self._serialize_datetime(user.email_verify_issued_at),
            "otp": otp,
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        raw_otp = data.get("otp")
        otp = None
        if raw_otp:
            otp = VerificationChallenge(
                code_hash=raw_otp.get("code_hash"),
                expires_at=self._deserialize_datetime(raw_otp.get("expires_at")),
                resend_available_at=self._deserialize_datetime(raw_otp.get("resend_available_at")),
            )
        return User(
            id=str(data["id"]),
            full_name=data["full_name"],
            gender=data["gender"],
            email=data["email"],
            phone=data["phone"],
            password_hash=data["password_hash"],
            interests=list(data.get("interests") or []),
            email_verified=bool(data.get("email_verified", False)),
            email_verify_issued_at=self._deserialize_datetime(data.get("email_verify_issued_at")),
            otp=otp,
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )

    def _serialize_chat(self, chat: Chat) -> dict:
        return {
            "id": chat.id,
            "user_id": chat.user_id,
            "title": chat.title,
            "messages": [
                {
                    "role": m.role,
                    "content": m.content,
                    "created_at": self._serialize_datetime(m.created_at),
                }
                for m in chat.messages
            ],
            "created_at": self._serialize_datetime(chat.created_at),
            "updated_at": self._serialize_datetime(chat.updated_at),
        }

    def _deserialize_chat(self, data: dict) -> Chat:
        return Chat(
            id=str(data["id"]),
            user_id=str(data["user_id"]),
            title=data.get("title") or "New Chat",
            messages=[
                ChatMessage(
                    role=m["role"],
                    content=m["content"],
                    created_at=self._deserialize_datetime(m.get("created_at")) or utcnow(),
                )
                for m in data.get("messages", [])
            ],
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
        )
