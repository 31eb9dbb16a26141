from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from wowziri.logging import get_logger
from wowziri.storage.errors import ConstraintViolation
from wowziri.storage.models import (
    Chat,
    ChatMessage,
    User,
    VerificationChallenge,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        full_name TEXT NOT NULL,
        gender TEXT NOT NULL,
        email TEXT NOT NULL,
        phone TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        interests JSONB NOT NULL DEFAULT '[]'::jsonb,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verify_issued_at TIMESTAMPTZ,
        otp_code_hash TEXT,
        otp_expires_at TIMESTAMPTZ,
        otp_resend_available_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_phone_key ON app_user (phone)",
    """
    CREATE TABLE IF NOT EXISTS chat (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        title TEXT NOT NULL DEFAULT 'New Chat',
        messages JSONB NOT NULL DEFAULT '[]'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS chat_user_updated_idx ON chat (user_id, updated_at DESC)",
)


class PostgresStore:
    """Postgres-backed user and chat store.

    Uniqueness of email (case-insensitive) and phone is enforced by unique
    indexes, so concurrent signups cannot both succeed.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

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
        user_id = str(uuid.uuid4())
        now = utcnow()
        normalized_email = email.strip().lower()
        normalized_phone = phone.strip()
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, full_name, gender, email, phone, password_hash, interests, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user_id,
                        full_name.strip(),
                        gender,
                        normalized_email,
                        normalized_phone,
                        password_hash,
                        json.dumps(list(interests or [])),
                        now,
                        now,
                    ),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", "") or ""
            field = "phone" if "phone" in constraint else "email"
            raise ConstraintViolation(f"{field} already exists", {"field": field})
        return User(
            id=user_id,
            full_name=full_name.strip(),
            gender=gender,
            email=normalized_email,
            phone=normalized_phone,
            password_hash=password_hash,
            interests=list(interests or []),
            created_at=now,
            updated_at=now,
        )

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM app_user WHERE id = %s", (user_id,)).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        normalized = (email or "").strip().lower()
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = %s", (normalized,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_verification_challenge(
        self,
        user_id: str,
        challenge: Optional[VerificationChallenge],
        *,
        email_verify_issued_at: Optional[datetime] = None,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET otp_code_hash = %s,
                    otp_expires_at = %s,
                    otp_resend_available_at = %s,
                    email_verify_issued_at = %s,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (
                    challenge.code_hash if challenge else None,
                    challenge.expires_at if challenge else None,
                    challenge.resend_available_at if challenge else None,
                    email_verify_issued_at,
                    user_id,
                ),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET email_verified = TRUE,
                    otp_code_hash = NULL,
                    otp_expires_at = NULL,
                    otp_resend_available_at = NULL,
                    email_verify_issued_at = NULL,
                    updated_at = now()
                WHERE id = %s
                RETURNING *
                """,
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def set_interests(self, user_id: str, interests: List[str]) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET interests = %s, updated_at = now() WHERE id = %s RETURNING *",
                (json.dumps(list(interests)), user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    # chat history
    def create_chat(
        self, user_id: str, title: str = "New Chat", messages: Optional[List[ChatMessage]] = None
    ) -> Chat:
        chat = Chat.new(user_id, title=title, messages=messages)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO chat (id, user_id, title, messages, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        chat.id,
                        chat.user_id,
                        chat.title,
                        json.dumps([self._message_to_row(m) for m in chat.messages]),
                        chat.created_at,
                        chat.updated_at,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("chat owner missing", {"user_id": user_id})
        return chat

    def list_chats(self, user_id: str, limit: int = 50) -> List[Chat]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM chat WHERE user_id = %s ORDER BY updated_at DESC LIMIT %s",
                (user_id, limit),
            ).fetchall()
        return [self._chat_from_row(row) for row in rows]

    def get_chat(self, chat_id: str, *, user_id: str) -> Optional[Chat]:
        if not self._is_uuid(chat_id):
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM chat WHERE id = %s AND user_id = %s", (chat_id, user_id)
            ).fetchone()
        return self._chat_from_row(row) if row else None

    def update_chat(
        self,
        chat_id: str,
        *,
        user_id: str,
        title: Optional[str] = None,
        messages: Optional[List[ChatMessage]] = None,
    ) -> Optional[Chat]:
        if not self._is_uuid(chat_id):
            return None
        encoded = (
            json.dumps([self._message_to_row(m) for m in messages]) if messages is not None else None
        )
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE chat
                SET title = COALESCE(NULLIF(%s, ''), title),
                    messages = COALESCE(%s::jsonb, messages),
                    updated_at = now()
                WHERE id = %s AND user_id = %s
                RETURNING *
                """,
                (title, encoded, chat_id, user_id),
            ).fetchone()
        return self._chat_from_row(row) if row else None

    def delete_chat(self, chat_id: str, *, user_id: str) -> bool:
        if not self._is_uuid(chat_id):
            return False
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM chat WHERE id = %s AND user_id = %s", (chat_id, user_id)
            )
            return cur.rowcount > 0

    # row mapping
    @staticmethod
    def _is_uuid(value: str) -> bool:
        try:
            uuid.UUID(str(value))
        except ValueError:
            return False
        return True

    @staticmethod
    def _json_list(raw: Any) -> list:
        if raw is None:
            return []
        if isinstance(raw, str):
            return json.loads(raw)
        return list(raw)

    def _user_from_row(self, row: dict) -> User:
        otp = None
        if row.get("otp_expires_at") or row.get("otp_code_hash"):
            otp = VerificationChallenge(
                code_hash=row.get("otp_code_hash"),
                expires_at=row.get("otp_expires_at"),
                resend_available_at=row.get("otp_resend_available_at"),
            )
        return User(
            id=str(row["id"]),
            full_name=row["full_name"],
            gender=row["gender"],
            email=row["email"],
            phone=row["phone"],
            password_hash=row["password_hash"],
            interests=self._json_list(row.get("interests")),
            email_verified=bool(row.get("email_verified")),
            email_verify_issued_at=row.get("email_verify_issued_at"),
            otp=otp,
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _message_to_row(message: ChatMessage) -> dict:
        return {
            "role": message.role,
            "content": message.content,
            "created_at": message.created_at.isoformat(),
        }

    def _chat_from_row(self, row: dict) -> Chat:
        messages = []
        for item in self._json_list(row.get("messages")):
            created_raw = item.get("created_at")
            messages.append(
                ChatMessage(
                    role=item["role"],
                    content=item["content"],
                    created_at=datetime.fromisoformat(created_raw) if created_raw else utcnow(),
                )
            )
        return Chat(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            title=row.get("title") or "New Chat",
            messages=messages,
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )
