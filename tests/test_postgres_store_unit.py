import uuid
from datetime import datetime, timezone

from wowziri.storage.models import ChatMessage
from wowziri.storage.postgres import PostgresStore


class DummyPool:
    def connection(self):
        raise AssertionError("database access should be stubbed in unit tests")


def _store() -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.pool = DummyPool()
    return store


def test_user_row_mapping_with_pending_code():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    row = {
        "id": uuid.uuid4(),
        "full_name": "Ada",
        "gender": "female",
        "email": "ada@example.com",
        "phone": "+15550000001",
        "password_hash": "hash",
        "interests": '["math", "music"]',
        "email_verified": False,
        "email_verify_issued_at": None,
        "otp_code_hash": "code-hash",
        "otp_expires_at": now,
        "otp_resend_available_at": now,
        "created_at": now,
        "updated_at": now,
    }

    user = _store()._user_from_row(row)

    assert user.id == str(row["id"])
    assert user.interests == ["math", "music"]
    assert user.otp.code_hash == "code-hash"
    assert user.otp.expires_at == now


def test_user_row_without_challenge():
    row = {
        "id": uuid.uuid4(),
        "full_name": "Ada",
        "gender": "female",
        "email": "ada@example.com",
        "phone": "+15550000001",
        "password_hash": "hash",
        "interests": ["math"],
        "email_verified": True,
    }

    user = _store()._user_from_row(row)

    assert user.otp is None
    assert user.email_verified is True
    assert user.interests == ["math"]


def test_chat_row_mapping_round_trips_messages():
    store = _store()
    message = ChatMessage("assistant", "hello")
    row = {
        "id": uuid.uuid4(),
        "user_id": uuid.uuid4(),
        "title": None,
        "messages": [PostgresStore._message_to_row(message)],
    }

    chat = store._chat_from_row(row)

    assert chat.title == "New Chat"
    assert chat.messages[0].role == "assistant"
    assert chat.messages[0].created_at == message.created_at


def test_uuid_guard():
    assert PostgresStore._is_uuid(str(uuid.uuid4()))
    assert not PostgresStore._is_uuid("not-a-uuid")
