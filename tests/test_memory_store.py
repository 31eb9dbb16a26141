from datetime import timedelta
from pathlib import Path

import pytest

from wowziri.storage.errors import ConstraintViolation
from wowziri.storage.memory import MemoryStore
from wowziri.storage.models import ChatMessage, VerificationChallenge, utcnow


def _create(store, email="ada@example.com", phone="+15550000001"):
    return store.create_user(
        full_name=" Ada ",
        gender="female",
        email=email,
        phone=phone,
        password_hash="hash",
        interests=["math"],
    )


def test_create_user_normalizes_identity_fields():
    store = MemoryStore()

    user = _create(store, email=" Ada@Example.COM ", phone=" +15550000001 ")

    assert user.email == "ada@example.com"
    assert user.phone == "+15550000001"
    assert user.full_name == "Ada"
    assert user.email_verified is False
    assert store.get_user_by_email("ADA@example.com").id == user.id


@pytest.mark.parametrize(
    "email, phone, field",
    [
        ("ADA@example.com", "+15550000002", "email"),
        ("grace@example.com", "+15550000001", "phone"),
    ],
)
def test_duplicate_identity_rejected(email, phone, field):
    store = MemoryStore()
    _create(store)

    with pytest.raises(ConstraintViolation) as excinfo:
        _create(store, email=email, phone=phone)

    assert excinfo.value.detail == {"field": field}
    assert len(store.users) == 1


def test_reads_return_detached_copies():
    store = MemoryStore()
    user = _create(store)

    fetched = store.get_user(user.id)
    fetched.email_verified = True
    fetched.interests.append("mutated")

    stored = store.get_user(user.id)
    assert stored.email_verified is False
    assert stored.interests == ["math"]


def test_challenge_overwrite_and_verification_clear():
    store = MemoryStore()
    user = _create(store)
    now = utcnow()
    first = VerificationChallenge("h1", now + timedelta(minutes=5), now + timedelta(seconds=45))
    second = VerificationChallenge("h2", now + timedelta(minutes=5), now + timedelta(seconds=45))

    store.set_verification_challenge(user.id, first, email_verify_issued_at=now)
    store.set_verification_challenge(user.id, second)
    current = store.get_user(user.id)
    assert current.otp.code_hash == "h2"
    assert current.email_verify_issued_at is None

    verified = store.mark_email_verified(user.id)
    assert verified.email_verified is True
    assert verified.otp is None


def test_updates_on_missing_user_return_none():
    store = MemoryStore()

    assert store.get_user("missing") is None
    assert store.set_verification_challenge("missing", None) is None
    assert store.mark_email_verified("missing") is None
    assert store.set_interests("missing", ["x"]) is None


def test_chats_are_owner_scoped_and_sorted():
    store = MemoryStore()
    owner = _create(store)
    other = _create(store, email="grace@example.com", phone="+15550000002")

    older = store.create_chat(owner.id, title="Older")
    newer = store.create_chat(owner.id, title="Newer")
    store.update_chat(older.id, user_id=owner.id, messages=[ChatMessage("user", "bump")])

    assert [c.title for c in store.list_chats(owner.id)] == ["Older", "Newer"]
    assert store.list_chats(other.id) == []
    assert store.get_chat(newer.id, user_id=other.id) is None
    assert store.update_chat(newer.id, user_id=other.id, title="stolen") is None
    assert store.delete_chat(newer.id, user_id=other.id) is False
    assert store.delete_chat(newer.id, user_id=owner.id) is True
    assert store.get_chat(newer.id, user_id=owner.id) is None


def test_chat_requires_existing_owner():
    with pytest.raises(ConstraintViolation):
        MemoryStore().create_chat("missing")


def test_state_survives_restart(tmp_path: Path):
    store = MemoryStore(fs_root=str(tmp_path))
    user = _create(store)
    now = utcnow()
    store.set_verification_challenge(
        user.id,
        VerificationChallenge("hash", now + timedelta(minutes=5), now + timedelta(seconds=45)),
        email_verify_issued_at=now,
    )
    chat = store.create_chat(user.id, title="Saved", messages=[ChatMessage("user", "hi")])

    assert (tmp_path / "state" / "memory_store.json").exists()

    reloaded = MemoryStore(fs_root=str(tmp_path))
    restored = reloaded.get_user(user.id)
    assert restored.email == "ada@example.com"
    assert restored.otp.code_hash == "hash"
    assert restored.otp.expires_at == now + timedelta(minutes=5)
    assert restored.email_verify_issued_at == now
    assert reloaded.get_chat(chat.id, user_id=user.id).messages[0].content == "hi"

    with pytest.raises(ConstraintViolation):
        _create(reloaded)
