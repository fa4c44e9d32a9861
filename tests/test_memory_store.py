from datetime import timedelta

import pytest

from riskgate.storage.errors import ConstraintViolation
from riskgate.storage.memory import MemoryStore
from riskgate.storage.models import ResetStatus, Session, utcnow


def _user(store, username="alice"):
    return store.create_user(
        username, f"{username}@example.com", "hash", full_name="Alice Example"
    )


def _session(user_id, token="a" * 64):
    now = utcnow()
    return Session.new(
        user_id,
        access_token=token,
        access_token_expires_at=now + timedelta(minutes=15),
        refresh_token_hash="r" + token,
        expires_at=now + timedelta(days=7),
    )


def test_usernames_and_emails_are_unique_case_insensitively():
    store = MemoryStore()
    _user(store)
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("ALICE", "other@example.com", "hash")
    assert excinfo.value.field == "username"
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_user("other", "Alice@Example.com", "hash")
    assert excinfo.value.field == "email"


def test_upsert_session_keeps_one_row_per_user():
    store = MemoryStore()
    user = _user(store)
    first = store.upsert_session(_session(user.id, "a" * 64))
    second = store.upsert_session(_session(user.id, "b" * 64))

    assert second.id == first.id
    assert second.created_at == first.created_at
    assert len(store.sessions) == 1
    assert store.get_session_by_access_token("a" * 64) is None
    assert store.get_session_by_access_token("b" * 64).user_id == user.id
    assert store.get_session_by_refresh_hash("r" + "b" * 64).id == first.id


def test_rotate_session_only_replaces_the_expected_token():
    store = MemoryStore()
    user = _user(store)
    original = store.upsert_session(_session(user.id, "a" * 64))

    assert store.rotate_session(user.id, "stale-hash", _session(user.id, "b" * 64)) is None
    rotated = store.rotate_session(user.id, "r" + "a" * 64, _session(user.id, "c" * 64))

    assert rotated.id == original.id
    assert rotated.created_at == original.created_at
    assert store.get_session_by_refresh_hash("r" + "a" * 64) is None
    assert store.get_session_by_access_token("c" * 64).id == original.id
    assert store.rotate_session(user.id, "r" + "a" * 64, _session(user.id, "d" * 64)) is None


def test_upsert_session_requires_existing_user():
    store = MemoryStore()
    with pytest.raises(ConstraintViolation):
        store.upsert_session(_session("ghost"))


def test_reads_are_copies():
    store = MemoryStore()
    user = _user(store)
    user.is_active = True
    assert store.get_user(user.id).is_active is False


def test_transaction_rolls_back_on_error():
    store = MemoryStore()
    user = _user(store)
    store.upsert_session(_session(user.id))

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.set_password(
                user.id, "new-hash", must_change_password=True, password_changed_at=utcnow()
            )
            store.delete_session(user.id)
            raise RuntimeError("boom")

    assert store.get_user(user.id).password_hash == "hash"
    assert store.get_session_for_user(user.id) is not None


def test_mark_reset_completed_only_once():
    store = MemoryStore()
    user = _user(store)
    admin = _user(store, "root")
    request = store.create_reset_request("alice", user.id)

    assert store.mark_reset_completed(request.id, admin.id, utcnow())
    assert not store.mark_reset_completed(request.id, admin.id, utcnow())
    stored = store.get_reset_request(request.id)
    assert stored.status is ResetStatus.COMPLETED
    assert stored.user.username == "alice"
    assert stored.validated_by.username == "root"
