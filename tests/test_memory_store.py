from datetime import datetime, timedelta, timezone

import pytest

from learnquest.storage.errors import ConstraintViolation
from learnquest.storage.memory import MemoryStore
from learnquest.storage.models import UserRole

NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_create_user_rejects_duplicate_email():
    store = MemoryStore()
    store.create_user("a@x.com", "A", "hash")
    with pytest.raises(ConstraintViolation):
        store.create_user("a@x.com", "Other", "hash")
    assert len(store.users) == 1


def test_returned_records_are_copies():
    store = MemoryStore()
    user = store.create_user("a@x.com", "A", "hash")
    user.is_active = True
    assert not store.get_user(user.id).is_active

    fetched = store.get_user_by_email("a@x.com")
    fetched.role = UserRole.ADMIN
    assert store.get_user(user.id).role is UserRole.REGULAR_USER


def test_updates_go_through_store_methods():
    store = MemoryStore()
    user = store.create_user("a@x.com", "A", "hash")
    assert store.set_user_active(user.id, True).is_active
    assert store.update_user_role(user.id, "Instructor").role is UserRole.INSTRUCTOR
    assert store.update_password_hash(user.id, "new").password_hash == "new"
    assert store.set_user_active(999, True) is None


def test_transaction_rolls_back_every_table_on_error():
    store = MemoryStore()
    user = store.create_user("a@x.com", "A", "hash")

    with pytest.raises(RuntimeError):
        with store.transaction():
            store.set_user_active(user.id, True)
            store.add_verification(user.id, "123456", NOW)
            store.add_refresh_token(user.id, "tok", NOW + timedelta(days=7))
            raise RuntimeError("boom")

    assert not store.get_user(user.id).is_active
    assert store.get_latest_verification(user.id) is None
    assert store.get_refresh_token("tok") is None


def test_nested_transaction_joins_the_outer_one():
    store = MemoryStore()
    with pytest.raises(ConstraintViolation):
        with store.transaction():
            store.create_user("a@x.com", "A", "hash")
            with store.transaction():
                store.create_user("a@x.com", "B", "hash")
    assert store.get_user_by_email("a@x.com") is None


def test_latest_verification_is_newest_by_issue_time():
    store = MemoryStore()
    user = store.create_user("a@x.com", "A", "hash")
    store.add_verification(user.id, "111111", NOW)
    store.add_verification(user.id, "222222", NOW + timedelta(minutes=5))
    store.add_verification(user.id, "333333", NOW - timedelta(minutes=5))
    assert store.get_latest_verification(user.id).code == "222222"


def test_verification_requires_existing_user():
    with pytest.raises(ConstraintViolation):
        MemoryStore().add_verification(1, "123456", NOW)


def test_refresh_token_can_be_consumed_once():
    store = MemoryStore()
    user = store.create_user("a@x.com", "A", "hash")
    store.add_refresh_token(user.id, "tok", NOW + timedelta(days=7))

    assert store.consume_refresh_token("tok", NOW).is_revoked
    assert store.consume_refresh_token("tok", NOW) is None
    assert store.get_refresh_token("tok").is_revoked


def test_expired_refresh_token_is_not_consumed():
    store = MemoryStore()
    user = store.create_user("a@x.com", "A", "hash")
    store.add_refresh_token(user.id, "tok", NOW)
    assert store.consume_refresh_token("tok", NOW) is None
    assert not store.get_refresh_token("tok").is_revoked


def test_blacklist_add_is_idempotent_and_purgeable():
    store = MemoryStore()
    first = store.add_blacklist_token("jwt", NOW)
    second = store.add_blacklist_token("jwt", NOW + timedelta(hours=1))
    assert first.id == second.id
    assert store.is_token_blacklisted("jwt")
    assert store.purge_expired_blacklist(NOW - timedelta(seconds=1)) == 0
    assert store.purge_expired_blacklist(NOW) == 1
    assert not store.is_token_blacklisted("jwt")


def test_visits_are_listed_per_user():
    store = MemoryStore()
    a = store.create_user("a@x.com", "A", "hash")
    b = store.create_user("b@x.com", "B", "hash")
    store.record_visit(a.id, NOW)
    store.record_visit(b.id, NOW)
    store.record_visit(a.id, NOW + timedelta(hours=1))
    assert [v.visited_at for v in store.list_visits(a.id)] == [NOW, NOW + timedelta(hours=1)]
