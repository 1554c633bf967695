"""Tests for the in-memory credential store and its JSON persistence."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from fairshare.storage.errors import ConstraintViolation
from fairshare.storage.memory import MemoryStore
from fairshare.storage.models import User, UserStatus


def _user(username="alice", email="alice@example.com"):
    return User.new(username, email, "$argon2id$digest")


class TestMemoryStoreUsers:
    def test_lookup_by_every_key(self):
        store = MemoryStore()
        created = store.create_user(_user())

        assert store.get_user(created.id).username == "alice"
        assert store.get_user_by_username("ALICE").id == created.id
        assert store.get_user_by_email(" Alice@Example.com ").id == created.id
        assert store.get_user("missing") is None
        assert store.get_user_by_username("bob") is None

    @pytest.mark.parametrize(
        "username,email,field",
        [("bob", "alice@example.com", "email"), ("alice", "bob@example.com", "username")],
    )
    def test_uniqueness(self, username, email, field):
        store = MemoryStore()
        store.create_user(_user())

        with pytest.raises(ConstraintViolation) as exc:
            store.create_user(_user(username, email))
        assert exc.value.detail == {"field": field}

    def test_returned_users_are_copies(self):
        store = MemoryStore()
        created = store.create_user(_user())
        created.security.failed_attempts = 99
        created.role = "admin"

        fresh = store.get_user(created.id)
        assert fresh.security.failed_attempts == 0
        assert fresh.role == "user"

    def test_update_user(self):
        store = MemoryStore()
        created = store.create_user(_user())
        when = datetime(2024, 5, 1, tzinfo=timezone.utc)

        updated = store.update_user(
            created.id, status="suspended", last_login=when, current_token="tok"
        )

        assert updated.status == UserStatus.SUSPENDED
        assert updated.security.last_login == when
        assert updated.security.current_token == "tok"
        assert store.update_user("missing", role="admin") is None

    def test_counters_cannot_be_patched(self):
        store = MemoryStore()
        created = store.create_user(_user())

        with pytest.raises(ValueError):
            store.update_user(created.id, failed_attempts=0)


class TestMemoryStorePersistence:
    def test_state_survives_restart(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        created = store.create_user(_user())
        now = datetime(2024, 1, 1, tzinfo=timezone.utc)
        store.record_failed_login(
            created.id, now=now, threshold=1, lock_duration=timedelta(hours=2)
        )

        reloaded = MemoryStore(fs_root=str(tmp_path))
        user = reloaded.get_user_by_email("alice@example.com")

        assert user.id == created.id
        assert user.password_hash == "$argon2id$digest"
        assert user.security.failed_attempts == 1
        assert user.security.locked_until == now + timedelta(hours=2)

    def test_state_file_is_json(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))
        store.create_user(_user())

        data = json.loads((tmp_path / "state" / "memory_store.json").read_text())
        assert data["users"][0]["username"] == "alice"

    def test_empty_root_starts_empty(self, tmp_path):
        store = MemoryStore(fs_root=str(tmp_path))

        assert store.users == {}
        assert store.verify_connection() is True
