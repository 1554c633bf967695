"""Tests for the lockout policy and the store-side failed-login counting."""

from datetime import timedelta

import pytest

from fairshare.service.errors import LOCKED_STATUS, ErrorKind, ServiceError
from fairshare.service.lockout import ACCOUNT_LOCKED, LOCKED_MESSAGE, LockoutPolicy
from fairshare.storage.memory import MemoryStore
from fairshare.storage.models import User


@pytest.fixture
def policy(fake_clock):
    return LockoutPolicy(threshold=5, duration=timedelta(hours=2), clock=fake_clock)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def user(store):
    return store.create_user(User.new("alice", "alice@example.com", "digest"))


def _fail(store, policy, user_id, times=1):
    updated = None
    for _ in range(times):
        updated = store.record_failed_login(user_id, **policy.store_arguments())
    return updated


class TestLockoutPolicy:
    def test_rejects_zero_threshold(self):
        with pytest.raises(ValueError):
            LockoutPolicy(threshold=0)

    def test_open_account_passes(self, policy, user):
        assert policy.is_locked(user) is False
        policy.ensure_open(user)

    def test_locked_account_raises_423(self, policy, user, fake_clock):
        user.security.locked_until = fake_clock.now + timedelta(minutes=1)

        with pytest.raises(ServiceError) as exc:
            policy.ensure_open(user)

        assert exc.value.kind == ErrorKind.FORBIDDEN
        assert exc.value.status_code == LOCKED_STATUS
        assert exc.value.reason == ACCOUNT_LOCKED
        assert exc.value.message == LOCKED_MESSAGE
        assert exc.value.detail["locked_until"] == user.security.locked_until.isoformat()

    def test_lock_ends_at_locked_until(self, policy, user, fake_clock):
        user.security.locked_until = fake_clock.now

        assert policy.is_locked(user) is False

    def test_store_arguments(self, policy, fake_clock):
        assert policy.store_arguments() == {
            "now": fake_clock.now,
            "threshold": 5,
            "lock_duration": timedelta(hours=2),
        }


class TestFailedLoginCounting:
    def test_locks_on_fifth_failure(self, store, policy, user, fake_clock):
        after_four = _fail(store, policy, user.id, times=4)
        assert after_four.security.failed_attempts == 4
        assert after_four.security.locked_until is None

        after_five = _fail(store, policy, user.id)
        assert after_five.security.failed_attempts == 5
        assert after_five.security.locked_until == fake_clock.now + timedelta(hours=2)
        assert policy.is_locked(after_five)

    def test_failures_during_lock_do_not_extend_it(self, store, policy, user, fake_clock):
        locked = _fail(store, policy, user.id, times=5)
        fake_clock.advance(timedelta(minutes=30))

        still_locked = _fail(store, policy, user.id)

        assert still_locked.security.locked_until == locked.security.locked_until
        assert still_locked.security.failed_attempts == 6

    def test_expired_lock_restarts_the_count(self, store, policy, user, fake_clock):
        _fail(store, policy, user.id, times=5)
        fake_clock.advance(timedelta(hours=2, seconds=1))

        after = _fail(store, policy, user.id)

        assert after.security.failed_attempts == 1
        assert after.security.locked_until is None
        assert not policy.is_locked(after)

    def test_reset_clears_counter_and_lock(self, store, policy, user):
        _fail(store, policy, user.id, times=5)

        reset = store.reset_login_attempts(user.id)

        assert reset.security.failed_attempts == 0
        assert reset.security.locked_until is None

    def test_unknown_user(self, store, policy):
        assert store.record_failed_login("missing", **policy.store_arguments()) is None
