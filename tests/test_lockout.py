from datetime import timedelta

from authledger.config import RolePolicy
from authledger.service.lockout import LockoutPolicy
from authledger.storage.models import Principal
from helpers import FakeClock


def _principal(**fields):
    return Principal(id="p1", role="member", email="a@example.com", password_hash="x", **fields)


def test_from_role_policy_converts_minutes():
    policy = LockoutPolicy.from_role_policy(
        RolePolicy(lockout_threshold=3, lockout_window_minutes=10, lockout_duration_minutes=20)
    )
    assert policy.threshold == 3
    assert policy.window == timedelta(minutes=10)
    assert policy.duration == timedelta(minutes=20)


def test_check_reports_future_lock_only():
    clock = FakeClock()
    policy = LockoutPolicy()

    locked = policy.check(_principal(locked_until=clock.now + timedelta(minutes=1)), clock.now)
    assert locked.locked is True

    expired = policy.check(_principal(locked_until=clock.now - timedelta(seconds=1)), clock.now)
    assert expired.locked is False
    assert policy.check(_principal(), clock.now).locked is False


def test_after_failure_locks_at_threshold():
    clock = FakeClock()
    policy = LockoutPolicy(threshold=5)

    assert policy.after_failure(4, clock.now).locked is False
    decision = policy.after_failure(5, clock.now)
    assert decision.locked is True
    assert decision.locked_until == clock.now + timedelta(minutes=15)
