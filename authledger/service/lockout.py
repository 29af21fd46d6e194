from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from authledger.config import RolePolicy
from authledger.storage.models import Principal


@dataclass(frozen=True)
class LockoutDecision:
    locked: bool
    locked_until: Optional[datetime] = None


@dataclass(frozen=True)
class LockoutPolicy:
    """Decides lock state from a principal's failure counters.

    Pure: the counters themselves are mutated by the store, which resets
    the count once ``window`` has elapsed since the first failure so that
    stale failures never contribute to a lock.
    """

    threshold: int = 5
    window: timedelta = timedelta(minutes=15)
    duration: timedelta = timedelta(minutes=15)

    @classmethod
    def from_role_policy(cls, policy: RolePolicy) -> "LockoutPolicy":
        return cls(
            threshold=policy.lockout_threshold,
            window=timedelta(minutes=policy.lockout_window_minutes),
            duration=timedelta(minutes=policy.lockout_duration_minutes),
        )

    def check(self, principal: Principal, now: datetime) -> LockoutDecision:
        if principal.locked_until is not None and principal.locked_until > now:
            return LockoutDecision(locked=True, locked_until=principal.locked_until)
        return LockoutDecision(locked=False)

    def after_failure(self, failure_count: int, now: datetime) -> LockoutDecision:
        if failure_count >= self.threshold:
            return LockoutDecision(locked=True, locked_until=now + self.duration)
        return LockoutDecision(locked=False)
