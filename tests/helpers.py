"""Shared fakes for engine-level tests."""

from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

from authledger.config import Settings
from authledger.service.auth import AuthEngine
from authledger.service.ledger import SessionLedger
from authledger.service.passwords import PasswordHasher
from authledger.service.rate_limit import RateLimiter
from authledger.service.tokens import SignerConfig, TokenSigner
from authledger.storage.memory import MemoryStore

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class CountingHasher(PasswordHasher):
    """Cheap argon2 parameters plus a count of verify calls."""

    def __init__(self, **params):
        params.setdefault("time_cost", 1)
        params.setdefault("memory_cost", 8)
        params.setdefault("parallelism", 1)
        super().__init__(**params)
        self.verify_calls = 0

    def verify(self, plaintext: str, digest: str) -> bool:
        self.verify_calls += 1
        return super().verify(plaintext, digest)


class RecordingNotifier:
    def __init__(self):
        self.sent: List[Tuple[str, str, str]] = []

    def send(self, email: str, purpose: str, token: str) -> bool:
        self.sent.append((email, purpose, token))
        return True

    def last(self, purpose: str) -> str:
        for email, sent_purpose, token in reversed(self.sent):
            if sent_purpose == purpose:
                return token
        raise AssertionError(f"no {purpose} notification sent")


class FailingNotifier:
    def send(self, email: str, purpose: str, token: str) -> bool:
        raise ConnectionError("smtp down")


def make_settings(**overrides) -> Settings:
    values = {"jwt_secret": TEST_SECRET}
    values.update(overrides)
    return Settings(**values)


def make_signer(settings: Settings) -> TokenSigner:
    return TokenSigner(
        SignerConfig(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway_seconds=settings.jwt_clock_skew_seconds,
        )
    )


def make_engine(
    *,
    settings: Optional[Settings] = None,
    store: Optional[MemoryStore] = None,
    clock: Optional[FakeClock] = None,
    hasher: Optional[PasswordHasher] = None,
    notifier=None,
    limiter: Optional[RateLimiter] = None,
) -> AuthEngine:
    settings = settings or make_settings()
    store = store or MemoryStore()
    clock = clock or FakeClock()
    signer = make_signer(settings)
    ledger = SessionLedger(store, signer, clock=clock)
    return AuthEngine(
        store,
        settings,
        signer,
        ledger,
        hasher=hasher or CountingHasher(),
        notifier=notifier if notifier is not None else RecordingNotifier(),
        reset_limiter=limiter if limiter is not None else RateLimiter(clock=clock),
        clock=clock,
    )
