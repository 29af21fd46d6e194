from __future__ import annotations

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from authledger.logging import get_logger

logger = get_logger(__name__)


class PasswordHasher:
    """Salted argon2id hashing; ``verify`` reports mismatches as ``False``."""

    algorithm = "argon2id"

    def __init__(self, **argon2_params) -> None:
        self._hasher = _Argon2Hasher(type=Type.ID, **argon2_params)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str) -> bool:
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("password_hash_unusable", error_type=type(exc).__name__)
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHashError:
            return True
