from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from taskguard.logging import get_logger

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class PasswordManager:
    """argon2id hashing shared by login, recovery, 2FA disable and unlink."""

    def __init__(self, hasher: Optional[PasswordHasher] = None) -> None:
        self._hasher = hasher or PasswordHasher(type=Type.ID)
        # Verified against when the email is unknown so timing matches a real miss
        self._dummy_hash = self._hasher.hash("taskguard-dummy-password")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: Optional[str], password: Optional[str]) -> bool:
        if not password_hash or not password:
            return False
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_invalid")
            return False

    def verify_dummy(self, password: Optional[str]) -> None:
        try:
            self._hasher.verify(self._dummy_hash, password or "")
        except VerifyMismatchError:
            pass

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return False
