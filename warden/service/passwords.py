from __future__ import annotations

from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from warden.logging import get_logger

logger = get_logger(__name__)


class CredentialVerifier:
    """argon2id password hashing and constant-shape verification.

    ``verify`` never raises; every internal error is a non-match. When no
    stored hash exists the submitted password is checked against a dummy
    hash so unknown accounts cost the same as wrong passwords.
    """

    def __init__(self, *, time_cost: int = 3) -> None:
        self._hasher = PasswordHasher(time_cost=time_cost, type=Type.ID)
        # Computed once so the first unknown-account login is not faster
        self._dummy_hash = self._hasher.hash("warden-timing-equalizer")

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password: str, stored_hash: Optional[str]) -> bool:
        if not stored_hash:
            self._burn(password)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False

    def _burn(self, password: str) -> None:
        try:
            self._hasher.verify(self._dummy_hash, password)
        except VerifyMismatchError:
            pass

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return False
