from __future__ import annotations

import secrets
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from deepref_auth.logging import get_logger

logger = get_logger(__name__)


class CredentialHasher:
    """argon2id hashing for passwords and short one-time codes.

    The defaults (time cost 3, 64 MiB) sit above the cost of bcrypt with 12
    rounds on commodity hardware.
    """

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )
        self._dummy_hash: Optional[str] = None

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, stored_hash: Optional[str], secret: str) -> bool:
        if not stored_hash:
            return False
        try:
            return self._hasher.verify(stored_hash, secret)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("credential_hash_unreadable")
            return False

    def verify_dummy(self, secret: str) -> bool:
        """Spend one verification against a throwaway hash and return False.

        Sign-in calls this when there is no stored hash to check, so unknown
        and passwordless accounts cost the same time as a wrong password.
        """
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self.verify(self._dummy_hash, secret)
        return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True
