"""Password hashing and verification."""

from enum import Enum

from argon2 import PasswordHasher as Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError


class PasswordCheck(str, Enum):
    """Outcome of comparing a plaintext password with a stored digest."""

    MATCH = "match"
    MISMATCH = "mismatch"
    MALFORMED = "malformed"


class PasswordHasher:
    """One-way argon2id hashing of user passwords.

    Digests are self-describing (algorithm, parameters and salt are encoded in the
    string), so verification needs nothing but the digest itself.
    """

    def __init__(self, hasher: Argon2Hasher | None = None) -> None:
        self._hasher = hasher or Argon2Hasher(type=Type.ID)

    def hash(self, plaintext: str) -> str:
        return self._hasher.hash(plaintext)

    def check(self, plaintext: str, digest: str) -> PasswordCheck:
        """Compare ``plaintext`` against ``digest`` without raising.

        ``MALFORMED`` means the stored digest is corrupt, which callers must treat
        differently from a wrong password even though both deny access.
        """
        try:
            self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return PasswordCheck.MISMATCH
        except (InvalidHash, VerificationError):
            return PasswordCheck.MALFORMED
        return PasswordCheck.MATCH

    def verify(self, plaintext: str, digest: str) -> bool:
        return self.check(plaintext, digest) is PasswordCheck.MATCH

    def needs_rehash(self, digest: str) -> bool:
        """Whether ``digest`` was produced with outdated parameters."""
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return False
