"""
auth/passwords.py -- bcrypt password hashing.

Using bcrypt directly rather than a passlib wrapper: passlib's wrap-bug
detection hashes a password longer than 72 bytes, which bcrypt 4.x rejects.
Direct usage is simpler and has no compatibility shim.

bcrypt embeds the salt and the cost factor in its output, so verify() needs
nothing but the stored hash, and checkpw() compares in constant time.

The cost factor is configurable (BCRYPT_ROUNDS). The default of 12 keeps a
single verification well under a second on commodity hardware.

Nothing in this module logs a password or a hash.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import bcrypt

from auth.errors import InvalidPasswordError

# bcrypt ignores everything past the 72nd byte. Rejecting longer input beats
# letting two different passwords share a hash.
MAX_PASSWORD_BYTES = 72


class PasswordHasher:
    """One-way credential hashing with a per-call random salt."""

    def __init__(self, rounds: int = 12) -> None:
        self.rounds = rounds
        # Timing equalization: a hash to burn CPU against when the username
        # does not exist, so that path costs the same as a wrong password.
        self._dummy_hash = self.hash("staffgate_timing_dummy")

    def hash(self, plain: str) -> str:
        """Return a bcrypt hash of the plaintext. Raises InvalidPasswordError if too long."""
        encoded = plain.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            raise InvalidPasswordError(f"Password must not exceed {MAX_PASSWORD_BYTES} bytes.")
        return bcrypt.hashpw(encoded, bcrypt.gensalt(rounds=self.rounds)).decode("utf-8")

    def verify(self, plain: str, hashed: str) -> bool:
        """Return True if the plaintext matches the hash.

        Any malformed stored hash or over-long input verifies as False.
        """
        encoded = plain.encode("utf-8")
        if len(encoded) > MAX_PASSWORD_BYTES:
            return False
        try:
            return bcrypt.checkpw(encoded, hashed.encode("utf-8"))
        except ValueError:
            return False

    def dummy_verify(self, plain: str) -> None:
        """Run a full verification whose result is discarded."""
        self.verify(plain, self._dummy_hash)
