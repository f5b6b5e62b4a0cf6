"""
Credential Hashing

Passwords are hashed with scrypt and a random per-credential salt. The
encoded form carries its own cost parameters so that changing the
configured cost never invalidates stored credentials.
"""

from abc import ABC, abstractmethod
from typing import FrozenSet
import hashlib
import hmac
import secrets

SCHEME = "scrypt"


class CredentialHasher(ABC):
    """Hashes and verifies plaintext secrets"""

    @abstractmethod
    def hash(self, plaintext: str) -> str:
        """Return an opaque hashed form of ``plaintext``"""
        pass

    @abstractmethod
    def verify(self, plaintext: str, hashed: str) -> bool:
        """Check ``plaintext`` against a value produced by ``hash``"""
        pass


class ScryptCredentialHasher(CredentialHasher):
    """scrypt hasher producing ``scrypt$n$r$p$salt$hash`` strings"""

    def __init__(self, n: int = 16384, r: int = 8, p: int = 1, salt_bytes: int = 16):
        self.n = n
        self.r = r
        self.p = p
        self.salt_bytes = salt_bytes

    def _derive(self, plaintext: str, salt: bytes, n: int, r: int, p: int) -> bytes:
        # 128 * r * (n + p + 2) bytes are needed; leave headroom over the default cap
        maxmem = 256 * r * (n + p + 2)
        return hashlib.scrypt(plaintext.encode(), salt=salt, n=n, r=r, p=p, maxmem=maxmem)

    def hash(self, plaintext: str) -> str:
        salt = secrets.token_bytes(self.salt_bytes)
        digest = self._derive(plaintext, salt, self.n, self.r, self.p)
        return f"{SCHEME}${self.n}${self.r}${self.p}${salt.hex()}${digest.hex()}"

    def verify(self, plaintext: str, hashed: str) -> bool:
        try:
            scheme, n, r, p, salt_hex, digest_hex = hashed.split("$")
            if scheme != SCHEME:
                return False
            salt = bytes.fromhex(salt_hex)
            expected = bytes.fromhex(digest_hex)
            actual = self._derive(plaintext, salt, int(n), int(r), int(p))
        except ValueError:
            # Malformed or foreign hash
            return False
        return hmac.compare_digest(actual, expected)


def authorities(authority: str = "User") -> FrozenSet[str]:
    """The fixed authority set granted to every account holder"""
    return frozenset({authority})
