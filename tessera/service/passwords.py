from __future__ import annotations

import hashlib
import hmac
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from tessera.logging import get_logger

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"


class SecretHasher:
    """Salted argon2id hashing for passwords and one-time passcodes.

    ``token_digest`` is the deterministic counterpart used where a value must
    be looked up by its hash (refresh credentials, reset tokens).
    """

    def __init__(self, *, time_cost: Optional[int] = None, memory_cost: Optional[int] = None):
        kwargs = {"type": Type.ID}
        if time_cost is not None:
            kwargs["time_cost"] = time_cost
        if memory_cost is not None:
            kwargs["memory_cost"] = memory_cost
        self._hasher = PasswordHasher(**kwargs)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._hasher.hash(password), PASSWORD_ALGO

    def verify_password(self, stored_hash: str, algo: str, password: str) -> bool:
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._hasher.verify(stored_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("password_hash_unusable", error_type=type(exc).__name__)
            return False

    def hash_otp(self, otp: str) -> str:
        return self._hasher.hash(otp)

    def verify_otp(self, stored_hash: str, otp: str) -> bool:
        try:
            return self._hasher.verify(stored_hash, otp)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError) as exc:
            logger.warning("otp_hash_unusable", error_type=type(exc).__name__)
            return False


def token_digest(token: str) -> str:
    """SHA-256 hex digest of a high-entropy bearer value."""
    return hashlib.sha256(token.encode()).hexdigest()


def digests_match(stored: str, presented: str) -> bool:
    return hmac.compare_digest(stored.encode(), presented.encode())
