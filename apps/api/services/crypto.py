"""
Admin password hashing using PBKDF2-HMAC-SHA256.
"""

import base64
import hmac
import os

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


PBKDF2_ITERATIONS = 390000
HASH_SCHEME = "pbkdf2_sha256"


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=iterations,
    )
    return kdf.derive(password.encode("utf-8"))


def hash_password(password: str) -> str:
    """
    Hash a password for storage.

    Args:
        password: Plain text password

    Returns:
        ``scheme$iterations$salt$hash`` with base64 salt and hash
    """
    salt = os.urandom(16)
    derived = _derive(password, salt, PBKDF2_ITERATIONS)
    return "$".join(
        [
            HASH_SCHEME,
            str(PBKDF2_ITERATIONS),
            base64.urlsafe_b64encode(salt).decode(),
            base64.urlsafe_b64encode(derived).decode(),
        ]
    )


def verify_password(password: str, stored_hash: str) -> bool:
    """
    Check a password against a stored hash.

    Args:
        password: Plain text password
        stored_hash: Value produced by ``hash_password``

    Returns:
        True when the password matches
    """
    try:
        scheme, iterations, salt_b64, hash_b64 = stored_hash.split("$")
    except (AttributeError, ValueError):
        return False
    if scheme != HASH_SCHEME:
        return False
    try:
        salt = base64.urlsafe_b64decode(salt_b64.encode())
        expected = base64.urlsafe_b64decode(hash_b64.encode())
        derived = _derive(password, salt, int(iterations))
    except ValueError:
        return False
    return hmac.compare_digest(derived, expected)
