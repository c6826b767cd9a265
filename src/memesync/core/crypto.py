"""Password hashing and identifier generation.

This module provides:
- Argon2id password hashing for share and sync passwords
- Short public share identifiers
- Device identifiers
"""

import secrets
import uuid

import argon2
from argon2.exceptions import InvalidHashError, VerificationError

SHORT_ID_ALPHABET = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
SHORT_ID_LENGTH = 8

_hasher = argon2.PasswordHasher()


def hash_password(password: str) -> str:
    """Hash a password with Argon2id.

    Args:
        password: Plaintext password.

    Returns:
        Encoded Argon2 hash (includes salt and parameters).
    """
    return _hasher.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Check a plaintext password against a stored Argon2 hash.

    Args:
        password: Plaintext password supplied by the caller.
        password_hash: Hash produced by hash_password().

    Returns:
        True if the password matches, False otherwise (including malformed hashes).
    """
    try:
        return _hasher.verify(password_hash, password)
    except (VerificationError, InvalidHashError):
        return False


def generate_short_id(length: int = SHORT_ID_LENGTH) -> str:
    """Generate a short random public identifier from a fixed alphabet."""
    return "".join(secrets.choice(SHORT_ID_ALPHABET) for _ in range(length))


def generate_device_id() -> str:
    """Generate a new device identifier (UUID4 string)."""
    return str(uuid.uuid4())
