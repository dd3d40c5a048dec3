"""Password hashing backed by passlib's bcrypt scheme."""

from __future__ import annotations

from passlib.context import CryptContext

from clinicops.core.config import settings

pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.bcrypt_rounds,
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a password against a stored hash; malformed hashes never match."""

    try:
        return pwd_context.verify(plain_password, hashed_password)
    except ValueError:
        return False
