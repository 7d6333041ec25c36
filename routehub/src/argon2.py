from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError

passwordHasher = PasswordHasher(encoding="utf-8")


def makePassword(password: str) -> str:
    """Return the Argon2 hash of a plain-text password."""
    return passwordHasher.hash(password)


def checkPassword(password: str, passwordHash: str) -> bool:
    """
    Verify a plain-text password against a stored Argon2 hash.

    A stored value that is not a valid Argon2 hash never matches.
    """
    try:
        return passwordHasher.verify(passwordHash, password)
    except (VerifyMismatchError, InvalidHashError):
        return False
