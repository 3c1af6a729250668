"""
Admin password hashing (bcrypt via passlib).
"""

from passlib.hash import bcrypt


def hash_password(password: str) -> str:
    """Hash a password for ADMIN_PASSWORD_HASH."""
    return bcrypt.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """
    Check a password against a stored bcrypt hash.

    Returns:
        True if the password matches, False otherwise (including malformed hashes)
    """
    try:
        return bcrypt.verify(password, password_hash)
    except ValueError:
        return False
