"""
Authentication module.
"""

from bulk_manager.auth.password import hash_password, verify_password
from bulk_manager.auth.session import SessionManager, SESSION_COOKIE_NAME

__all__ = [
    "hash_password",
    "verify_password",
    "SessionManager",
    "SESSION_COOKIE_NAME",
]
