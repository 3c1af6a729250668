"""
Routes package.
"""

from .auth import router as auth_router
from .bulk import router as bulk_router
from .history import router as history_router
from .reverts import router as reverts_router

__all__ = [
    "auth_router",
    "bulk_router",
    "history_router",
    "reverts_router",
]
