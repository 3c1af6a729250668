"""
FastAPI dependency injection.
Database, history, Shopify client, bulk service and session management.
"""

from typing import Optional
from fastapi import Request, HTTPException

from .config import settings
from .db import SQLiteDatabase, HistoryStore
from .auth import SessionManager
from .shopify import ShopifyClient
from .processor import BatchOrchestrator, BulkService


# Global instances (initialized on startup)
_db: Optional[SQLiteDatabase] = None
_client: Optional[ShopifyClient] = None
_service: Optional[BulkService] = None
_session_manager: Optional[SessionManager] = None


async def init_dependencies():
    """Initialize global dependencies. Called on app startup."""
    global _db, _client, _service, _session_manager

    _db = SQLiteDatabase(settings.database_path)
    await _db.initialize()

    history = HistoryStore(_db, max_entries=settings.history_max_entries)
    orchestrator = BatchOrchestrator(
        group_size=settings.batch_group_size,
        window_delay_ms=settings.batch_window_delay_ms,
    )

    _client = ShopifyClient(
        settings.shopify_domain,
        settings.shopify_access_token,
        api_version=settings.shopify_api_version,
    )
    _service = BulkService(_client, _db, history, orchestrator)

    _session_manager = SessionManager(settings.session_secret)


async def close_dependencies():
    """Close global dependencies. Called on app shutdown."""
    global _db, _client
    if _client:
        await _client.close()
    if _db:
        await _db.close()


def get_service() -> BulkService:
    """Get the bulk service instance."""
    if _service is None:
        raise RuntimeError("Bulk service not initialized")
    return _service


def get_session_manager() -> SessionManager:
    """Get the session manager instance."""
    if _session_manager is None:
        raise RuntimeError("Session manager not initialized")
    return _session_manager


async def require_auth(request: Request):
    """Dependency that requires a valid session (401 otherwise)."""
    session_manager = get_session_manager()

    if not session_manager.is_authenticated(request):
        raise HTTPException(status_code=401, detail="Not authenticated")


def check_auth(request: Request) -> bool:
    """Check if user is authenticated (without raising exception)."""
    session_manager = get_session_manager()
    return session_manager.is_authenticated(request)
