"""
FastAPI Dependencies

The session store and dispatcher are built once in the application
lifespan and kept on app.state; routes receive them through Depends().
"""

from fastapi import Request

from src.core.config import settings
from src.core.exceptions import ConfigurationError
from src.core.storage import IStorage
from src.engines.compositing.client import CompositingClient
from src.engines.compositing.retry import RetryExecutor
from src.engines.compositing.sessions import SessionStore
from src.pipeline.dispatcher import BatchDispatcher


def build_dispatcher(store: SessionStore, storage: IStorage) -> BatchDispatcher:
    """Wire a dispatcher from settings."""
    client = CompositingClient(
        api_url=settings.COMPOSITING_API_URL,
        api_key=settings.COMPOSITING_API_KEY,
        timeout=settings.COMPOSITING_TIMEOUT_SECONDS
    )
    retry = RetryExecutor(
        max_attempts=settings.MAX_RETRIES,
        base_delay=settings.RETRY_BASE_DELAY_SECONDS
    )
    return BatchDispatcher(
        store=store,
        sink=storage,
        client=client,
        retry=retry,
        resize_workers=settings.RESIZE_WORKERS
    )


def require_api_key():
    """Fail fast, before any session exists, when no credential is set."""
    if not settings.COMPOSITING_API_KEY:
        raise ConfigurationError(
            "COMPOSITING_API_KEY not configured",
            setting="COMPOSITING_API_KEY"
        )


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_dispatcher(request: Request) -> BatchDispatcher:
    return request.app.state.dispatcher
