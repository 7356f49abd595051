"""Supabase client initialization and query execution."""

from functools import lru_cache
from typing import Any

from supabase import Client, create_client

from bridge_engine.core.config import get_settings
from bridge_engine.core.logging import get_logger

logger = get_logger(__name__)


class StoreError(RuntimeError):
    """Raised when a task or relationship store call fails."""

    def __init__(self, operation: str, cause: Exception):
        self.operation = operation
        super().__init__(f"{operation} failed: {cause}")


@lru_cache(maxsize=1)
def get_supabase() -> Client:
    """
    Get Supabase client instance (cached singleton).

    Returns:
        Supabase client configured with service role key

    Raises:
        RuntimeError: If client initialization fails
    """
    try:
        settings = get_settings()
        return create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY)
    except Exception as e:
        raise RuntimeError(f"Failed to initialize Supabase client: {e}") from e


def execute(query: Any, operation: str) -> list[dict[str, Any]]:
    """Execute a PostgREST query builder and return its rows.

    Raises:
        StoreError: wrapping whatever the client raised
    """
    try:
        response = query.execute()
    except Exception as e:
        logger.error(f"Store operation '{operation}' failed: {e}")
        raise StoreError(operation, e) from e
    return response.data or []
