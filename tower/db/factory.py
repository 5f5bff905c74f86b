"""Process-wide order store selection."""

import logging
from typing import Optional

from tower.config import Settings, settings as default_settings

from .memory_store import InMemoryOrderStore
from .store import ActivityLogger, OrderStore
from .supabase_client import close_supabase_client, get_supabase_client
from .supabase_store import SupabaseActivityLogger, SupabaseOrderStore

logger = logging.getLogger(__name__)

_order_store: Optional[OrderStore] = None
_activity_logger: Optional[ActivityLogger] = None


def get_order_store(settings: Optional[Settings] = None) -> OrderStore:
    """Supabase store when configured, otherwise a shared in-memory store."""
    global _order_store, _activity_logger
    if _order_store is None:
        settings = settings or default_settings
        if settings.has_supabase:
            _order_store = SupabaseOrderStore(get_supabase_client())
            _activity_logger = SupabaseActivityLogger(get_supabase_client(), settings.network_name)
        else:
            logger.warning("Supabase is not configured, using the in-memory order store")
            _order_store = InMemoryOrderStore(network_name=settings.network_name)
            _activity_logger = _order_store
    return _order_store


def get_activity_logger(settings: Optional[Settings] = None) -> ActivityLogger:
    get_order_store(settings)
    return _activity_logger


async def close_stores() -> None:
    """Release store connections and forget the cached store."""
    await close_supabase_client()
    reset_stores()


def reset_stores() -> None:
    """Forget the cached store (tests)."""
    global _order_store, _activity_logger
    _order_store = None
    _activity_logger = None
