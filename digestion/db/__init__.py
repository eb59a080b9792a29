"""
Database client modules for the digestion queue.

Provides clients for:
- Supabase: captures, thoughts, and ideas
- Redis: digestion broker, event streams, and ARQ runtime
"""

from digestion.db.redis import get_redis_client, get_redis_pool, get_redis_settings
from digestion.db.supabase import SupabaseClient, get_supabase_client

__all__ = [
    "SupabaseClient",
    "get_supabase_client",
    "get_redis_client",
    "get_redis_pool",
    "get_redis_settings",
]
