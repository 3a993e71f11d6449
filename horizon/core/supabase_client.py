# horizon/core/supabase_client.py
import logging

from supabase import AsyncClient, acreate_client

from horizon.core.config import Settings

logger = logging.getLogger(__name__)


async def create_supabase_client(settings: Settings) -> AsyncClient | None:
    """
    Create the async Supabase client with the anon/public key.

    The async client is required for realtime channels (push updates).
    Row level security still applies; the client authenticates as an
    anonymous user before its first write.

    Returns:
        The client, or None when SUPABASE_URL / SUPABASE_KEY are not set.
        A None client leaves the remote sync client uninitialized, so every
        remote operation becomes a no-op.
    """
    if not settings.supabase_configured:
        logger.info("Supabase not configured; remote sync disabled")
        return None
    return await acreate_client(settings.SUPABASE_URL, settings.SUPABASE_KEY)
