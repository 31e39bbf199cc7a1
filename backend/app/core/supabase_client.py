"""
Supabase client construction.

Two clients exist:
- the server client, built with the service-role key, used by the pipeline
  and the expiry sweeper for writes and bulk deletes;
- the public client, built with the anon key, for read paths that must
  respect row-level security.

Clients are built once at process start (see app.core.dependencies) and
passed to the stores that need them.
"""

from supabase import create_client, Client
from supabase.lib.client_options import SyncClientOptions

from app.core.config import Settings
from app.core.errors import AuthError
from app.core.logger import logger


def create_server_client(settings: Settings) -> Client:
    """
    Create the privileged Supabase client.

    Raises:
        AuthError: If SUPABASE_URL or SUPABASE_SERVICE_ROLE_KEY is missing
    """
    if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
        raise AuthError(
            "Missing Supabase server credentials. Please set SUPABASE_URL and "
            "SUPABASE_SERVICE_ROLE_KEY environment variables."
        )

    options = SyncClientOptions(auto_refresh_token=False, persist_session=False)
    client = create_client(settings.SUPABASE_URL, settings.SUPABASE_SERVICE_ROLE_KEY, options=options)
    logger.info("Supabase server client initialized")
    return client


def create_public_client(settings: Settings) -> Client:
    """
    Create the restricted Supabase client.

    Raises:
        AuthError: If SUPABASE_URL or SUPABASE_ANON_KEY is missing
    """
    if not settings.SUPABASE_URL or not settings.SUPABASE_ANON_KEY:
        raise AuthError(
            "Missing Supabase credentials. Please set SUPABASE_URL and "
            "SUPABASE_ANON_KEY environment variables."
        )

    client = create_client(settings.SUPABASE_URL, settings.SUPABASE_ANON_KEY)
    logger.info("Supabase public client initialized")
    return client
