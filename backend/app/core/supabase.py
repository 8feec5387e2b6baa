import logging

from supabase import create_client, Client

from app.config import get_settings

logger = logging.getLogger(__name__)


class SupabaseClient:
    """
    Supabase client factory.

    Every query runs with the service role key, which bypasses RLS. Ownership
    is enforced in the application: the caller's access token is validated
    with supabase.auth.get_user and every events query filters on user_id.
    """
    _service_instance: Client | None = None

    @classmethod
    def get_service_client(cls) -> Client:
        if cls._service_instance is None:
            settings = get_settings()
            cls._service_instance = create_client(
                settings.SUPABASE_URL,
                settings.SUPABASE_SERVICE_ROLE_KEY
            )
            logger.info("Supabase service client created for %s", settings.SUPABASE_URL)
        return cls._service_instance


def get_supabase_client() -> Client:
    return SupabaseClient.get_service_client()
