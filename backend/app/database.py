"""Document store selection and Supabase client."""

from supabase import Client, create_client

from renobid.store import DocumentStore, InMemoryDocumentStore

from .config import Settings, get_settings

_supabase_client: Client | None = None


def get_supabase_client(settings: Settings | None = None) -> Client:
    """Get cached Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if settings is None:
            settings = get_settings()
        if not settings.supabase_url or not settings.supabase_secret_key:
            raise ValueError("SUPABASE_URL and SUPABASE_SECRET_KEY must be set")
        _supabase_client = create_client(settings.supabase_url, settings.supabase_secret_key)
    return _supabase_client


def create_store(settings: Settings) -> DocumentStore:
    """Build the document store named by ``settings.document_store``."""
    if settings.document_store == "supabase":
        from renobid.store.supabase import SupabaseDocumentStore

        return SupabaseDocumentStore(get_supabase_client(settings))
    return InMemoryDocumentStore()
