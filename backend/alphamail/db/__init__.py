"""Database clients for AlphaMail."""

from alphamail.db.store import ConversationStore
from alphamail.db.supabase import SupabaseClient

__all__ = ["ConversationStore", "SupabaseClient"]
