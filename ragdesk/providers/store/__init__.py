"""SQLite persistence (aiosqlite) for everything except vectors."""

from ragdesk.providers.store.account_repository import AccountRepository
from ragdesk.providers.store.conversation_repository import ConversationRepository
from ragdesk.providers.store.database import Database
from ragdesk.providers.store.source_repository import SourceRepository

__all__ = [
    "AccountRepository",
    "ConversationRepository",
    "Database",
    "SourceRepository",
]
