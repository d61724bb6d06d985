"""Database models and storage backends."""

from typing import Optional

from ..config.settings import settings
from .models import (
    User,
    Business,
    BuyerProfile,
    Match,
    Deal,
    Document,
    Message,
    AiInsight,
    UserType,
    MatchAction,
    MatchStatus,
    DealStage,
    DocumentType,
    AnalysisStatus,
    MessageType,
    EntityType,
    InsightType,
)
from .database import get_session, init_db, close_db
from .storage import BaseStorage, RecordNotFoundError
from .memory_storage import MemoryStorage
from .database_storage import DatabaseStorage

_storage: Optional[BaseStorage] = None


def get_storage() -> BaseStorage:
    """Process-wide storage selected by settings.storage_backend.

    Also used as the FastAPI dependency, so tests can override it.
    """
    global _storage
    if _storage is None:
        if settings.storage_backend == "database":
            _storage = DatabaseStorage()
        else:
            _storage = MemoryStorage()
    return _storage


__all__ = [
    "User",
    "Business",
    "BuyerProfile",
    "Match",
    "Deal",
    "Document",
    "Message",
    "AiInsight",
    "UserType",
    "MatchAction",
    "MatchStatus",
    "DealStage",
    "DocumentType",
    "AnalysisStatus",
    "MessageType",
    "EntityType",
    "InsightType",
    "get_session",
    "init_db",
    "close_db",
    "BaseStorage",
    "RecordNotFoundError",
    "MemoryStorage",
    "DatabaseStorage",
    "get_storage",
]
