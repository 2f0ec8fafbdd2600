"""Database connection and session management."""

from worknote_retrieval.database.connection import check_connection, create_engine
from worknote_retrieval.database.models import (
    Base,
    EmbeddingRetryQueueItem,
    Person,
    WorkNote,
    WorkNotePerson,
    WorkNoteVersion,
    utc_now,
)
from worknote_retrieval.database.session import build_session_factory, init_db, session_scope

__all__ = [
    # Models
    "Base",
    "WorkNote",
    "WorkNoteVersion",
    "Person",
    "WorkNotePerson",
    "EmbeddingRetryQueueItem",
    "utc_now",
    # Connection
    "create_engine",
    "check_connection",
    # Session
    "build_session_factory",
    "session_scope",
    "init_db",
]
