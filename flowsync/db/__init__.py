"""Storage: ORM models, engine/session helpers, and the repository."""

from flowsync.db.database import create_engine, create_session_factory, init_db, session_scope
from flowsync.db.repository import Repository

__all__ = ["create_engine", "create_session_factory", "init_db", "session_scope", "Repository"]
