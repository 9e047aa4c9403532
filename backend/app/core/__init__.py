"""Core components: settings, database access, background jobs."""

from app.core.config import settings
from app.core.database import Base, SessionLocal, get_db, engine, insert_or_get

__all__ = ["settings", "Base", "SessionLocal", "get_db", "engine", "insert_or_get"]
