"""
Database connection and session management.
"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple, Type, TypeVar, Union

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session
from app.core.config import settings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")


def configure_sqlite(engine: Engine) -> None:
    """
    Let SQLAlchemy drive transactions on pysqlite so SAVEPOINTs behave.

    The sqlite3 driver otherwise emits its own BEGIN lazily, which breaks
    nested transactions used by insert_or_get().
    """
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(url: str, echo: bool = False, **kwargs) -> Engine:
    """Create an engine, applying the SQLite fixes when needed."""
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
        new_engine = create_engine(url, echo=echo, **kwargs)
        configure_sqlite(new_engine)
        return new_engine
    return create_engine(url, echo=echo, pool_pre_ping=True, **kwargs)


# Create database engine
engine = build_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,  # Log SQL queries in debug mode
)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


def get_db():
    """
    Dependency that provides a database session.
    Usage in FastAPI routes:
        @app.get("/items")
        def get_items(db: Session = Depends(get_db)):
            ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def insert_or_get(
    db: Session,
    model: Type[ModelT],
    lookup: Dict[str, Any],
    defaults: Optional[Union[Dict[str, Any], Callable[[], Dict[str, Any]]]] = None,
) -> Tuple[ModelT, bool]:
    """
    Fetch the row matching ``lookup`` or insert it, keyed by a unique constraint.

    The insert runs inside a SAVEPOINT. A uniqueness violation means another
    writer got there first: the savepoint is rolled back and the existing row
    is returned instead of raising.

    ``defaults`` may be a callable so that expensive values (categorization,
    for instance) are only computed when a new row is actually inserted.

    Returns:
        (instance, created)
    """
    existing = db.query(model).filter_by(**lookup).first()
    if existing is not None:
        return existing, False

    values = defaults() if callable(defaults) else dict(defaults or {})
    values.update(lookup)

    try:
        with db.begin_nested():
            instance = model(**values)
            db.add(instance)
            db.flush()
        return instance, True
    except IntegrityError:
        logger.info(f"Concurrent insert detected for {model.__name__} {lookup}, using existing row")
        return db.query(model).filter_by(**lookup).one(), False
