"""Database configuration and session management.

SQLite is the default store. Each new connection is switched to WAL mode
so the scheduler's sync jobs can write while HTTP requests read mirrored
events, and foreign keys are enforced because SQLite leaves them off by
default.

The rate limiter and response cache open their own short sessions on the
same engine, so every SQLite connection must be usable from any thread
(``check_same_thread=False``).
"""

from sqlalchemy import event as sa_event
from sqlalchemy.engine import Engine
from sqlmodel import Session, SQLModel, create_engine

from calsync.core.config import settings


def make_engine(database_url: str, echo: bool = False) -> Engine:
    """Create an engine, applying the SQLite connection pragmas when relevant."""
    is_sqlite = database_url.startswith("sqlite")
    connect_args = {"check_same_thread": False} if is_sqlite else {}
    new_engine = create_engine(database_url, connect_args=connect_args, echo=echo)

    if is_sqlite:
        sa_event.listen(new_engine, "connect", set_sqlite_pragma)
    return new_engine


def set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite pragmas on each new connection.

    These settings are connection-level, not database-level, so they must
    be set each time a new connection is established from the pool.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


engine = make_engine(settings.database_url, echo=settings.debug)


def create_db_and_tables(bind: Engine | None = None):
    """Create all database tables."""
    import calsync.models  # noqa: F401  registers the tables on the metadata

    SQLModel.metadata.create_all(bind or engine)


def get_session():
    """Dependency for getting database session."""
    with Session(engine) as session:
        yield session
