"""
Engine and session factory.

On SQLite every new connection is switched to WAL and given a busy timeout,
so concurrent writers wait for the lock instead of failing at once.  A
write that still times out surfaces as OperationalError, which the quorum
engine treats as retryable.
"""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from config import DATABASE_URL, STORE_BUSY_TIMEOUT_MS
from db.models import Base

_is_sqlite = DATABASE_URL.startswith("sqlite")

engine = create_engine(
    DATABASE_URL,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
    pool_pre_ping=True,
)

if _is_sqlite:
    @event.listens_for(engine, "connect")
    def _configure_sqlite(dbapi_connection, connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute(f"PRAGMA busy_timeout={int(STORE_BUSY_TIMEOUT_MS)}")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db() -> None:
    """Create all tables if they don't exist."""
    Base.metadata.create_all(bind=engine)


def get_session() -> Session:
    """Per-request session for FastAPI routes; always closed afterwards."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
