"""SQLAlchemy models for the key-value store."""
import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, String, Text, create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from notestore.config import config

Base = declarative_base()


def _utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class DBKeyValue(Base):
    """One key of the browser-style key-value store."""
    __tablename__ = "kv_items"
    key = Column(String(255), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    def __repr__(self) -> str:
        """Return string representation of the item."""
        return f"<KeyValue(key='{self.key}', size={len(self.value or '')})>"


def init_db(db_url: Optional[str] = None):
    """Create the engine and schema for the key-value store.

    Applies SQLite settings for crash resilience:
    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode (good balance of safety vs speed)

    Args:
        db_url: SQLAlchemy URL. Defaults to ``config.get_db_url()``;
            ``sqlite://`` gives a private in-memory database.
    """
    url = db_url or config.get_db_url()
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every checkout sees an empty database
        engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_engine(url, pool_pre_ping=True)

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine=None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine)
