"""SQLAlchemy database models for the NoteVault version store."""
import datetime

from sqlalchemy import (Boolean, Column, DateTime, Index, Integer, LargeBinary,
                        String, Text, create_engine, event)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBVersion(Base):
    """Database model for one recorded snapshot of a note's content."""
    __tablename__ = "versions"
    id = Column(Integer, primary_key=True, autoincrement=True)
    folder_slot = Column(Integer, nullable=False)
    note_slot = Column(Integer, nullable=False)
    seq = Column(Integer, nullable=False)
    content = Column(LargeBinary, nullable=False)
    encrypted = Column(Boolean, default=False, nullable=False)
    message = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.datetime.now(datetime.timezone.utc),
        nullable=False,
    )
    # Set when the owning note was deleted under the "archive" retention policy
    archived_at = Column(DateTime(timezone=True), nullable=True)
    archived_title = Column(String(255), nullable=True)

    __table_args__ = (
        Index("ix_versions_note", "folder_slot", "note_slot"),
    )

    def __repr__(self) -> str:
        """Return string representation of version."""
        return (
            f"<Version(note='{self.folder_slot}:{self.note_slot}', "
            f"seq={self.seq}, size={len(self.content or b'')})>"
        )


def init_db(db_url: str) -> Engine:
    """Create the version store engine with hardened configuration.

    Applies SQLite settings for crash resilience:
    - WAL (Write-Ahead Logging) mode for atomic writes
    - FULL synchronous mode so "recorded" means durable
    - In-memory URLs share one connection (StaticPool) so every session
      sees the same database
    """
    kwargs = {}
    if db_url in ("sqlite://", "sqlite:///:memory:"):
        kwargs = {
            "poolclass": StaticPool,
            "connect_args": {"check_same_thread": False},
        }
    engine = create_engine(db_url, **kwargs)

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=FULL")
        cursor.close()

    Base.metadata.create_all(engine)
    return engine


def get_session_factory(engine: Engine) -> sessionmaker:
    """Create a session factory bound to the engine."""
    return sessionmaker(bind=engine, expire_on_commit=False)
