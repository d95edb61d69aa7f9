"""SQLAlchemy database models and schema management for the learning-notes store."""
import logging
from pathlib import Path
from typing import Optional

from sqlalchemy import (Column, ForeignKey, Index, Integer, String, Table, Text,
                        create_engine, event, text)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, relationship, sessionmaker
from sqlalchemy.pool import QueuePool

from memory_notes.config import config
from memory_notes.exceptions import ErrorCode, StorageError
from memory_notes.models.schema import Confidence, utc_timestamp

logger = logging.getLogger(__name__)

# Create base class for SQLAlchemy models
Base = declarative_base()

FTS_TABLE = "learning_notes_fts"

# Execution option read by the "begin" listener; write paths ask for
# IMMEDIATE so the write lock is taken up front and busy_timeout applies
BEGIN_MODE_OPTION = "sqlite_begin_mode"
WRITE_EXECUTION_OPTIONS = {BEGIN_MODE_OPTION: "IMMEDIATE"}

# Columns mirrored into the full-text index, in index column order
FTS_COLUMNS = ("title", "problem", "solution", "root_cause", "applies_when", "repo_key")

# Association table for tags and notes
learning_note_tags = Table(
    "learning_note_tags",
    Base.metadata,
    Column(
        "learning_note_id",
        Integer,
        ForeignKey("learning_notes.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "tag_id",
        Integer,
        ForeignKey("tags.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Index("idx_learning_note_tags_tag", "tag_id"),
)


class DBLearningNote(Base):
    """Database model for a learning note."""
    __tablename__ = "learning_notes"
    # Index names match the ones existing databases already carry
    __table_args__ = (
        Index("idx_learning_notes_repo", "repo_key"),
        Index("idx_learning_notes_confidence", "confidence"),
        Index("idx_learning_notes_updated", "updated_at"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True)
    repo_key = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    problem = Column(Text, nullable=False)
    solution = Column(Text, nullable=False)
    root_cause = Column(Text, nullable=True)
    applies_when = Column(Text, nullable=True)
    confidence = Column(
        String(16), nullable=False, default=Confidence.LIKELY.value
    )
    created_at = Column(String(32), nullable=False, default=utc_timestamp)
    updated_at = Column(String(32), nullable=False, default=utc_timestamp)
    last_verified_at = Column(String(32), nullable=True)

    # Relationships
    tags = relationship(
        "DBTag", secondary=learning_note_tags, back_populates="notes",
        passive_deletes=True,
    )
    links = relationship(
        "DBLink",
        back_populates="note",
        order_by="DBLink.id",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<LearningNote(id={self.id}, repo='{self.repo_key}', title='{self.title}')>"


class DBTag(Base):
    """Database model for a tag."""
    __tablename__ = "tags"
    __table_args__ = {"sqlite_autoincrement": True}

    id = Column(Integer, primary_key=True)
    name = Column(Text, unique=True, nullable=False)

    # Relationships
    notes = relationship(
        "DBLearningNote", secondary=learning_note_tags, back_populates="tags"
    )

    def __repr__(self) -> str:
        """Return string representation of tag."""
        return f"<Tag(id={self.id}, name='{self.name}')>"


class DBLink(Base):
    """Database model for an external link owned by a note."""
    __tablename__ = "links"
    __table_args__ = (
        Index("idx_links_note", "learning_note_id"),
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True)
    learning_note_id = Column(
        Integer,
        ForeignKey("learning_notes.id", ondelete="CASCADE"),
        nullable=False,
    )
    label = Column(Text, nullable=False)
    url = Column(Text, nullable=False)

    note = relationship("DBLearningNote", back_populates="links")

    def __repr__(self) -> str:
        """Return string representation of link."""
        return f"<Link(id={self.id}, note={self.learning_note_id}, url='{self.url}')>"


def create_db_engine(database_path: Optional[Path] = None) -> Engine:
    """Create the SQLite engine with hardened per-connection settings.

    - WAL (Write-Ahead Logging) mode for atomic writes
    - NORMAL synchronous mode (good balance of safety vs speed)
    - foreign_keys=ON so link and tag associations cascade on delete
    - busy_timeout so a second connection waits for the writer
    - QueuePool for connection reuse with size limits
    """
    engine = create_engine(
        config.get_db_url(database_path),
        poolclass=QueuePool,
        pool_size=5,           # Base pool size (concurrent reads)
        max_overflow=10,       # Allow up to 15 total connections under load
        pool_timeout=30,       # Wait up to 30s for a connection
        pool_pre_ping=True,    # Validate connections before use
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # transactions are begun explicitly by the "begin" listener below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.execute(f"PRAGMA busy_timeout={int(config.sqlite_busy_timeout_ms)}")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        mode = conn.get_execution_options().get(BEGIN_MODE_OPTION)
        conn.exec_driver_sql(f"BEGIN {mode}" if mode else "BEGIN")

    return engine


def init_db(database_path: Optional[Path] = None) -> Engine:
    """Create every table, index and the full-text index if absent.

    Safe to call on every startup: existing structures and data are left
    untouched. All DDL runs in one transaction, so a failure leaves the
    database as it was.

    Args:
        database_path: Database file. Defaults to ``config.database_path``.
            The parent directory is created when missing.

    Returns:
        The engine shared by all repositories.

    Raises:
        StorageError: If any structure cannot be created.
    """
    db_url = config.get_db_url(database_path)
    try:
        engine = create_db_engine(database_path)
        with engine.begin() as conn:
            Base.metadata.create_all(conn)
            init_fts5(conn)
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize database {db_url}: {e}")
        raise StorageError(
            "Failed to initialize database schema",
            operation="initialize",
            path=db_url,
            code=ErrorCode.STORAGE_CONNECTION_FAILED,
            original_error=e,
        ) from e

    logger.debug(f"Database schema ready at {db_url}")
    return engine


def init_fts5(conn) -> None:
    """Create the FTS5 table that shadows the searchable note fields.

    The table stores its own copy of the text (no external content table)
    and uses the note id as its rowid. It is kept in sync by
    ``memory_notes.storage.search_index.SearchIndex`` inside each write
    transaction, so no triggers are installed.
    """
    columns = ",\n                ".join(FTS_COLUMNS)
    conn.execute(text(f"""
            CREATE VIRTUAL TABLE IF NOT EXISTS {FTS_TABLE} USING fts5(
                {columns}
            )
        """))


def begin_write(session) -> None:
    """Start the session's transaction as a write (``BEGIN IMMEDIATE``).

    Must be called before the session runs any statement. A transaction
    that starts as a reader and later writes fails at once with
    "database is locked" when another connection holds the write lock;
    an immediate one waits up to ``busy_timeout`` instead.
    """
    session.connection(execution_options=WRITE_EXECUTION_OPTIONS)


def get_session_factory(engine: Optional[Engine] = None):
    """Get a session factory for the database."""
    if engine is None:
        engine = init_db()
    return sessionmaker(bind=engine, expire_on_commit=False)
