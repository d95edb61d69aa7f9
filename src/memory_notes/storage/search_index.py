"""FTS5 full-text search index for learning notes.

Owns every write to ``learning_notes_fts``. The note repository calls the
``index_note`` / ``reindex_note`` / ``remove_note`` steps with its own open
session, so an index change always commits or rolls back together with the
primary-table change that caused it.
"""
import logging
import sqlite3
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import DatabaseError as SQLAlchemyDatabaseError
from sqlalchemy.exc import OperationalError as SQLAlchemyOperationalError
from sqlalchemy.orm import Session

from memory_notes.config import config
from memory_notes.exceptions import ErrorCode, SearchError, StorageError
from memory_notes.models.db_models import (
    FTS_COLUMNS,
    FTS_TABLE,
    DBLearningNote,
    begin_write,
)
from memory_notes.models.schema import LearningNote

logger = logging.getLogger(__name__)

_NOTE_COLUMNS = (
    "n.id, n.repo_key, n.title, n.problem, n.solution, n.root_cause, "
    "n.applies_when, n.confidence, n.created_at, n.updated_at, n.last_verified_at"
)

_INSERT_SQL = text(
    f"INSERT INTO {FTS_TABLE}(rowid, {', '.join(FTS_COLUMNS)}) "
    f"VALUES (:rowid, {', '.join(':' + c for c in FTS_COLUMNS)})"
)
_DELETE_SQL = text(f"DELETE FROM {FTS_TABLE} WHERE rowid = :rowid")


class SearchIndex:
    """Shadow full-text index over the searchable fields of each note.

    Args:
        engine: SQLAlchemy engine used for database access.
        session_factory: Callable returning a context-manager session.
    """

    def __init__(
        self,
        engine: Any,
        session_factory: Callable,
    ) -> None:
        self.engine = engine
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Synchronization steps (caller owns the transaction)
    # ------------------------------------------------------------------

    @staticmethod
    def _entry_params(db_note: DBLearningNote) -> Dict[str, Any]:
        params = {column: getattr(db_note, column) for column in FTS_COLUMNS}
        params["rowid"] = db_note.id
        return params

    def index_note(self, session: Session, db_note: DBLearningNote) -> None:
        """Insert the index entry for a freshly flushed note."""
        session.execute(_INSERT_SQL, self._entry_params(db_note))

    def reindex_note(self, session: Session, db_note: DBLearningNote) -> None:
        """Replace a note's index entry with its current field values.

        FTS5 has no in-place column update, so this is a delete followed by
        an insert under the same rowid.
        """
        session.execute(_DELETE_SQL, {"rowid": db_note.id})
        session.execute(_INSERT_SQL, self._entry_params(db_note))

    def remove_note(self, session: Session, note_id: int) -> None:
        """Delete a note's index entry."""
        session.execute(_DELETE_SQL, {"rowid": note_id})

    # ------------------------------------------------------------------
    # Public query API
    # ------------------------------------------------------------------

    def search(
        self,
        query: str,
        repo_key: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LearningNote]:
        """Full-text search ranked by BM25 (lower rank is better).

        The query is handed to FTS5 ``MATCH`` unchanged, so ``OR``,
        ``NEAR(...)``, quoted phrases and prefix queries all work.

        Args:
            query: FTS5 query. Blank queries return [] without touching
                the database.
            repo_key: Only return notes of this repository.
            limit: Maximum results; None or <= 0 uses
                ``config.default_search_limit``.

        Returns:
            Notes read from the primary table, best match first.

        Raises:
            SearchError: If the query is not valid FTS5 syntax or the
                index cannot be read.
        """
        if not query or not query.strip():
            return []
        if limit is None or limit <= 0:
            limit = config.default_search_limit

        params: Dict[str, Any] = {"query": query, "limit": limit}
        scope = ""
        if repo_key is not None:
            scope = "AND n.repo_key = :repo_key"
            params["repo_key"] = repo_key

        sql = text(f"""
            SELECT {_NOTE_COLUMNS}
            FROM {FTS_TABLE} f
            JOIN learning_notes n ON n.id = f.rowid
            WHERE {FTS_TABLE} MATCH :query
              {scope}
            ORDER BY bm25({FTS_TABLE}) ASC
            LIMIT :limit
        """)

        with self._session_factory() as session:
            try:
                rows = session.execute(sql, params).mappings().all()
            except (sqlite3.OperationalError, SQLAlchemyOperationalError) as e:
                if not self._is_query_error(e):
                    raise SearchError(
                        f"Full-text search failed: {e}",
                        query=query,
                        code=ErrorCode.SEARCH_FAILED,
                    ) from e
                logger.warning(f"FTS5 query rejected for '{query}': {e}")
                raise SearchError(
                    f"Invalid search query: {e}",
                    query=query,
                    code=ErrorCode.SEARCH_INVALID_QUERY,
                ) from e
            except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
                logger.error(f"FTS5 database error for '{query}': {e}")
                raise SearchError(
                    f"Full-text search failed: {e}",
                    query=query,
                    code=ErrorCode.SEARCH_FAILED,
                ) from e

        results = [LearningNote.model_validate(dict(row)) for row in rows]
        logger.debug(f"FTS5 returned {len(results)} results for query '{query}'")
        return results

    @staticmethod
    def _is_query_error(error: Exception) -> bool:
        """Whether SQLite rejected the MATCH expression itself."""
        message = str(error).lower()
        return any(
            marker in message
            for marker in ("fts5", "syntax error", "no such column", "unterminated")
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def rebuild(self) -> int:
        """Rebuild the index from the notes table in one transaction.

        Returns:
            Number of index entries after the rebuild.
        """
        columns = ", ".join(FTS_COLUMNS)
        try:
            with self._session_factory() as session:
                begin_write(session)
                session.execute(text(f"DELETE FROM {FTS_TABLE}"))
                session.execute(text(f"""
                    INSERT INTO {FTS_TABLE}(rowid, {columns})
                    SELECT id, {columns} FROM learning_notes
                """))
                count = session.execute(
                    text(f"SELECT COUNT(*) FROM {FTS_TABLE}")
                ).scalar()
                session.commit()
        except SQLAlchemyDatabaseError as e:
            raise StorageError(
                "Failed to rebuild search index",
                operation="rebuild_index",
                code=ErrorCode.STORAGE_WRITE_FAILED,
                original_error=e,
            ) from e

        logger.info(f"Search index rebuilt with {count} notes")
        return count or 0

    def check_integrity(self) -> Dict[str, Any]:
        """Compare the index against the notes table.

        Returns:
            Dict with keys:
                - fts_ok: FTS5 internal integrity check passed
                - note_count / index_count: row counts
                - missing_ids: notes without an index entry
                - orphan_ids: index entries without a note
                - stale_ids: entries whose text differs from the note
                - in_sync: no missing, orphan or stale entries
        """
        columns = ", ".join(FTS_COLUMNS)
        with self._session_factory() as session:
            try:
                session.execute(
                    text(f"INSERT INTO {FTS_TABLE}({FTS_TABLE}) VALUES('integrity-check')")
                )
                fts_ok = True
            except (sqlite3.DatabaseError, SQLAlchemyDatabaseError) as e:
                logger.warning(f"FTS5 integrity check failed: {e}")
                fts_ok = False

            notes = {
                row[0]: tuple(row[1:])
                for row in session.execute(
                    text(f"SELECT id, {columns} FROM learning_notes")
                )
            }
            entries = {
                row[0]: tuple(row[1:])
                for row in session.execute(
                    text(f"SELECT rowid, {columns} FROM {FTS_TABLE}")
                )
            }

        missing_ids = sorted(set(notes) - set(entries))
        orphan_ids = sorted(set(entries) - set(notes))
        stale_ids = sorted(
            note_id
            for note_id in set(notes) & set(entries)
            if notes[note_id] != entries[note_id]
        )

        return {
            "fts_ok": fts_ok,
            "note_count": len(notes),
            "index_count": len(entries),
            "missing_ids": missing_ids,
            "orphan_ids": orphan_ids,
            "stale_ids": stale_ids,
            "in_sync": not (missing_ids or orphan_ids or stale_ids),
        }
