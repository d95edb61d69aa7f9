"""Repository for learning note storage and retrieval."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import delete, func, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from memory_notes.config import config
from memory_notes.exceptions import ErrorCode, StorageError
from memory_notes.models.db_models import (
    DBLearningNote,
    begin_write,
    get_session_factory,
    init_db,
)
from memory_notes.models.schema import (
    LearningNote,
    LearningNoteInput,
    NoteMeta,
    NoteUpdate,
    clean_links,
    clean_tags,
    utc_timestamp,
)
from memory_notes.storage.link_repository import LinkRepository
from memory_notes.storage.search_index import SearchIndex
from memory_notes.storage.tag_repository import TagRepository

logger = logging.getLogger(__name__)


class NoteRepository:
    """Repository for learning notes, their tags, links and search index.

    Every public write method is one transaction: the primary row, tag
    associations, links and the full-text index entry are committed
    together or not at all.
    """

    def __init__(
        self,
        database_path: Optional[Path] = None,
        engine: Optional[Any] = None,
    ):
        """Initialize the repository.

        Args:
            database_path: Path to SQLite database file. If None, uses
                config.database_path. Ignored when engine is provided.
            engine: Pre-configured SQLAlchemy engine. When provided, the
                repository uses this engine directly instead of calling
                init_db(), so one engine can be shared.
        """
        if engine is not None:
            self.engine = engine
        else:
            self.engine = init_db(database_path)
        self.session_factory = get_session_factory(self.engine)

        # Extracted subsystems
        self.tags = TagRepository(self.session_factory)
        self.links = LinkRepository(self.session_factory)
        self.index = SearchIndex(self.engine, self.session_factory)

        logger.info(f"NoteRepository initialized: db_url={self.engine.url}")

    @contextmanager
    def _write_session(self, operation: str) -> Iterator[Session]:
        """Open a session for one atomic write and wrap storage failures.

        The transaction starts with BEGIN IMMEDIATE, so a concurrent writer
        makes this one wait up to busy_timeout rather than fail midway.
        The session rolls back on any exception when it closes. SQLAlchemy
        errors are re-raised as StorageError; everything else propagates
        unchanged.
        """
        with self.session_factory() as session:
            try:
                begin_write(session)
                yield session
            except SQLAlchemyError as e:
                session.rollback()
                logger.error(f"{operation} failed, transaction rolled back: {e}")
                code = (
                    ErrorCode.STORAGE_DELETE_FAILED
                    if operation == "delete"
                    else ErrorCode.STORAGE_WRITE_FAILED
                )
                raise StorageError(
                    f"Failed to {operation} learning note",
                    operation=operation,
                    code=code,
                    original_error=e,
                ) from e

    @staticmethod
    def _to_model(db_note: DBLearningNote) -> LearningNote:
        return LearningNote.model_validate(db_note)

    # =========================================================================
    # Writes
    # =========================================================================

    def add(self, note_input: LearningNoteInput) -> int:
        """Create a note with its tags and links.

        Args:
            note_input: Raw input; validated and trimmed here.

        Returns:
            The new note's id.

        Raises:
            NoteValidationError: If a required field is blank or the
                confidence is unknown. Nothing is written.
            StorageError: If the transaction fails. Nothing is written.
        """
        clean = note_input.normalized()
        now = utc_timestamp()

        with self._write_session("create") as session:
            db_note = DBLearningNote(
                repo_key=clean.repo_key,
                title=clean.title,
                problem=clean.problem,
                solution=clean.solution,
                root_cause=clean.root_cause,
                applies_when=clean.applies_when,
                confidence=clean.confidence.value,
                created_at=now,
                updated_at=now,
            )
            session.add(db_note)
            session.flush()

            self.index.index_note(session, db_note)
            self.tags.attach_all(session, db_note.id, clean.tags)
            self.links.add_all(session, db_note.id, clean.links)

            session.commit()
            note_id = db_note.id

        logger.debug(
            f"Created learning note {note_id} in '{clean.repo_key}' "
            f"({len(clean.tags)} tags, {len(clean.links)} links)"
        )
        return note_id

    def update(self, note_id: int, changes: NoteUpdate) -> Optional[LearningNote]:
        """Apply a partial update and refresh the note's index entry.

        Args:
            note_id: The note to change.
            changes: Fields to change; ``tags`` / ``links`` replace the
                existing sets when not None.

        Returns:
            The updated note, or None if no such note exists.

        Raises:
            NoteValidationError: If a changed required field is blank.
            StorageError: If the transaction fails. Nothing is changed.
        """
        if changes.is_empty():
            return self.get(note_id)
        field_changes = changes.field_changes()

        with self._write_session("update") as session:
            db_note = session.get(DBLearningNote, note_id)
            if db_note is None:
                return None

            for column, value in field_changes.items():
                setattr(db_note, column, value)
            db_note.updated_at = utc_timestamp()
            session.flush()

            self.index.reindex_note(session, db_note)
            if changes.tags is not None:
                self.tags.replace_for_note(session, note_id, clean_tags(changes.tags))
            if changes.links is not None:
                self.links.replace_for_note(session, note_id, clean_links(changes.links))

            session.commit()
            note = self._to_model(db_note)

        logger.debug(f"Updated learning note {note_id}: {sorted(field_changes)}")
        return note

    def verify(self, note_id: int) -> Optional[LearningNote]:
        """Mark a note as re-verified now.

        Sets ``last_verified_at`` (and ``updated_at``) to the current time.
        No searchable field changes, so the index entry stays as is.

        Returns:
            The updated note, or None if no such note exists.
        """
        now = utc_timestamp()
        with self._write_session("verify") as session:
            result = session.execute(
                update(DBLearningNote)
                .where(DBLearningNote.id == note_id)
                .values(last_verified_at=now, updated_at=now)
            )
            if not result.rowcount:
                return None
            session.commit()

        return self.get(note_id)

    def delete(self, note_id: int) -> bool:
        """Delete a note with its tag associations, links and index entry.

        Returns:
            True if the note existed, False otherwise.
        """
        with self._write_session("delete") as session:
            exists = session.scalar(
                select(DBLearningNote.id).where(DBLearningNote.id == note_id)
            )
            if exists is None:
                return False

            self.index.remove_note(session, note_id)
            # also covered by ON DELETE CASCADE when foreign_keys is on
            self.tags.detach_all(session, note_id)
            self.links.delete_for_note(session, note_id)
            session.execute(delete(DBLearningNote).where(DBLearningNote.id == note_id))
            session.commit()

        logger.debug(f"Deleted learning note {note_id}")
        return True

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, note_id: int) -> Optional[LearningNote]:
        """Get a note by ID, or None if it does not exist."""
        with self.session_factory() as session:
            db_note = session.get(DBLearningNote, note_id)
            if db_note is None:
                return None
            return self._to_model(db_note)

    def get_meta(self, note_id: int) -> NoteMeta:
        """Get a note's tags (sorted by name) and links (creation order)."""
        return NoteMeta(
            tags=self.tags.get_names_for_note(note_id),
            links=self.links.get_for_note(note_id),
        )

    def get_by_ids(self, ids: List[int]) -> List[LearningNote]:
        """Get several notes, in the order of ``ids``. Missing ids are skipped."""
        if not ids:
            return []
        with self.session_factory() as session:
            db_notes = session.scalars(
                select(DBLearningNote).where(DBLearningNote.id.in_(ids))
            ).all()
            by_id = {n.id: self._to_model(n) for n in db_notes}
        return [by_id[i] for i in ids if i in by_id]

    def count(self, repo_key: Optional[str] = None) -> int:
        """Count notes, optionally within one repository."""
        with self.session_factory() as session:
            query = select(func.count(DBLearningNote.id))
            if repo_key is not None:
                query = query.where(DBLearningNote.repo_key == repo_key)
            return session.scalar(query) or 0

    def count_by_repo(self) -> Dict[str, int]:
        """Get note counts grouped by repository."""
        with self.session_factory() as session:
            rows = session.execute(
                select(DBLearningNote.repo_key, func.count(DBLearningNote.id))
                .group_by(DBLearningNote.repo_key)
            ).all()
            return {repo_key: count for repo_key, count in rows}

    def list_by_repo(
        self, repo_key: str, limit: Optional[int] = None
    ) -> List[LearningNote]:
        """List a repository's notes, most recently updated first.

        Args:
            repo_key: The repository. Blank keys return [].
            limit: Maximum notes; None or <= 0 uses the configured default.
        """
        if not repo_key or not repo_key.strip():
            return []
        if limit is None or limit <= 0:
            limit = config.default_list_limit

        with self.session_factory() as session:
            db_notes = session.scalars(
                select(DBLearningNote)
                .where(DBLearningNote.repo_key == repo_key)
                .order_by(DBLearningNote.updated_at.desc(), DBLearningNote.id.desc())
                .limit(limit)
            ).all()
            return [self._to_model(n) for n in db_notes]

    def search(
        self,
        query: str,
        repo_key: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LearningNote]:
        """Full-text search (delegates to SearchIndex)."""
        return self.index.search(query, repo_key=repo_key, limit=limit)

    # =========================================================================
    # Tags
    # =========================================================================

    def find_by_tag(
        self, tag_name: str, repo_key: Optional[str] = None
    ) -> List[LearningNote]:
        """Get the notes carrying a tag, most recently updated first."""
        return self.get_by_ids(self.tags.find_note_ids_by_tag(tag_name, repo_key))

    def get_tags_with_counts(self) -> Dict[str, int]:
        return self.tags.get_with_counts()

    def delete_unused_tags(self) -> int:
        return self.tags.delete_unused()

    # =========================================================================
    # Index maintenance
    # =========================================================================

    def rebuild_index(self) -> int:
        """Rebuild the full-text index from the notes table."""
        return self.index.rebuild()

    def check_index_health(self) -> Dict[str, Any]:
        """Check SQLite integrity and index consistency.

        Returns:
            The SearchIndex.check_integrity() report plus ``sqlite_ok``,
            ``healthy`` (both integrity checks pass and the index is in
            sync) and ``issues``, one ``"<ErrorCode name>: <text>"`` line
            per problem found.
        """
        try:
            with self.session_factory() as session:
                result = session.execute(text("PRAGMA integrity_check")).fetchone()
                sqlite_ok = result[0] == "ok"
        except SQLAlchemyError as e:
            raise StorageError(
                "Database integrity check failed",
                operation="health_check",
                code=ErrorCode.STORAGE_READ_FAILED,
                original_error=e,
            ) from e

        report = self.index.check_integrity()
        report["sqlite_ok"] = sqlite_ok
        report["healthy"] = sqlite_ok and report["fts_ok"] and report["in_sync"]

        issues = []
        if not sqlite_ok:
            issues.append(
                f"{ErrorCode.STORAGE_READ_FAILED.name}: SQLite integrity check failed"
            )
        if not report["fts_ok"]:
            issues.append(
                f"{ErrorCode.STORAGE_READ_FAILED.name}: FTS5 integrity check failed"
            )
        if not report["in_sync"]:
            summary = (
                f"{len(report['missing_ids'])} missing, "
                f"{len(report['orphan_ids'])} orphaned, {len(report['stale_ids'])} stale"
            )
            logger.warning(f"Search index out of sync: {summary}")
            issues.append(
                f"{ErrorCode.INDEX_OUT_OF_SYNC.name}: search index out of sync "
                f"({summary}); run rebuild_index"
            )
        report["issues"] = issues
        return report
