"""Service layer for learning-note operations."""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from memory_notes.config import config
from memory_notes.exceptions import NoteNotFoundError, NoteValidationError
from memory_notes.models.schema import (
    LearningNote,
    LearningNoteInput,
    LinkLike,
    NoteMeta,
    NoteUpdate,
)
from memory_notes.observability import timed_operation, traced
from memory_notes.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


class LearningService:
    """Service for recording and retrieving learning notes."""

    def __init__(
        self,
        repository: Optional[NoteRepository] = None,
        engine: Optional[Any] = None,
        database_path: Optional[Path] = None,
    ):
        """Initialize the service.

        Args:
            repository: Note storage backend. Created with defaults if None.
            engine: Pre-configured SQLAlchemy engine to pass to NoteRepository.
                Only used when repository is None.
            database_path: Database file for a new NoteRepository. Only used
                when neither repository nor engine is given.
        """
        if repository is not None:
            self.repository = repository
        elif engine is not None:
            self.repository = NoteRepository(engine=engine)
        else:
            self.repository = NoteRepository(database_path=database_path)

    # =========================================================================
    # Notes
    # =========================================================================

    def add_note(
        self,
        repo_key: str,
        title: str,
        problem: str,
        solution: str,
        root_cause: Optional[str] = None,
        applies_when: Optional[str] = None,
        confidence: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        links: Optional[Iterable[LinkLike]] = None,
    ) -> int:
        """Record a new learning note.

        Args:
            repo_key: Repository the lesson belongs to.
            title: Short summary.
            problem: What went wrong.
            solution: What fixed it.
            root_cause: Why it happened (optional).
            applies_when: When the lesson is relevant (optional).
            confidence: ``confirmed``, ``likely`` (default) or ``hypothesis``.
            tags: Tag names; blanks and duplicates are ignored.
            links: ``NoteLink`` objects, ``(label, url)`` pairs or
                ``{"label": ..., "url": ...}`` mappings. Links without a
                url are dropped and a blank label becomes ``Link``.

        Returns:
            The new note's id.
        """
        with timed_operation("add_note", repo_key=repo_key) as op:
            note_id = self.repository.add(
                LearningNoteInput(
                    repo_key=repo_key,
                    title=title,
                    problem=problem,
                    solution=solution,
                    root_cause=root_cause,
                    applies_when=applies_when,
                    confidence=confidence,
                    tags=tags,
                    links=links,
                )
            )
            op["note_id"] = note_id
        return note_id

    @traced("get_by_id")
    def get_by_id(self, note_id: int) -> Optional[LearningNote]:
        """Retrieve a note by ID."""
        return self.repository.get(note_id)

    @traced("get_meta")
    def get_meta(self, note_id: int) -> NoteMeta:
        """Get a note's tags and links. Unknown ids give empty lists."""
        return self.repository.get_meta(note_id)

    @traced("delete_by_id")
    def delete_by_id(self, note_id: int) -> bool:
        """Delete a note. Returns False when it did not exist."""
        return self.repository.delete(note_id)

    @traced("count")
    def count(self, repo_key: Optional[str] = None) -> int:
        """Count notes, in total or within one repository."""
        return self.repository.count(repo_key)

    def list_by_repo(
        self, repo_key: str, limit: Optional[int] = None
    ) -> List[LearningNote]:
        """List a repository's notes, most recently updated first.

        Args:
            repo_key: The repository. A blank key yields no notes.
            limit: Maximum notes (default: config.default_list_limit).
        """
        if limit is None:
            limit = config.default_list_limit
        with timed_operation("list_by_repo", repo_key=repo_key, limit=limit) as op:
            notes = self.repository.list_by_repo(repo_key, limit)
            op["result_count"] = len(notes)
        return notes

    def update_note(self, note_id: int, **changes: Any) -> LearningNote:
        """Update fields of an existing note.

        Keyword arguments are the ``NoteUpdate`` fields: any of the note's
        text fields, ``confidence``, ``tags`` or ``links``. ``tags`` and
        ``links`` replace the existing sets. Pass an empty string to clear
        ``root_cause`` or ``applies_when``.

        Returns:
            The updated note.

        Raises:
            NoteValidationError: If a field is unknown or a required field
                is blank.
            NoteNotFoundError: If the note does not exist.
        """
        unknown = sorted(set(changes) - set(NoteUpdate.model_fields))
        if unknown:
            raise NoteValidationError(
                f"Unknown note fields: {', '.join(unknown)}", field=unknown[0]
            )
        update = NoteUpdate(**changes)
        with timed_operation("update_note", note_id=note_id) as op:
            note = self.repository.update(note_id, update)
            if note is None:
                raise NoteNotFoundError(note_id)
            op["fields"] = ",".join(sorted(k for k, v in changes.items() if v is not None))
        return note

    def verify_note(self, note_id: int) -> LearningNote:
        """Mark a note as re-verified now.

        Raises:
            NoteNotFoundError: If the note does not exist.
        """
        with timed_operation("verify_note", note_id=note_id):
            note = self.repository.verify(note_id)
            if note is None:
                raise NoteNotFoundError(note_id)
        return note

    # =========================================================================
    # Search
    # =========================================================================

    def search(
        self,
        query: str,
        repo_key: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> List[LearningNote]:
        """Full-text search over title, problem, solution, root cause,
        applies-when and repository key, best match first.

        The query uses SQLite FTS5 syntax (terms, ``OR``, ``NOT``, quoted
        phrases, ``prefix*``). A blank query returns no results.

        Args:
            query: FTS5 query string.
            repo_key: Restrict results to one repository.
            limit: Maximum results; None or <= 0 uses config.default_search_limit.

        Raises:
            SearchError: If the query is not valid FTS5 syntax.
        """
        with timed_operation("search", query=(query or "")[:50], repo_key=repo_key) as op:
            notes = self.repository.search(query, repo_key=repo_key, limit=limit)
            op["result_count"] = len(notes)
        return notes

    # =========================================================================
    # Tags
    # =========================================================================

    @traced("find_by_tag")
    def find_by_tag(
        self, tag: str, repo_key: Optional[str] = None
    ) -> List[LearningNote]:
        """Get the notes carrying a tag, most recently updated first."""
        return self.repository.find_by_tag(tag, repo_key=repo_key)

    @traced("get_tags_with_counts")
    def get_tags_with_counts(self) -> Dict[str, int]:
        """Get all tags with their usage counts.

        Returns:
            Dictionary mapping tag names to their note counts.
        """
        return self.repository.get_tags_with_counts()

    @traced("delete_unused_tags")
    def delete_unused_tags(self) -> int:
        """Delete tags that are not associated with any notes.

        Returns:
            Number of tags deleted.
        """
        return self.repository.delete_unused_tags()

    # =========================================================================
    # Maintenance
    # =========================================================================

    @traced("rebuild_index")
    def rebuild_index(self) -> int:
        """Rebuild the full-text index.

        Returns:
            Number of notes indexed.
        """
        return self.repository.rebuild_index()

    @traced("check_health")
    def check_health(self) -> Dict[str, Any]:
        """Perform database health check.

        Returns:
            Dict with keys:
                - healthy: bool indicating overall health
                - sqlite_ok: bool for SQLite integrity
                - fts_ok: bool for FTS5 integrity
                - note_count / index_count: rows in each table
                - missing_ids / orphan_ids / stale_ids: index drift
                - in_sync: bool, no drift found
                - notes_by_repo: note counts per repository
        """
        report = self.repository.check_index_health()
        report["notes_by_repo"] = self.repository.count_by_repo()
        return report
