"""Repository for tag storage and retrieval."""
import logging
from typing import Dict, Iterable, List, Optional

from sqlalchemy import delete, func, select, text
from sqlalchemy.orm import Session

from memory_notes.models.db_models import (
    DBLearningNote,
    DBTag,
    begin_write,
    learning_note_tags,
)

logger = logging.getLogger(__name__)


class TagRepository:
    """Repository for managing tags and their note associations.

    Methods that take a ``session`` run inside the caller's transaction
    and never commit; the others open and close their own session.
    """

    def __init__(self, session_factory):
        """Initialize the tag repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    def get_or_create_id(self, session: Session, tag_name: str) -> int:
        """Atomically get or create a tag inside the caller's transaction.

        Uses INSERT OR IGNORE followed by SELECT so two writers creating
        the same name never collide on the unique constraint.

        Args:
            session: The SQLAlchemy session.
            tag_name: The trimmed name of the tag.

        Returns:
            The tag id (either existing or newly created).
        """
        session.execute(
            text("INSERT OR IGNORE INTO tags (name) VALUES (:name)"), {"name": tag_name}
        )
        # Now SELECT - the tag definitely exists (either we created it or it existed)
        return session.scalar(select(DBTag.id).where(DBTag.name == tag_name))

    def attach(self, session: Session, note_id: int, tag_name: str) -> None:
        """Associate a tag with a note, creating the tag if needed.

        Attaching the same tag twice is a no-op.
        """
        tag_id = self.get_or_create_id(session, tag_name)
        session.execute(
            text(
                "INSERT OR IGNORE INTO learning_note_tags (learning_note_id, tag_id) "
                "VALUES (:note_id, :tag_id)"
            ),
            {"note_id": note_id, "tag_id": tag_id},
        )

    def attach_all(self, session: Session, note_id: int, tag_names: Iterable[str]) -> None:
        for tag_name in tag_names:
            self.attach(session, note_id, tag_name)

    def replace_for_note(
        self, session: Session, note_id: int, tag_names: Iterable[str]
    ) -> None:
        """Replace every tag association of a note."""
        session.execute(
            delete(learning_note_tags).where(
                learning_note_tags.c.learning_note_id == note_id
            )
        )
        self.attach_all(session, note_id, tag_names)

    def detach_all(self, session: Session, note_id: int) -> int:
        """Remove every tag association of a note. Returns rows removed."""
        result = session.execute(
            delete(learning_note_tags).where(
                learning_note_tags.c.learning_note_id == note_id
            )
        )
        return result.rowcount or 0

    def get_names_for_note(self, note_id: int) -> List[str]:
        """Get the tag names of a note, sorted by name.

        Args:
            note_id: The note ID.

        Returns:
            List of tag names (empty for unknown notes).
        """
        with self.session_factory() as session:
            result = session.execute(
                select(DBTag.name)
                .select_from(DBTag)
                .join(learning_note_tags, DBTag.id == learning_note_tags.c.tag_id)
                .where(learning_note_tags.c.learning_note_id == note_id)
                .order_by(DBTag.name.asc())
            ).all()

            return [row[0] for row in result]

    def get_with_counts(self) -> Dict[str, int]:
        """Get all tags with their usage counts.

        Returns:
            Dictionary mapping tag names to their note counts.
        """
        with self.session_factory() as session:
            result = session.execute(
                select(DBTag.name, func.count(learning_note_tags.c.learning_note_id))
                .select_from(DBTag)
                .outerjoin(learning_note_tags, DBTag.id == learning_note_tags.c.tag_id)
                .group_by(DBTag.name)
                .order_by(DBTag.name.asc())
            ).all()

            return {name: count for name, count in result}

    def find_note_ids_by_tag(
        self, tag_name: str, repo_key: Optional[str] = None
    ) -> List[int]:
        """Find the IDs of notes carrying a tag, newest first.

        Args:
            tag_name: The name of the tag.
            repo_key: Optional repository scope.

        Returns:
            List of note IDs.
        """
        with self.session_factory() as session:
            query = (
                select(DBLearningNote.id)
                .join(
                    learning_note_tags,
                    DBLearningNote.id == learning_note_tags.c.learning_note_id,
                )
                .join(DBTag, learning_note_tags.c.tag_id == DBTag.id)
                .where(DBTag.name == tag_name.strip())
            )
            if repo_key is not None:
                query = query.where(DBLearningNote.repo_key == repo_key)
            query = query.order_by(
                DBLearningNote.updated_at.desc(), DBLearningNote.id.desc()
            )

            return list(session.scalars(query).all())

    def delete_unused(self) -> int:
        """Delete tags that are not associated with any notes.

        Returns:
            Number of tags deleted.
        """
        with self.session_factory() as session:
            begin_write(session)
            unused = (
                select(DBTag.id)
                .outerjoin(learning_note_tags, DBTag.id == learning_note_tags.c.tag_id)
                .where(learning_note_tags.c.learning_note_id.is_(None))
            )
            result = session.execute(delete(DBTag).where(DBTag.id.in_(unused)))
            session.commit()

            count = result.rowcount or 0
            if count:
                logger.info(f"Deleted {count} unused tags")
            return count
