"""Repository for external link storage and retrieval."""
import logging
from typing import Iterable, List

from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from memory_notes.models.db_models import DBLink
from memory_notes.models.schema import NoteLink

logger = logging.getLogger(__name__)


class LinkRepository:
    """Repository for the external links owned by learning notes.

    Links have no identity outside their note: they are only added while
    the note is written and are removed with it.
    """

    def __init__(self, session_factory):
        """Initialize the link repository.

        Args:
            session_factory: SQLAlchemy session factory for database operations.
        """
        self.session_factory = session_factory

    def add_all(self, session: Session, note_id: int, links: Iterable[NoteLink]) -> int:
        """Insert links for a note inside the caller's transaction.

        Links must already be normalized (see ``clean_links``).

        Returns:
            Number of links added.
        """
        count = 0
        for link in links:
            session.add(DBLink(learning_note_id=note_id, label=link.label, url=link.url))
            count += 1
        return count

    def replace_for_note(
        self, session: Session, note_id: int, links: Iterable[NoteLink]
    ) -> int:
        """Replace every link of a note. Returns the number of new links."""
        self.delete_for_note(session, note_id)
        return self.add_all(session, note_id, links)

    def delete_for_note(self, session: Session, note_id: int) -> int:
        """Delete every link of a note. Returns rows removed."""
        result = session.execute(delete(DBLink).where(DBLink.learning_note_id == note_id))
        return result.rowcount or 0

    def get_for_note(self, note_id: int) -> List[NoteLink]:
        """Get the links of a note in creation order.

        Args:
            note_id: The note ID.

        Returns:
            List of NoteLink objects (empty for unknown notes).
        """
        with self.session_factory() as session:
            rows = session.execute(
                select(DBLink.label, DBLink.url)
                .where(DBLink.learning_note_id == note_id)
                .order_by(DBLink.id.asc())
            ).all()

            return [NoteLink(label=label, url=url) for label, url in rows]
