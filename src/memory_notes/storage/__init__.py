"""Storage layer for the learning-notes store."""

from memory_notes.storage.link_repository import LinkRepository
from memory_notes.storage.note_repository import NoteRepository
from memory_notes.storage.search_index import SearchIndex
from memory_notes.storage.tag_repository import TagRepository

__all__ = [
    "NoteRepository",
    "LinkRepository",
    "TagRepository",
    "SearchIndex",
]
