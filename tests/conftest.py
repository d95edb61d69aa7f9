"""Common test fixtures for the learning-notes store."""

import pytest

from memory_notes import observability
from memory_notes.config import config
from memory_notes.observability import MetricsCollector
from memory_notes.services.learning_service import LearningService
from memory_notes.storage.note_repository import NoteRepository


@pytest.fixture(autouse=True)
def isolated_metrics(monkeypatch):
    """Keep operation metrics in memory so tests never touch ~/.memory-notes."""
    collector = MetricsCollector(persist=False)
    monkeypatch.setattr(observability, "metrics", collector)
    yield collector


@pytest.fixture
def test_config(tmp_path, monkeypatch):
    """Configure with test paths (auto-restored even on crash)."""
    database_path = tmp_path / "db" / "test_memory.db"
    monkeypatch.setattr(config, "database_path", database_path)
    monkeypatch.setattr(config, "log_dir", tmp_path / "logs")
    yield config


@pytest.fixture
def note_repository(test_config):
    """Create a test note repository on a fresh database."""
    repository = NoteRepository(database_path=test_config.database_path)
    yield repository
    repository.engine.dispose()


@pytest.fixture
def learning_service(note_repository):
    """Create a test LearningService."""
    yield LearningService(repository=note_repository)


@pytest.fixture
def make_note(learning_service):
    """Factory that records a note with sensible defaults."""

    def _make_note(**overrides):
        fields = {
            "repo_key": "acme/api",
            "title": "Connection pool exhausted",
            "problem": "Requests hang under load",
            "solution": "Raise pool size and close sessions",
        }
        fields.update(overrides)
        return learning_service.add_note(**fields)

    return _make_note
