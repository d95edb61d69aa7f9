"""Tests for concurrent writers sharing one database file.

Threads stand in for separate agent processes: each write opens its own
pooled connection, so SQLite's locking decides who goes first. Writes
must queue behind each other (busy_timeout) instead of failing with
"database is locked".
"""

import threading
from typing import List

import pytest
from sqlalchemy import event, text

from memory_notes.services.learning_service import LearningService
from memory_notes.storage.note_repository import NoteRepository

WORKERS = 12


def _run_concurrently(target, count: int = WORKERS) -> List[Exception]:
    """Start ``count`` threads on ``target(index)`` at once; return their errors."""
    errors: List[Exception] = []
    lock = threading.Lock()
    barrier = threading.Barrier(count)

    def worker(index: int):
        try:
            barrier.wait()
            target(index)
        except Exception as e:
            with lock:
                errors.append(e)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return errors


class TestBeginMode:
    """Write sessions take the write lock up front."""

    @pytest.fixture
    def statements(self, note_repository):
        seen: List[str] = []

        def record(conn, cursor, statement, parameters, context, executemany):
            seen.append(statement.strip())

        event.listen(note_repository.engine, "before_cursor_execute", record)
        yield seen
        event.remove(note_repository.engine, "before_cursor_execute", record)

    def test_writes_begin_immediate(self, learning_service, statements):
        note_id = learning_service.add_note(
            repo_key="acme/api", title="t", problem="p", solution="s", tags=["x"]
        )
        learning_service.update_note(note_id, title="t2")
        learning_service.delete_by_id(note_id)
        learning_service.delete_unused_tags()
        learning_service.rebuild_index()

        begins = [s for s in statements if s.startswith("BEGIN")]
        assert begins
        assert "BEGIN IMMEDIATE" in begins

    def test_reads_begin_deferred(self, learning_service, make_note, statements):
        note_id = make_note()
        statements.clear()

        learning_service.get_by_id(note_id)
        learning_service.search("pool")

        begins = [s for s in statements if s.startswith("BEGIN")]
        assert begins
        assert all(s == "BEGIN" for s in begins)

    def test_write_waits_for_other_writer(self, note_repository, make_note):
        """A delete issued while another connection holds the write lock
        completes once that writer commits."""
        note_id = make_note()
        blocker = note_repository.engine.raw_connection()
        try:
            cursor = blocker.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            cursor.execute("INSERT INTO tags (name) VALUES ('held')")

            outcome = {}

            def delete():
                outcome["deleted"] = note_repository.delete(note_id)

            thread = threading.Thread(target=delete)
            thread.start()
            thread.join(0.3)
            assert thread.is_alive()

            cursor.execute("COMMIT")
            cursor.close()
            thread.join(10)
        finally:
            blocker.close()

        assert outcome == {"deleted": True}
        assert note_repository.get(note_id) is None


class TestConcurrentWrites:
    """Threaded writers against one repository."""

    def test_concurrent_adds_share_new_tag(self, learning_service, note_repository):
        """Every writer adds a note carrying the same not-yet-existing tag."""
        ids: List[int] = []
        lock = threading.Lock()

        def add(index: int):
            note_id = learning_service.add_note(
                repo_key="acme/api",
                title=f"Concurrent lesson {index}",
                problem="p",
                solution="s",
                tags=["race"],
            )
            with lock:
                ids.append(note_id)

        errors = _run_concurrently(add)

        assert errors == [], f"Errors occurred: {errors}"
        assert len(set(ids)) == WORKERS
        assert learning_service.get_tags_with_counts() == {"race": WORKERS}
        with note_repository.session_factory() as session:
            tag_rows = session.execute(
                text("SELECT COUNT(*) FROM tags WHERE name = 'race'")
            ).scalar()
        assert tag_rows == 1
        assert learning_service.check_health()["healthy"] is True

    def test_concurrent_deletes(self, learning_service, make_note):
        """Deletes of distinct notes all succeed and leave the index in sync."""
        ids = [make_note(title=f"Doomed {i}", tags=["gone"]) for i in range(WORKERS)]
        results: List[bool] = []
        lock = threading.Lock()

        def remove(index: int):
            deleted = learning_service.delete_by_id(ids[index])
            with lock:
                results.append(deleted)

        errors = _run_concurrently(remove)

        assert errors == [], f"Errors occurred: {errors}"
        assert results == [True] * WORKERS
        assert learning_service.count() == 0
        health = learning_service.check_health()
        assert health["in_sync"] is True
        assert health["index_count"] == 0

    def test_concurrent_updates(self, learning_service, make_note):
        """Updates of distinct notes all land and are reindexed."""
        ids = [make_note(title=f"Draft {i}") for i in range(WORKERS)]

        def rename(index: int):
            learning_service.update_note(ids[index], title=f"Final walrus {index}")

        errors = _run_concurrently(rename)

        assert errors == [], f"Errors occurred: {errors}"
        assert {n.id for n in learning_service.search("walrus", limit=WORKERS)} == set(ids)
        assert learning_service.check_health()["in_sync"] is True

    def test_writers_on_separate_engines(self, test_config, make_note):
        """Two repositories on the same file behave like two processes."""
        ids = [make_note(title=f"Shared {i}") for i in range(WORKERS)]
        services = [
            LearningService(repository=NoteRepository(database_path=test_config.database_path))
            for _ in range(2)
        ]
        try:
            def mixed(index: int):
                service = services[index % 2]
                service.delete_by_id(ids[index])
                service.add_note(
                    repo_key="acme/api",
                    title=f"Replacement {index}",
                    problem="p",
                    solution="s",
                    tags=["swap"],
                )

            errors = _run_concurrently(mixed)

            assert errors == [], f"Errors occurred: {errors}"
            assert services[0].count() == WORKERS
            assert services[1].get_tags_with_counts() == {"swap": WORKERS}
            assert services[0].check_health()["healthy"] is True
        finally:
            for service in services:
                service.repository.engine.dispose()
