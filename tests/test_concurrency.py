"""Archive, restore and cleanup serialize on the store's per-key lock."""

import threading
from datetime import timedelta

import pytest

from stasis.archiver import ArchiveManager
from stasis.cleanup import CleanupService
from stasis.models import Scope
from stasis.restore import RestoreEngine

from conftest import make_snapshot


@pytest.fixture
def manager(archive_store, clock):
    return ArchiveManager(archive_store, clock=clock)


def _run_while_locked(archive_store, operation, context_id="ctx-1", scope=Scope.SESSION):
    """Start ``operation`` in a worker while the key is held.

    Returns (finished_while_locked, result) once the worker completes.
    """
    done = threading.Event()
    outcome = {}

    def worker():
        try:
            outcome["result"] = operation()
        except Exception as e:
            outcome["error"] = e
        finally:
            done.set()

    with archive_store.lock(context_id, scope):
        thread = threading.Thread(target=worker)
        thread.start()
        finished_while_locked = done.wait(timeout=0.2)
    thread.join(timeout=5)
    assert done.is_set()
    if "error" in outcome:
        raise outcome["error"]
    return finished_while_locked, outcome["result"]


class TestKeyedSerialization:

    def test_archive_waits_for_key(self, archive_store, manager):
        def archive():
            return manager.archive("ctx-1", Scope.SESSION, make_snapshot())

        finished, result = _run_while_locked(archive_store, archive)
        assert not finished
        assert result.context_id == "ctx-1"
        assert archive_store.get("ctx-1", Scope.SESSION) is not None

    def test_nothing_written_while_key_held(self, archive_store, manager):
        started = threading.Event()

        def archive():
            started.set()
            return manager.archive("ctx-1", Scope.SESSION, make_snapshot())

        with archive_store.lock("ctx-1", Scope.SESSION):
            thread = threading.Thread(target=archive)
            thread.start()
            started.wait(timeout=5)
            thread.join(timeout=0.2)
            assert archive_store.get("ctx-1", Scope.SESSION) is None
        thread.join(timeout=5)
        assert archive_store.get("ctx-1", Scope.SESSION) is not None

    def test_restore_waits_for_key(self, archive_store, manager, clock):
        manager.archive("ctx-1", Scope.SESSION, make_snapshot(age=timedelta(days=40)))
        engine = RestoreEngine(archive_store, clock=clock)

        finished, result = _run_while_locked(
            archive_store, lambda: engine.restore("ctx-1", Scope.SESSION),
        )
        assert not finished
        assert result.context.context_id == "ctx-1"

    def test_cleanup_waits_for_key(self, archive_store, manager, clock):
        manager.archive("ctx-1", Scope.SESSION, make_snapshot("ctx-1"))
        manager.archive("ctx-2", Scope.SESSION, make_snapshot("ctx-2"))
        clock.advance(days=400)
        cleaner = CleanupService(archive_store, clock=clock)

        finished, result = _run_while_locked(archive_store, lambda: cleaner.cleanup_expired(365))
        assert not finished
        assert result.processed_count == 2
        assert archive_store.keys() == []

    def test_other_keys_proceed(self, archive_store, manager):
        def archive_other_scope():
            return manager.archive("ctx-1", Scope.PROJECT, make_snapshot(scope=Scope.PROJECT))

        finished, result = _run_while_locked(archive_store, archive_other_scope)
        assert finished
        assert result.scope == Scope.PROJECT
