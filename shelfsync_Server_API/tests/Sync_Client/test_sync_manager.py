# test_sync_manager.py
# Tests for device orchestration: checkpoints, queue handling, single-flight and error policy.
from typing import Any, Dict, Optional
from unittest.mock import MagicMock

import pytest

from shelfsync_Server_API.app.api.v1.endpoints.sync import ServerSyncProcessor
from shelfsync_Server_API.app.api.v1.schemas.sync_server_models import SyncPushPayload
from shelfsync_Server_API.app.core.DB_Management.Sync_Records_DB import SyncRecordsDB
from shelfsync_Server_API.app.core.Sync.core import SyncManager
from shelfsync_Server_API.app.core.Sync.exceptions import (
    AuthenticationError,
    NetworkError,
    StateError,
    ValidationError,
)
from shelfsync_Server_API.app.core.Sync.local_store import LocalRecordStore
from shelfsync_Server_API.app.core.Sync.models import ChangeScope, SyncKind
from shelfsync_Server_API.app.core.Sync.state import ONE_DAY_IN_MS, SyncStateManager, startup_checkpoint
from shelfsync_Server_API.app.core.Sync.transport import SyncTransport

NOW = 1_718_000_000_000


class InProcessTransport(SyncTransport):
    """Talks to a server-side processor directly instead of over HTTP."""

    def __init__(self, server_db: SyncRecordsDB, user_id: str = "server_user"):
        self.processor = ServerSyncProcessor(server_db, user_id)
        self.pull_calls = []

    def pull(self, since: int, kind: Optional[str] = None, book: Optional[str] = None,
             meta_hash: Optional[str] = None) -> Dict[str, Any]:
        self.pull_calls.append((since, kind, book, meta_hash))
        kinds = [SyncKind(kind)] if kind else list(SyncKind)
        return self.processor.pull(since, kinds, ChangeScope(book=book, meta_hash=meta_hash))

    def push(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self.processor.push(SyncPushPayload(**payload))


@pytest.fixture
def server_db():
    db = SyncRecordsDB(":memory:", client_id="server")
    yield db
    db.close_connection()


@pytest.fixture
def local_db():
    db = SyncRecordsDB(":memory:", client_id="device")
    yield db
    db.close_connection()


@pytest.fixture
def state_manager(tmp_path):
    return SyncStateManager(str(tmp_path / "state" / "sync_state.json"))


@pytest.fixture
def transport(server_db):
    return InProcessTransport(server_db)


def make_manager(transport, state_manager, local_db, **kwargs):
    return SyncManager(transport, state_manager, LocalRecordStore(local_db, "device_user"),
                       clock=lambda: NOW, **kwargs)


@pytest.fixture
def manager(transport, state_manager, local_db):
    return make_manager(transport, state_manager, local_db)


# --- Checkpoint policy ---

@pytest.mark.parametrize("checkpoint, expected", [
    (0, 0),
    (NOW - 4 * ONE_DAY_IN_MS, 0),
    (NOW - 2 * ONE_DAY_IN_MS, NOW - 3 * ONE_DAY_IN_MS),
    (NOW - 1000, NOW - 1000 - ONE_DAY_IN_MS),
])
def test_startup_checkpoint_policy(checkpoint, expected):
    assert startup_checkpoint(checkpoint, NOW) == expected


def test_startup_rollback_never_goes_negative():
    now = ONE_DAY_IN_MS + ONE_DAY_IN_MS // 2
    assert startup_checkpoint(ONE_DAY_IN_MS // 2, now) == 0


def test_initialize_checkpoints_persists_adjusted_values(manager, state_manager):
    state_manager.set_checkpoint(SyncKind.BOOKS, NOW - ONE_DAY_IN_MS)
    state_manager.set_checkpoint(SyncKind.NOTES, NOW - 10 * ONE_DAY_IN_MS)

    manager.initialize_checkpoints()

    assert state_manager.get_checkpoint(SyncKind.BOOKS) == NOW - 2 * ONE_DAY_IN_MS
    assert state_manager.get_checkpoint(SyncKind.NOTES) == 0
    assert state_manager.get_checkpoint(SyncKind.GOALS) == 0


# --- Pull ---

def test_pull_advances_checkpoint_to_newest_change(manager, transport, state_manager):
    transport.push({"sessions": [{"id": "s1", "book_hash": "b", "updated_at": 100},
                                 {"id": "s2", "book_hash": "b", "updated_at": 50, "deleted_at": 400}]})

    records = manager.pull(SyncKind.SESSIONS)

    assert len(records) == 2
    assert state_manager.get_checkpoint(SyncKind.SESSIONS) == 400
    assert transport.pull_calls == [(0, "sessions", None, None)]


def test_empty_pull_leaves_checkpoint_alone(manager, state_manager):
    state_manager.set_checkpoint(SyncKind.GOALS, 1234)

    assert manager.pull(SyncKind.GOALS) == []
    assert state_manager.get_checkpoint(SyncKind.GOALS) == 1234


def test_checkpoint_never_moves_backwards(state_manager):
    state_manager.set_checkpoint(SyncKind.BOOKS, 500)
    assert state_manager.advance_checkpoint(SyncKind.BOOKS, 300) == 500
    assert state_manager.get_checkpoint(SyncKind.BOOKS) == 500


def test_scoped_pull_does_not_move_checkpoint(manager, transport, state_manager):
    transport.push({"notes": [{"book_hash": "X", "id": "n1", "updated_at": 100, "note": ""}]})

    manager.pull(SyncKind.NOTES, book="X")

    assert state_manager.get_checkpoint(SyncKind.NOTES) == 0


def test_pull_merges_by_last_writer_wins(manager, transport, local_db):
    manager.queue_record(SyncKind.BOOKS, {"book_hash": "abc", "updated_at": 300, "title": "local edit"})
    transport.push({"books": [{"book_hash": "abc", "updated_at": 200, "title": "older remote"},
                              {"book_hash": "new", "updated_at": 200, "title": "remote only"}]})

    manager.pull(SyncKind.BOOKS)

    store = manager.local_store
    assert store.get(SyncKind.BOOKS, ("abc",))["title"] == "local edit"
    assert store.get(SyncKind.BOOKS, ("new",))["title"] == "remote only"


# --- Push ---

def test_sync_kind_pushes_queue_and_adopts_authoritative_records(manager, transport, state_manager, server_db):
    manager.queue_record(SyncKind.NOTES, {"book_hash": "b", "id": "n1", "note": "hello"})
    assert state_manager.queue_size(SyncKind.NOTES) == 1

    assert manager.sync_kind(SyncKind.NOTES) is True

    assert state_manager.queue_size(SyncKind.NOTES) == 0
    on_server = server_db.get_record(SyncKind.NOTES, "server_user", ("b", "n1"))
    assert on_server["note"] == "hello"
    assert on_server["updated_at"] == NOW
    assert manager.status[SyncKind.NOTES].last_error is None


def test_push_keeps_server_version_when_it_is_newer(manager, transport):
    transport.push({"configs": [{"book_hash": "b", "updated_at": NOW + 5, "location": "server"}]})
    # Local edit is queued without pulling first
    manager.queue_record(SyncKind.CONFIGS, {"book_hash": "b", "updated_at": NOW, "location": "device"})

    authoritative = manager.push(SyncKind.CONFIGS)

    assert authoritative[0]["location"] == "server"
    assert manager.local_store.get(SyncKind.CONFIGS, ("b",))["location"] == "server"


def test_records_reported_in_errors_stay_queued(state_manager, local_db):
    transport = MagicMock(spec=SyncTransport)
    transport.push.return_value = {
        "sessions": [{"id": "s1", "book_hash": "b", "updated_at": 10}],
        "errors": {"sessions": [{"index": 1, "key": {"id": "s2"}, "error": "database is locked"}]},
    }
    manager = make_manager(transport, state_manager, local_db)
    manager.queue_record(SyncKind.SESSIONS, {"id": "s1", "book_hash": "b", "updated_at": 10})
    manager.queue_record(SyncKind.SESSIONS, {"id": "s2", "book_hash": "b", "updated_at": 11})

    manager.push(SyncKind.SESSIONS)

    assert [r["id"] for r in state_manager.get_queue(SyncKind.SESSIONS)] == ["s2"]


def test_push_with_every_record_reported_keeps_all_of_them_queued(state_manager, local_db):
    transport = MagicMock(spec=SyncTransport)
    transport.push.return_value = {
        "goals": [],
        "errors": {"goals": [{"index": 0, "key": {"id": "g1"}, "error": "Invalid updated_at: nan"}]},
    }
    manager = make_manager(transport, state_manager, local_db)
    manager.queue_record(SyncKind.GOALS, {"id": "g1", "target": 30, "updated_at": 10})

    assert manager.push(SyncKind.GOALS) == []
    assert state_manager.queue_size(SyncKind.GOALS) == 1


def test_rejected_push_keeps_the_queue(state_manager, local_db):
    transport = MagicMock(spec=SyncTransport)
    transport.pull.return_value = {"goals": []}
    transport.push.side_effect = ValidationError("goals[0]: malformed")
    manager = make_manager(transport, state_manager, local_db)
    manager.queue_record(SyncKind.GOALS, {"id": "g1", "target": "lots"})

    assert manager.sync_kind(SyncKind.GOALS) is False
    assert state_manager.queue_size(SyncKind.GOALS) == 1
    assert manager.status[SyncKind.GOALS].last_error == "goals[0]: malformed"


# --- Single-flight and errors ---

def test_busy_kind_is_skipped(state_manager, local_db):
    transport = MagicMock(spec=SyncTransport)
    manager = make_manager(transport, state_manager, local_db)
    inner_results = []

    def pull_while_reentering(since, kind=None, book=None, meta_hash=None):
        inner_results.append(manager.sync_kind(SyncKind(kind)))
        return {kind: []}

    transport.pull.side_effect = pull_while_reentering

    assert manager.sync_kind(SyncKind.BOOKS) is True
    assert inner_results == [False]
    assert manager.status[SyncKind.BOOKS].skipped == 1
    assert not manager.is_busy(SyncKind.BOOKS)


def test_authentication_failure_stops_the_cycle(state_manager, local_db):
    transport = MagicMock(spec=SyncTransport)
    transport.pull.side_effect = AuthenticationError()
    manager = make_manager(transport, state_manager, local_db)

    results = manager.sync_all()

    assert results == {}
    assert transport.pull.call_count == 1
    assert manager.needs_login is True
    assert manager.sync_all() == {}
    assert transport.pull.call_count == 1

    manager.mark_logged_in()
    transport.pull.side_effect = None
    transport.pull.return_value = {}
    assert all(manager.sync_all().values())


def test_network_error_is_recorded_and_other_kinds_continue(state_manager, local_db):
    transport = MagicMock(spec=SyncTransport)

    def flaky_pull(since, kind=None, book=None, meta_hash=None):
        if kind == "books":
            raise NetworkError("Could not reach sync server")
        return {kind: []}

    transport.pull.side_effect = flaky_pull
    manager = make_manager(transport, state_manager, local_db)
    manager.queue_record(SyncKind.BOOKS, {"book_hash": "abc", "title": "T"})

    results = manager.sync_all()

    assert results["books"] is False
    assert all(results[k] for k in ("configs", "notes", "sessions", "goals"))
    assert manager.status[SyncKind.BOOKS].last_error == "Could not reach sync server"
    assert state_manager.queue_size(SyncKind.BOOKS) == 1
    transport.push.assert_not_called()


# --- State file ---

def test_enqueue_replaces_older_version_of_same_record(state_manager):
    state_manager.enqueue(SyncKind.NOTES, {"book_hash": "b", "id": "n1", "updated_at": 1})
    state_manager.enqueue(SyncKind.NOTES, {"book_hash": "b", "id": "n1", "updated_at": 2})
    state_manager.enqueue(SyncKind.NOTES, {"book_hash": "c", "id": "n1", "updated_at": 1})

    queue = state_manager.get_queue(SyncKind.NOTES)
    assert [(r["book_hash"], r["updated_at"]) for r in queue] == [("b", 2), ("c", 1)]


def test_record_requeued_during_push_is_kept(state_manager):
    pushed = {"id": "s1", "updated_at": 10}
    state_manager.enqueue(SyncKind.SESSIONS, {"id": "s1", "updated_at": 20})

    assert state_manager.remove_from_queue(SyncKind.SESSIONS, [pushed]) == 0
    assert state_manager.queue_size(SyncKind.SESSIONS) == 1


def test_state_survives_a_new_manager_instance(state_manager):
    state_manager.set_checkpoint(SyncKind.SESSIONS, 42)
    state_manager.enqueue(SyncKind.GOALS, {"id": "g1", "updated_at": 1})

    reopened = SyncStateManager(state_manager.state_file_path)
    assert reopened.get_checkpoint(SyncKind.SESSIONS) == 42
    assert reopened.queue_size(SyncKind.GOALS) == 1


def test_corrupt_state_file_raises_state_error(tmp_path):
    path = tmp_path / "sync_state.json"
    path.write_text("{not json")

    with pytest.raises(StateError):
        SyncStateManager(str(path)).get_checkpoint(SyncKind.BOOKS)
