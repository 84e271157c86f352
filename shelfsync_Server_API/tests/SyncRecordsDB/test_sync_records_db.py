# test_sync_records_db.py
# Tests for the SQLite record store.
import pytest

from shelfsync_Server_API.app.core.DB_Management.Sync_Records_DB import (
    ConflictError,
    InputError,
    SchemaError,
    SyncRecordsDB,
)
from shelfsync_Server_API.app.core.Sync.models import ChangeScope, SyncKind

USER = "user_1"


def make_book(book_hash, updated_at, **extra):
    return {"user_id": USER, "book_hash": book_hash, "updated_at": updated_at, "deleted_at": None, **extra}


def make_note(book_hash, note_id, updated_at, meta_hash=None):
    return {"user_id": USER, "book_hash": book_hash, "meta_hash": meta_hash, "id": note_id,
            "updated_at": updated_at, "deleted_at": None, "note": f"note {note_id}"}


@pytest.fixture
def db():
    db = SyncRecordsDB(":memory:", client_id="test")
    yield db
    db.close_connection()


def test_insert_and_get_round_trips_payload(db):
    book = make_book("abc", 100, title="T1", tags=["x"], progress=[1, 10])
    db.insert_record(SyncKind.BOOKS, book)

    stored = db.get_record(SyncKind.BOOKS, USER, ("abc",))
    assert stored == book


def test_get_record_is_scoped_to_user(db):
    db.insert_record(SyncKind.BOOKS, make_book("abc", 100))
    assert db.get_record(SyncKind.BOOKS, "someone_else", ("abc",)) is None


def test_insert_duplicate_key_raises_conflict(db):
    db.insert_record(SyncKind.BOOKS, make_book("abc", 100))
    with pytest.raises(ConflictError):
        db.insert_record(SyncKind.BOOKS, make_book("abc", 200))


def test_notes_key_uses_book_hash_and_note_id(db):
    db.insert_record(SyncKind.NOTES, make_note("b1", "n1", 100))
    db.insert_record(SyncKind.NOTES, make_note("b2", "n1", 100))

    assert db.count_records(SyncKind.NOTES, USER) == 2
    assert db.get_record(SyncKind.NOTES, USER, ("b2", "n1"))["book_hash"] == "b2"


def test_get_record_rejects_wrong_key_arity(db):
    with pytest.raises(InputError):
        db.get_record(SyncKind.NOTES, USER, ("only_book",))


def test_update_with_matching_guard_lands(db):
    db.insert_record(SyncKind.BOOKS, make_book("abc", 100, title="old"))
    db.update_record(SyncKind.BOOKS, make_book("abc", 150, title="new"), expected=(100, 0))
    assert db.get_record(SyncKind.BOOKS, USER, ("abc",))["title"] == "new"


def test_update_with_stale_guard_raises_conflict(db):
    db.insert_record(SyncKind.BOOKS, make_book("abc", 100, title="old"))
    with pytest.raises(ConflictError):
        db.update_record(SyncKind.BOOKS, make_book("abc", 150, title="new"), expected=(90, 0))
    assert db.get_record(SyncKind.BOOKS, USER, ("abc",))["title"] == "old"


def test_list_records_since_is_exclusive_and_matches_deleted_at(db):
    db.insert_record(SyncKind.BOOKS, make_book("a", 100))
    db.insert_record(SyncKind.BOOKS, make_book("b", 200))
    db.insert_record(SyncKind.BOOKS, {**make_book("c", 50), "deleted_at": 300})

    hashes = [r["book_hash"] for r in db.list_records(SyncKind.BOOKS, USER, since=100)]
    assert hashes == ["b", "c"]


def test_list_records_orders_newest_first_and_paginates(db):
    for i in range(5):
        db.insert_record(SyncKind.BOOKS, make_book(f"h{i}", 100 + i))

    first = db.list_records(SyncKind.BOOKS, USER, limit=2, offset=0)
    second = db.list_records(SyncKind.BOOKS, USER, limit=2, offset=2)
    assert [r["book_hash"] for r in first] == ["h4", "h3"]
    assert [r["book_hash"] for r in second] == ["h2", "h1"]


def test_list_records_scope_is_an_or_filter(db):
    db.insert_record(SyncKind.NOTES, make_note("X", "n1", 100))
    db.insert_record(SyncKind.NOTES, make_note("Z", "n2", 100, meta_hash="Y"))
    db.insert_record(SyncKind.NOTES, make_note("Z", "n3", 100, meta_hash="other"))

    scope = ChangeScope(book="X", meta_hash="Y")
    ids = sorted(r["id"] for r in db.list_records(SyncKind.NOTES, USER, scope=scope))
    assert ids == ["n1", "n2"]


def test_goals_ignore_scope(db):
    db.insert_record(SyncKind.GOALS, {"user_id": USER, "id": "g1", "updated_at": 10, "target": 30})
    records = db.list_records(SyncKind.GOALS, USER, scope=ChangeScope(book="X"))
    assert [r["id"] for r in records] == ["g1"]


def test_list_records_rejects_bad_pagination(db):
    with pytest.raises(InputError):
        db.list_records(SyncKind.BOOKS, USER, limit=0)


def test_soft_delete_sets_tombstone_once(db):
    db.insert_record(SyncKind.SESSIONS, {"user_id": USER, "id": "s1", "book_hash": "b", "updated_at": 100})

    deleted = db.soft_delete_record(SyncKind.SESSIONS, USER, ("s1",), deleted_at=500)
    assert deleted["deleted_at"] == 500
    assert deleted["updated_at"] == 500

    again = db.soft_delete_record(SyncKind.SESSIONS, USER, ("s1",), deleted_at=900)
    assert again["deleted_at"] == 500
    assert db.count_records(SyncKind.SESSIONS, USER, include_deleted=False) == 0


def test_transaction_rolls_back_on_error(db):
    with pytest.raises(RuntimeError):
        with db.transaction():
            db.insert_record(SyncKind.BOOKS, make_book("abc", 100))
            raise RuntimeError("boom")
    assert db.get_record(SyncKind.BOOKS, USER, ("abc",)) is None


def test_reopening_file_db_keeps_schema_and_rows(tmp_path):
    path = tmp_path / "records.sqlite"
    first = SyncRecordsDB(path)
    first.insert_record(SyncKind.BOOKS, make_book("abc", 100))
    first.close_connection()

    second = SyncRecordsDB(path)
    assert second.get_record(SyncKind.BOOKS, USER, ("abc",)) is not None
    second.close_connection()


def test_newer_schema_version_is_refused(tmp_path):
    path = tmp_path / "records.sqlite"
    db = SyncRecordsDB(path)
    db.execute_query("UPDATE db_schema_version SET version = 99 WHERE schema_name = 'shelfsync_records'")
    db.close_connection()

    with pytest.raises(SchemaError):
        SyncRecordsDB(path)
