import sqlite3

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from app import db
from database_models import PendingOperationRecord
from exceptions import PendingStoreError
from models import CancelPayload, PendingOperation, ScanPayload, ToggleFollowUpPayload


def test_list_all_returns_insertion_order(store):
    first = store.enqueue(PendingOperation.create(ScanPayload("RESI-B", "1", "JNE")))
    second = store.enqueue(PendingOperation.create(CancelPayload("RESI-A", "2024-01-05T10:00:00+00:00")))
    third = store.enqueue(PendingOperation.create(ToggleFollowUpPayload("RESI-C", True)))

    operations = store.list_all()

    assert [op.id for op in operations] == [first.id, second.id, third.id]
    assert operations[0].payload == ScanPayload("RESI-B", "1", "JNE")
    assert operations[1].payload.fallback_created == "2024-01-05T10:00:00+00:00"
    assert operations[2].payload.new_cekfu_status is True


def test_enqueue_resets_retry_state(store):
    operation = PendingOperation.create(ScanPayload("RESI1", "3", "SPX"))
    operation.retry_count = 4

    store.enqueue(operation)
    stored = store.get(operation.id)

    assert stored.retry_count == 0
    assert stored.last_attempt_at is not None


def test_enqueue_same_id_twice_keeps_one_row(store):
    operation = PendingOperation.create(ScanPayload("RESI1", "3", "SPX"))
    store.enqueue(operation)
    store.enqueue(operation)

    assert store.count() == 1


def test_update_persists_retry_count(store):
    operation = store.enqueue(PendingOperation.create(ScanPayload("RESI1", "1", "JNE")))
    operation.retry_count = 2

    store.update(operation)

    assert store.get(operation.id).retry_count == 2
    assert store.count() == 1


def test_update_reinserts_missing_operation(store):
    operation = PendingOperation.create(ScanPayload("RESI1", "1", "JNE"))
    operation.retry_count = 1

    store.update(operation)

    assert store.get(operation.id).retry_count == 1


def test_remove_deletes_only_that_operation(store):
    keep = store.enqueue(PendingOperation.create(ScanPayload("RESI1", "1", "JNE")))
    drop = store.enqueue(PendingOperation.create(ScanPayload("RESI2", "1", "JNE")))

    store.remove(drop.id)
    store.remove("does-not-exist")

    assert [op.id for op in store.list_all()] == [keep.id]


def test_unreadable_rows_are_dropped(app, store):
    good = store.enqueue(PendingOperation.create(ScanPayload("RESI1", "1", "JNE")))
    with app.app_context():
        db.session.add(PendingOperationRecord(op_id="bogus-1", op_type="bogus", resi_number="X", payload="{}"))
        db.session.commit()
    assert store.count() == 2

    operations = store.list_all()

    assert [op.id for op in operations] == [good.id]
    assert store.count() == 1


def test_reinitialize_leaves_store_empty_and_usable(store):
    store.enqueue(PendingOperation.create(ScanPayload("RESI1", "1", "JNE")))

    store.reinitialize()

    assert store.count() == 0
    store.enqueue(PendingOperation.create(ScanPayload("RESI2", "1", "JNE")))
    assert store.count() == 1


def _drop_table(app):
    with app.app_context():
        PendingOperationRecord.__table__.drop(db.engine)


def _replace_with_foreign_table(app):
    with app.app_context():
        PendingOperationRecord.__table__.drop(db.engine)
        with db.engine.begin() as connection:
            connection.execute(text("CREATE TABLE pending_operations (legacy_id INTEGER PRIMARY KEY)"))


class ExclusiveLock:
    """Second SQLite connection that can hold an exclusive lock, like a concurrent writer"""

    def __init__(self, path):
        self.connection = sqlite3.connect(path, timeout=0, isolation_level=None)
        self.held = False

    def acquire(self):
        self.connection.execute("BEGIN EXCLUSIVE")
        self.held = True

    def release(self):
        if self.held:
            self.connection.execute("ROLLBACK")
            self.held = False


@pytest.fixture
def database_lock(app):
    lock = ExclusiveLock(app.config["SQLALCHEMY_DATABASE_URI"].replace("sqlite:///", "", 1))
    yield lock
    lock.release()
    lock.connection.close()


def test_list_all_recreates_missing_table(app, store):
    store.enqueue(PendingOperation.create(ScanPayload("RESI1", "1", "JNE")))
    _drop_table(app)

    assert store.list_all() == []

    store.enqueue(PendingOperation.create(ScanPayload("RESI2", "1", "JNE")))
    assert [op.resi_number for op in store.list_all()] == ["RESI2"]


def test_enqueue_recreates_missing_table(app, store):
    _drop_table(app)

    operation = store.enqueue(PendingOperation.create(ScanPayload("RESI1", "1", "JNE")))

    assert store.get(operation.id) is not None
    assert store.count() == 1


def test_update_on_unreadable_schema_resets_store(app, store):
    operation = store.enqueue(PendingOperation.create(ScanPayload("RESI1", "1", "JNE")))
    _replace_with_foreign_table(app)
    operation.retry_count = 1

    store.update(operation)

    assert store.is_corrupted() is False
    assert store.count() == 0
    store.enqueue(PendingOperation.create(ScanPayload("RESI2", "1", "JNE")))
    assert store.count() == 1


def test_locked_database_keeps_queued_operations(store, database_lock):
    queued = [store.enqueue(PendingOperation.create(ScanPayload(f"RESI{i}", "1", "JNE"))) for i in range(3)]
    database_lock.acquire()

    assert store.list_all() == []
    store.remove(queued[0].id)
    queued[1].retry_count = 3
    store.update(queued[1])
    with pytest.raises(PendingStoreError):
        store.enqueue(PendingOperation.create(ScanPayload("RESI9", "1", "JNE")))

    database_lock.release()
    remaining = store.list_all()

    assert [op.id for op in remaining] == [op.id for op in queued]
    assert remaining[1].retry_count == 0


def test_failed_commit_does_not_discard_queue(store, context, monkeypatch):
    for i in range(3):
        context.enqueue(ScanPayload(f"RESI{i}", "1", "JNE"))
    real_commit = db.session.commit
    failures = []

    def commit_once_locked():
        if not failures:
            failures.append(1)
            raise OperationalError("COMMIT", {}, sqlite3.OperationalError("database is locked"))
        return real_commit()

    monkeypatch.setattr(db.session, "commit", commit_once_locked)

    context.perform_sync()

    assert failures == [1]
    assert store.count() == 1
