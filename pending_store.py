"""
Durable store for pending operations (survives restarts via the local database)
"""

import logging
import time
from threading import Lock
from typing import List, Optional

from sqlalchemy import inspect
from sqlalchemy.exc import OperationalError, SQLAlchemyError

from app import db
from database_models import PendingOperationRecord
from exceptions import PendingStoreError
from models import PendingOperation, utc_now

# Error SQLite yang hilang sendiri (kontensi antar thread), bukan kerusakan
TRANSIENT_ERROR_MARKERS = ("database is locked", "database table is locked", "database is busy")
ENQUEUE_RETRY_DELAY = 0.05


def is_transient_error(error) -> bool:
    return isinstance(error, OperationalError) and any(
        marker in str(error).lower() for marker in TRANSIENT_ERROR_MARKERS
    )


class PendingOperationStore:
    """Ordered collection of PendingOperation rows.

    Every call opens its own app context, so the store can be used from
    request handlers and from the sync thread alike. A single store-wide
    lock keeps add/update/delete atomic per record; it does not serialise a
    whole drain cycle.

    The table is only dropped and recreated when it is missing or its
    schema/data can no longer be read. Transient errors (a locked database)
    leave every row in place.
    """

    def __init__(self, app):
        self.app = app
        self.lock = Lock()

    def enqueue(self, operation: PendingOperation) -> PendingOperation:
        """Persist a new operation with retry_count=0 and last_attempt_at=now"""
        operation.retry_count = 0
        operation.last_attempt_at = utc_now()
        logging.info(f"[PendingStore] Adding operation: {operation.type} for resi {operation.resi_number}")
        try:
            self._add(operation)
        except SQLAlchemyError as e:
            if is_transient_error(e):
                logging.warning(f"[PendingStore] Enqueue hit a busy database, retrying once: {e}")
                time.sleep(ENQUEUE_RETRY_DELAY)
            else:
                logging.error(f"[PendingStore] Enqueue failed: {e}")
                self._recover(e)
            try:
                self._add(operation)
            except SQLAlchemyError as retry_error:
                raise PendingStoreError(f"Penyimpanan lokal tidak tersedia: {retry_error}") from retry_error
        return operation

    def _add(self, operation: PendingOperation):
        with self.lock, self.app.app_context():
            try:
                if db.session.query(PendingOperationRecord).filter_by(op_id=operation.id).first():
                    logging.warning(f"[PendingStore] Operation {operation.id} already stored, skipping")
                    return
                db.session.add(PendingOperationRecord.from_operation(operation))
                db.session.commit()
            except SQLAlchemyError:
                db.session.rollback()
                raise

    def list_all(self) -> List[PendingOperation]:
        """Snapshot of all pending operations in insertion order ([] when unreadable right now)"""
        try:
            with self.lock, self.app.app_context():
                try:
                    rows = db.session.query(PendingOperationRecord).order_by(PendingOperationRecord.seq).all()
                    operations = []
                    unreadable = []
                    for row in rows:
                        try:
                            operations.append(row.to_operation())
                        except (ValueError, TypeError) as e:
                            logging.error(f"[PendingStore] Dropping unreadable operation {row.op_id}: {e}")
                            unreadable.append(row)
                    if unreadable:
                        # Baris rusak dibuang supaya tidak memblokir antrian
                        for row in unreadable:
                            db.session.delete(row)
                        db.session.commit()
                    return operations
                except SQLAlchemyError:
                    db.session.rollback()
                    raise
        except SQLAlchemyError as e:
            logging.error(f"[PendingStore] Could not read pending operations: {e}")
            self._recover(e)
            return []

    def get(self, op_id: str) -> Optional[PendingOperation]:
        try:
            with self.lock, self.app.app_context():
                row = db.session.query(PendingOperationRecord).filter_by(op_id=op_id).first()
                return row.to_operation() if row else None
        except SQLAlchemyError as e:
            logging.error(f"[PendingStore] Lookup of {op_id} failed: {e}")
            return None

    def update(self, operation: PendingOperation):
        """Write back retry_count/last_attempt_at (insert if the row vanished)"""
        logging.info(f"[PendingStore] Updating operation ID: {operation.id} (retries: {operation.retry_count})")
        try:
            with self.lock, self.app.app_context():
                try:
                    row = db.session.query(PendingOperationRecord).filter_by(op_id=operation.id).first()
                    if row is None:
                        db.session.add(PendingOperationRecord.from_operation(operation))
                    else:
                        row.apply_operation(operation)
                    db.session.commit()
                except SQLAlchemyError:
                    db.session.rollback()
                    raise
        except SQLAlchemyError as e:
            # Baris lama tetap ada; siklus berikutnya mencoba lagi
            logging.error(f"[PendingStore] Update of {operation.id} failed: {e}")
            self._recover(e)

    def remove(self, op_id: str):
        logging.info(f"[PendingStore] Deleting operation ID: {op_id}")
        try:
            with self.lock, self.app.app_context():
                try:
                    db.session.query(PendingOperationRecord).filter_by(op_id=op_id).delete()
                    db.session.commit()
                except SQLAlchemyError:
                    db.session.rollback()
                    raise
        except SQLAlchemyError as e:
            logging.error(f"[PendingStore] Delete of {op_id} failed: {e}")
            self._recover(e)

    def count(self) -> int:
        try:
            with self.lock, self.app.app_context():
                return db.session.query(PendingOperationRecord).count()
        except SQLAlchemyError as e:
            logging.error(f"[PendingStore] Count failed: {e}")
            return 0

    # ---------- corruption handling ----------

    def _recover(self, error) -> bool:
        """Reinitialise only when the table is missing or unreadable; True if it was reset"""
        if is_transient_error(error):
            logging.warning("[PendingStore] Database busy, keeping pending operations for the next attempt")
            return False
        if not self.is_corrupted():
            return False
        self.reinitialize()
        return True

    def is_corrupted(self) -> bool:
        """Table missing or its rows cannot be selected with the current schema"""
        with self.lock, self.app.app_context():
            try:
                if not inspect(db.engine).has_table(PendingOperationRecord.__tablename__):
                    return True
                db.session.query(PendingOperationRecord).limit(1).all()
                return False
            except SQLAlchemyError as e:
                db.session.rollback()
                if is_transient_error(e):
                    return False
                logging.error(f"[PendingStore] Integrity check failed: {e}")
                return True

    def reinitialize(self):
        """Drop and recreate the pending_operations table, leaving it empty"""
        with self.lock, self.app.app_context():
            try:
                db.session.rollback()
                table = PendingOperationRecord.__table__
                table.drop(db.engine, checkfirst=True)
                table.create(db.engine, checkfirst=True)
                logging.warning("[PendingStore] Store reinitialised (pending operations discarded)")
            except SQLAlchemyError as e:
                logging.error(f"[PendingStore] Reinitialisation failed: {e}")
