"""
Background sync: drains the pending-operation store into the remote backend.

One SyncEngineContext exists per process (built by create_app). It owns the
timer thread, the store handle and the gateway reference; anything that needs
a manual sync gets the context passed in.
"""

import logging
import threading
from typing import List, Optional, Tuple

import pytz

from cache_invalidation import format_date
from models import (
    DEFAULT_KARUNG,
    KETERANGAN_BATAL,
    KETERANGAN_ID_REKOMENDASI,
    ExpeditionFlag,
    OperationType,
    PendingOperation,
    ReceiptRecord,
    Schedule,
    normalize_expedition_name,
    utc_now,
    utc_now_iso,
)

SYNC_INTERVAL_SECONDS = 60
MAX_RETRIES = 5


# ============= REMOTE APPLY ROUTINES =============
# Each routine returns (effective timestamp, courier) for cache invalidation.

def apply_scan(gateway, payload) -> Tuple[Optional[str], Optional[str]]:
    keterangan = payload.courier_name or KETERANGAN_ID_REKOMENDASI
    schedule = Schedule.IDREK if keterangan.strip().upper() == KETERANGAN_ID_REKOMENDASI else Schedule.ONTIME
    created = payload.created or utc_now_iso()

    updated = []
    if payload.is_rescan:
        updated = gateway.update_receipt(payload.resi_number, {'nokarung': payload.karung})
    if not updated:
        # Upsert: aplikasi ulang payload yang sama tidak membuat resi ganda
        gateway.upsert_receipt(ReceiptRecord(payload.resi_number, payload.karung, created, keterangan, schedule))

    if not gateway.update_expedition_flag(payload.resi_number, ExpeditionFlag.YES):
        logging.info(f"Resi {payload.resi_number} not in tbl_expedisi, kept as ID rekomendasi")
    return created, keterangan


def apply_confirm(gateway, payload) -> Tuple[Optional[str], Optional[str]]:
    gateway.update_expedition_flag(payload.resi_number, ExpeditionFlag.YES)

    created = payload.expedisi_created
    courier_name = payload.courier_name
    if not created or not courier_name:
        expedition = gateway.find_expedition_by_resi(payload.resi_number)
        if expedition is not None:
            created = created or expedition.created
            courier_name = courier_name or normalize_expedition_name(expedition.couriername)
    created = created or utc_now_iso()

    # Resi yang sudah discan: nokarung dipertahankan
    patch = {'schedule': Schedule.ONTIME}
    if courier_name:
        patch['Keterangan'] = courier_name
    if not gateway.update_receipt(payload.resi_number, patch):
        gateway.upsert_receipt(ReceiptRecord(payload.resi_number, DEFAULT_KARUNG, created, courier_name,
                                             Schedule.ONTIME))
    return created, courier_name


def apply_cancel(gateway, payload) -> Tuple[Optional[str], Optional[str]]:
    expedition = gateway.find_expedition_by_resi(payload.resi_number)
    courier_name = None
    created = None
    if expedition is not None:
        created = expedition.created
        courier_name = expedition.couriername
    created = created or payload.fallback_created or utc_now_iso()

    gateway.upsert_receipt(ReceiptRecord(payload.resi_number, DEFAULT_KARUNG, created,
                                         payload.keterangan or KETERANGAN_BATAL, Schedule.BATAL))
    if expedition is not None:
        gateway.update_expedition_flag(payload.resi_number, ExpeditionFlag.BATAL)
    return created, courier_name


def apply_toggle_follow_up(gateway, payload) -> Tuple[Optional[str], Optional[str]]:
    gateway.update_expedition_follow_up(payload.resi_number, payload.new_cekfu_status)
    return None, None


REMOTE_APPLY = {
    OperationType.SCAN: apply_scan,
    OperationType.CONFIRM: apply_confirm,
    OperationType.CANCEL: apply_cancel,
    OperationType.TOGGLE_FOLLOW_UP: apply_toggle_follow_up,
}


def apply_operation(gateway, operation: PendingOperation):
    handler = REMOTE_APPLY.get(operation.type)
    if handler is None:
        raise ValueError(f"No remote handler for operation type {operation.type}")
    return handler(gateway, operation.payload)


class SyncResult:
    def __init__(self, skipped=False):
        self.skipped = skipped
        self.synced = 0
        self.failed = 0
        self.dropped = 0
        self.invalidated = []

    def to_dict(self):
        return {
            'skipped': self.skipped,
            'synced': self.synced,
            'failed': self.failed,
            'dropped': self.dropped,
        }


class SyncEngineContext:
    def __init__(self, store, gateway, coordinator, notifier, interval_seconds=SYNC_INTERVAL_SECONDS,
                 max_retries=MAX_RETRIES, timezone_name="Asia/Jakarta"):
        self.store = store
        self.gateway = gateway
        self.coordinator = coordinator
        self.notifier = notifier
        self.interval_seconds = interval_seconds
        self.max_retries = max_retries
        self.tz = pytz.timezone(timezone_name)

        # Guard re-entrancy: siklus baru dilewati (tidak diantrikan) jika masih draining
        self._drain_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread = None
        self.last_result = None
        self.last_sync_at = None

    # ---------- queue facade ----------

    def enqueue(self, payload) -> PendingOperation:
        operation = PendingOperation.create(payload)
        return self.store.enqueue(operation)

    def pending_operations(self) -> List[PendingOperation]:
        return self.store.list_all()

    def pending_count(self) -> int:
        return self.store.count()

    @property
    def is_syncing(self):
        return self._drain_lock.locked()

    @property
    def is_running(self):
        return self._thread is not None and self._thread.is_alive()

    # ---------- drain cycle ----------

    def perform_sync(self) -> SyncResult:
        """Run one drain cycle: Idle -> Draining -> Idle"""
        if not self._drain_lock.acquire(blocking=False):
            logging.info("Sync already in progress, skipping this interval.")
            return SyncResult(skipped=True)

        result = SyncResult()
        touched = []
        try:
            operations = self.store.list_all()
            if not operations:
                logging.debug("No pending operations to sync.")
                return result

            logging.info(f"Found {len(operations)} pending operations.")
            for operation in operations:
                try:
                    effect = apply_operation(self.gateway, operation)
                except Exception as e:
                    self._handle_failure(operation, e, result)
                    continue

                self.store.remove(operation.id)
                result.synced += 1
                touched.append(effect)
                logging.info(f"Successfully synced '{operation.type}' for resi: {operation.resi_number}")

            if result.synced > 0:
                result.invalidated = self._invalidate_after_sync(touched)
            return result
        finally:
            self.last_result = result
            self.last_sync_at = utc_now()
            self._drain_lock.release()

    def _handle_failure(self, operation, error, result):
        operation.retry_count += 1
        operation.last_attempt_at = utc_now()
        logging.error(f"Failed to sync operation {operation.id} (type: {operation.type}, "
                      f"resi: {operation.resi_number}): {error}")

        if operation.retry_count >= self.max_retries:
            logging.error(f"Operation {operation.id} reached max retries. Deleting.")
            self.store.remove(operation.id)
            result.dropped += 1
            self.notifier.error(
                f"Gagal menyinkronkan resi {operation.resi_number} setelah beberapa percobaan. "
                f"Silakan coba lagi secara manual.",
                resi_number=operation.resi_number,
            )
        else:
            self.store.update(operation)
            result.failed += 1

    def _invalidate_after_sync(self, touched):
        invalidated = []
        today = self.coordinator.today()
        try:
            invalidated += self.coordinator.invalidate_today()
            couriers = set()
            for created, courier_name in touched:
                if courier_name:
                    couriers.add(courier_name)
                effective_date = self._effective_date(created) or today
                if effective_date != today or courier_name:
                    invalidated += self.coordinator.invalidate(effective_date, courier_name)
            self.coordinator.refresh_critical(today, couriers)
        except Exception as e:
            logging.error(f"Cache invalidation after sync failed: {e}")
        return invalidated

    def _effective_date(self, created):
        if not created:
            return None
        try:
            return format_date(created, self.tz)
        except ValueError:
            return None

    # ---------- scheduling ----------

    def start(self):
        """Sync once now, then every interval_seconds, on a daemon thread"""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="resi-sync", daemon=True)
        self._thread.start()
        logging.info(f"Background sync started (interval {self.interval_seconds}s)")

    def stop(self, timeout=None):
        """Cancel the interval; an in-flight cycle is allowed to finish"""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logging.info("Background sync stopped")

    def _run_loop(self):
        while True:
            try:
                self.perform_sync()
            except Exception as e:
                logging.error(f"Error during sync process: {e}")
            if self._stop_event.wait(self.interval_seconds):
                break

    def trigger_sync_now(self, wait=False):
        """Manual trigger; fire-and-forget unless wait=True"""
        if wait:
            return self.perform_sync()
        threading.Thread(target=self._safe_sync, name="resi-sync-manual", daemon=True).start()
        return None

    def _safe_sync(self):
        try:
            self.perform_sync()
        except Exception as e:
            logging.error(f"Manual sync failed: {e}")

    def status(self):
        return {
            'running': self.is_running,
            'syncing': self.is_syncing,
            'pending': self.pending_count(),
            'last_sync_at': self.last_sync_at.isoformat() if self.last_sync_at else None,
            'last_result': self.last_result.to_dict() if self.last_result else None,
        }
