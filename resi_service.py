"""
UI-facing resi operations: validate, enqueue, read cached dashboard data.
Mutations go through the pending-operation queue; only deletion is direct.
"""

import logging
from datetime import date, datetime, time, timedelta

import pytz

from cache_invalidation import format_date
from exceptions import ExpeditionNotFoundError, GatewayError, ResiValidationError
from models import (
    KETERANGAN_BATAL,
    KETERANGAN_ID_REKOMENDASI,
    KNOWN_EXPEDITIONS,
    CancelPayload,
    ConfirmPayload,
    OperationType,
    ScanPayload,
    ToggleFollowUpPayload,
    normalize_expedition_name,
    normalize_resi,
    summaries_to_dicts,
    utc_now_iso,
)
from optimistic import with_optimistic_update
from reconciliation import apply_pending_operations, build_resi_courier_map, compute_courier_summaries

# TTL cache (detik)
EXPEDISI_WINDOW_TTL = 60 * 60 * 4
DATE_DATA_TTL = 30
DUPLICATE_CHECK_TTL = 30


class ResiService:
    def __init__(self, context, cache, known_expeditions=None, window_days=3):
        self.context = context
        self.cache = cache
        self.known_expeditions = list(known_expeditions or KNOWN_EXPEDITIONS)
        self.window_days = max(1, window_days)
        self.tz = context.tz

    @property
    def gateway(self):
        return self.context.gateway

    @property
    def coordinator(self):
        return self.context.coordinator

    def today(self) -> date:
        return datetime.now(self.tz).date()

    def _parse_date(self, value) -> date:
        if value is None or value == "":
            return self.today()
        if isinstance(value, date) and not isinstance(value, datetime):
            return value
        try:
            return date.fromisoformat(format_date(value, self.tz))
        except ValueError:
            raise ResiValidationError(f"Tanggal tidak valid: {value}")

    # ============= CACHED DATASETS =============

    def all_expeditions_window(self):
        """tbl_expedisi rows for the trailing window (for resi -> courier lookups)"""
        def load():
            end = self.today() + timedelta(days=1)
            start = end - timedelta(days=self.window_days)
            return self.gateway.list_expeditions_by_date_range(start, end)
        return self.cache.get_or_load(("all_expedisi_unfiltered",), load, EXPEDISI_WINDOW_TTL)

    def expedition_map(self):
        return {normalize_resi(record.resino): record for record in self.all_expeditions_window()
                if normalize_resi(record.resino)}

    def expeditions_for_date(self, selected_date):
        day = self._parse_date(selected_date)
        return self.cache.get_or_load(
            ("all_expedisi_data", day.isoformat()),
            lambda: self.gateway.list_expeditions_by_date_range(day, day + timedelta(days=1)),
            DATE_DATA_TTL,
        )

    def receipts_for_date(self, selected_date):
        day = self._parse_date(selected_date)

        def load():
            start = self.tz.localize(datetime.combine(day, time.min)).astimezone(pytz.utc)
            end = self.tz.localize(datetime.combine(day, time.max)).astimezone(pytz.utc)
            return self.gateway.list_receipts_by_date_range(start, end)

        return self.cache.get_or_load(("all_resi_data", day.isoformat()), load, DATE_DATA_TTL)

    def _receipts_for_courier(self, day, bucket):
        resi_map = build_resi_courier_map(self.all_expeditions_window())
        receipts = []
        for record in self.receipts_for_date(day):
            courier = resi_map.get(normalize_resi(record.resi)) or normalize_expedition_name(record.keterangan)
            if courier == bucket:
                receipts.append(record)
        return receipts

    def karung_summary(self, selected_date, courier_name):
        """[{'karung': '1', 'count': 12}, ...] for one courier on one date"""
        day = self._parse_date(selected_date)
        bucket = normalize_expedition_name(courier_name)

        def load():
            counts = {}
            for record in self._receipts_for_courier(day, bucket):
                if record.nokarung and record.schedule != "batal":
                    counts[record.nokarung] = counts.get(record.nokarung, 0) + 1
            return [{'karung': karung, 'count': counts[karung]} for karung in sorted(counts, key=_karung_sort_key)]

        return self.cache.get_or_load(("karung_summary", day.isoformat(), bucket), load, DATE_DATA_TTL)

    def last_karung(self, selected_date, courier_name):
        """Highest numeric sack used by the courier on that date (0 when none)"""
        day = self._parse_date(selected_date)
        bucket = normalize_expedition_name(courier_name)

        def load():
            numbers = [int(record.nokarung) for record in self._receipts_for_courier(day, bucket)
                       if record.nokarung and str(record.nokarung).isdigit()]
            return max(numbers) if numbers else 0

        return self.cache.get_or_load(("last_karung", day.isoformat(), bucket), load, DATE_DATA_TTL)

    def resi_for_expedition(self, selected_date, courier_name):
        day = self._parse_date(selected_date)
        bucket = normalize_expedition_name(courier_name)
        return self.cache.get_or_load(
            ("all_resi_for_expedition", day.isoformat(), bucket),
            lambda: self.gateway.get_resi_for_expedition_and_date(bucket, day),
            DUPLICATE_CHECK_TTL,
        )

    # ============= ENQUEUE (optimistic, offline tolerant) =============

    def find_expedition(self, resi_number):
        record = self.expedition_map().get(normalize_resi(resi_number))
        if record is not None:
            return record
        return self.gateway.find_expedition_by_resi(resi_number)

    def _lookup_expedition_offline_tolerant(self, resi_number):
        """(record, verified): offline falls back to the last cached window, verified=False"""
        try:
            return self.find_expedition(resi_number), True
        except GatewayError as e:
            logging.warning(f"Expedition lookup for {resi_number} failed, using cached data: {e}")
        normalized = normalize_resi(resi_number)
        for record in self.cache.peek(("all_expedisi_unfiltered",)) or []:
            if normalize_resi(record.resino) == normalized:
                return record, False
        return None, False

    def enqueue_scan(self, resi_number, karung, expedition):
        resi = (resi_number or "").strip()
        if not resi:
            raise ResiValidationError("Nomor resi tidak boleh kosong.")
        karung = str(karung).strip() if karung is not None else ""
        expedition_name = normalize_expedition_name(expedition)
        if not expedition_name or not karung:
            raise ResiValidationError("Pilih Expedisi dan No Karung terlebih dahulu.")

        record, verified = self._lookup_expedition_offline_tolerant(resi)
        actual_courier = normalize_expedition_name(record.couriername) if record else None

        if expedition_name == "ID":
            if record is not None and actual_courier != "ID":
                raise ResiValidationError(f"Resi ini bukan milik ekspedisi ID. Ini milik {record.couriername}.")
            courier_name = record.couriername if record is not None else KETERANGAN_ID_REKOMENDASI
        else:
            if record is None and verified:
                raise ResiValidationError("Resi tidak ditemukan di database ekspedisi.")
            if record is not None and actual_courier != expedition_name:
                raise ResiValidationError(
                    f"Resi ini bukan milik ekspedisi {expedition_name}. Ini milik {record.couriername}."
                )
            if record is None:
                logging.warning(f"Resi {resi} queued for {expedition_name} without expedition check (offline)")
            courier_name = expedition_name

        is_rescan = self._check_duplicate(resi, karung, expedition_name)
        operation = self.context.enqueue(ScanPayload(resi, karung, courier_name, is_rescan=is_rescan,
                                                     created=utc_now_iso()))
        logging.info(f"Resi {resi} queued for karung {karung} ({courier_name})")
        return operation

    def _check_duplicate(self, resi, karung, expedition_name):
        """Raise on a duplicate in the same sack; True when it is a rescan into another sack"""
        normalized = normalize_resi(resi)
        for operation in self.context.pending_operations():
            if (operation.type == OperationType.SCAN and normalize_resi(operation.resi_number) == normalized
                    and operation.payload.karung == karung):
                raise ResiValidationError("Resi duplikat! Data sudah ada.")

        try:
            rows = self.resi_for_expedition(self.today(), expedition_name)
        except GatewayError as e:
            logging.warning(f"Duplicate check for {resi} limited to cached/pending data: {e}")
            key = ("all_resi_for_expedition", self.today().isoformat(), normalize_expedition_name(expedition_name))
            rows = self.cache.peek(key) or []

        is_rescan = False
        for row in rows:
            if normalize_resi(row.get('Resi')) != normalized:
                continue
            if str(row.get('nokarung')) == karung:
                raise ResiValidationError("Resi duplikat! Data sudah ada.")
            is_rescan = True
        return is_rescan

    def enqueue_confirm(self, resi_number):
        resi = (resi_number or "").strip()
        if not resi:
            raise ResiValidationError("Nomor resi tidak boleh kosong.")
        record = self.find_expedition(resi)
        if record is None:
            raise ExpeditionNotFoundError(resi)
        return self.context.enqueue(ConfirmPayload(
            resi,
            expedisi_created=record.created,
            courier_name=normalize_expedition_name(record.couriername),
        ))

    def enqueue_cancel(self, resi_number):
        resi = (resi_number or "").strip()
        if not resi:
            raise ResiValidationError("Nomor resi tidak boleh kosong.")
        record, _ = self._lookup_expedition_offline_tolerant(resi)
        if record is None:
            logging.warning(f"Resi {resi} not found in tbl_expedisi. Proceeding with 'batal' using default values.")
        fallback_created = record.created if record is not None and record.created else utc_now_iso()
        return self.context.enqueue(CancelPayload(resi, fallback_created, KETERANGAN_BATAL))

    def enqueue_toggle_follow_up(self, resi_number, new_status):
        resi = (resi_number or "").strip()
        if not resi:
            raise ResiValidationError("Nomor resi tidak boleh kosong.")
        return self.context.enqueue(ToggleFollowUpPayload(resi, bool(new_status)))

    def pending_operation_count(self):
        return self.context.pending_count()

    def pending_operations(self):
        return self.context.pending_operations()

    def trigger_sync_now(self, wait=False):
        return self.context.trigger_sync_now(wait=wait)

    # ============= DIRECT DELETE (history page) =============

    def delete_resi(self, resi_number, selected_date=None):
        """Delete a receipt remotely; the cached list is patched first and restored on failure"""
        resi = (resi_number or "").strip()
        if not resi:
            raise ResiValidationError("Nomor resi tidak boleh kosong.")
        day = self._parse_date(selected_date)
        key = ("all_resi_data", day.isoformat())
        original = self.receipts_for_date(day)
        target = next((record for record in original if normalize_resi(record.resi) == normalize_resi(resi)), None)

        def patch():
            self.cache.set(key, [record for record in original if record is not target])

        def inverse():
            self.cache.set(key, original)

        with_optimistic_update(patch, inverse, lambda: self.gateway.delete_receipt(resi))

        effective_date = day
        courier_name = None
        if target is not None:
            courier_name = target.keterangan
            if target.created:
                effective_date = target.created
        if courier_name == KETERANGAN_BATAL:
            courier_name = None
        self.coordinator.invalidate(effective_date, courier_name)
        logging.info(f"Resi {resi} deleted")
        return target

    # ============= DASHBOARD =============

    def courier_summaries(self, selected_date=None):
        """Per-courier summaries for a date with pending operations overlaid"""
        day = self._parse_date(selected_date)
        all_expeditions, expeditions_for_date, receipts = apply_pending_operations(
            self.context.pending_operations(),
            self.all_expeditions_window(),
            self.expeditions_for_date(day),
            self.receipts_for_date(day),
            day,
            timezone_name=self.tz.zone,
        )
        summaries = compute_courier_summaries(all_expeditions, expeditions_for_date, receipts,
                                              self.known_expeditions)
        return summaries_to_dicts(summaries)


def _karung_sort_key(karung):
    text = str(karung)
    return (0, int(text), text) if text.isdigit() else (1, 0, text)
