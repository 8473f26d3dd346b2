"""
Per-courier dashboard summaries built from three datasets:

  * all_expeditions       - tbl_expedisi rows for a trailing window (resi -> courier lookup)
  * expeditions_for_date  - tbl_expedisi rows for the selected date
  * receipts_for_date     - tbl_resi rows for the selected date

compute_courier_summaries is a pure function: same inputs, same output, in
the order of the known-courier list.
"""

import logging
from typing import Dict, Iterable, List, Optional

import pytz

from cache_invalidation import format_date
from models import (
    DEFAULT_KARUNG,
    KETERANGAN_BATAL,
    KETERANGAN_ID_REKOMENDASI,
    KNOWN_EXPEDITIONS,
    CourierSummary,
    ExpeditionFlag,
    ExpeditionRecord,
    OperationType,
    ReceiptRecord,
    Schedule,
    normalize_expedition_name,
    normalize_resi,
)

ONTIME_SCHEDULES = (Schedule.ONTIME, Schedule.IDREK)


def _as_expedition(item) -> ExpeditionRecord:
    return item if isinstance(item, ExpeditionRecord) else ExpeditionRecord.from_row(item)


def _as_receipt(item) -> ReceiptRecord:
    return item if isinstance(item, ReceiptRecord) else ReceiptRecord.from_row(item)


def build_resi_courier_map(expeditions: Iterable) -> Dict[str, str]:
    """normalized resi -> normalized courier name"""
    resi_map = {}
    for item in expeditions:
        record = _as_expedition(item)
        resi = normalize_resi(record.resino)
        courier = normalize_expedition_name(record.couriername)
        if resi and courier:
            resi_map[resi] = courier
    return resi_map


def compute_courier_summaries(all_expeditions: Iterable, expeditions_for_date: Iterable,
                              receipts_for_date: Iterable,
                              known_couriers: Optional[List[str]] = None) -> List[CourierSummary]:
    couriers = list(known_couriers or KNOWN_EXPEDITIONS)
    resi_map = build_resi_courier_map(all_expeditions)
    summaries = {name: CourierSummary(name) for name in couriers}

    for item in expeditions_for_date:
        record = _as_expedition(item)
        courier = normalize_expedition_name(record.couriername)
        summary = summaries.get(courier)
        if summary is None:
            logging.debug(f"Expedition {record.resino} has unknown courier {record.couriername!r}, excluded")
            continue
        summary.total_transaksi += 1
        if record.flag == ExpeditionFlag.NO:
            summary.sisa += 1

    for item in receipts_for_date:
        record = _as_receipt(item)
        courier = resi_map.get(normalize_resi(record.resi)) or normalize_expedition_name(record.keterangan)
        summary = summaries.get(courier)
        if summary is None:
            logging.debug(f"Resi {record.resi} resolves to unknown courier {courier!r}, excluded")
            continue

        if record.schedule in ONTIME_SCHEDULES:
            summary.total_scan += 1
        elif record.schedule == Schedule.BATAL:
            summary.total_batal += 1
        elif record.schedule == Schedule.LATE:
            summary.total_scan_follow_up += 1

        if (record.keterangan or "").strip().upper() == KETERANGAN_ID_REKOMENDASI:
            summary.id_rekomendasi += 1
        if record.nokarung:
            summary.jumlah_karung.add(record.nokarung)

    result = []
    for name in couriers:
        summary = summaries[name]
        summary.jumlah_karung = len(summary.jumlah_karung)
        result.append(summary)
    return result


# ============= OPTIMISTIC OVERLAY =============

def _operation_date(operation, tz) -> str:
    return pytz.utc.localize(operation.enqueued_at).astimezone(tz).date().isoformat()


def _timestamp_date(value, tz) -> Optional[str]:
    if not value:
        return None
    try:
        return format_date(value, tz)
    except ValueError:
        return None


def apply_pending_operations(operations, all_expeditions, expeditions_for_date, receipts_for_date,
                             selected_date, timezone_name="Asia/Jakarta"):
    """Overlay not-yet-synced operations on fetched data (inputs are not mutated).

    Returns (all_expeditions, expeditions_for_date, receipts_for_date).
    Receipts are only added when their creation date is the selected date.
    """
    tz = pytz.timezone(timezone_name)
    selected = format_date(selected_date, tz)

    all_map = {}
    for item in all_expeditions:
        record = _as_expedition(item).copy()
        all_map[normalize_resi(record.resino)] = record
    for_date = [_as_expedition(item).copy() for item in expeditions_for_date]
    for_date_index = {normalize_resi(record.resino): record for record in for_date}
    receipts = [_as_receipt(item).copy() for item in receipts_for_date]

    def find_receipt(resi):
        for record in receipts:
            if normalize_resi(record.resi) == resi:
                return record
        return None

    def set_expedition(resi, **changes):
        for record in (all_map.get(resi), for_date_index.get(resi)):
            if record is not None:
                for key, value in changes.items():
                    setattr(record, key, value)

    for operation in operations:
        resi = normalize_resi(operation.resi_number)
        if not resi:
            continue
        payload = operation.payload
        op_date = _operation_date(operation, tz)
        op_created = pytz.utc.localize(operation.enqueued_at).isoformat()

        if operation.type == OperationType.SCAN:
            keterangan = payload.courier_name or KETERANGAN_ID_REKOMENDASI
            schedule = Schedule.IDREK if keterangan.upper() == KETERANGAN_ID_REKOMENDASI else Schedule.ONTIME
            created = payload.created or op_created
            existing = find_receipt(resi)
            if existing is not None:
                existing.nokarung = payload.karung
            elif (_timestamp_date(created, tz) or op_date) == selected:
                receipts.append(ReceiptRecord(operation.resi_number, payload.karung, created, keterangan, schedule))
            if resi not in all_map:
                all_map[resi] = ExpeditionRecord(operation.resi_number, couriername=payload.courier_name,
                                                 created=created, flag=ExpeditionFlag.YES)
            set_expedition(resi, flag=ExpeditionFlag.YES, cekfu=False)

        elif operation.type == OperationType.CANCEL:
            existing = find_receipt(resi)
            if existing is not None:
                existing.schedule = Schedule.BATAL
                existing.keterangan = payload.keterangan or KETERANGAN_BATAL
            else:
                created = payload.fallback_created or op_created
                if _timestamp_date(created, tz) == selected:
                    receipts.append(ReceiptRecord(operation.resi_number, DEFAULT_KARUNG, created,
                                                  payload.keterangan or KETERANGAN_BATAL, Schedule.BATAL))
            set_expedition(resi, flag=ExpeditionFlag.BATAL)

        elif operation.type == OperationType.CONFIRM:
            existing = find_receipt(resi)
            if existing is not None:
                existing.schedule = Schedule.ONTIME
                existing.keterangan = payload.courier_name or existing.keterangan
            else:
                created = payload.expedisi_created or op_created
                if _timestamp_date(created, tz) == selected:
                    receipts.append(ReceiptRecord(operation.resi_number, DEFAULT_KARUNG, created,
                                                  payload.courier_name, Schedule.ONTIME))
            set_expedition(resi, flag=ExpeditionFlag.YES)

        elif operation.type == OperationType.TOGGLE_FOLLOW_UP:
            set_expedition(resi, cekfu=payload.new_cekfu_status)

    return list(all_map.values()), for_date, receipts
