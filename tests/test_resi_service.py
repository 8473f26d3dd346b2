import pytest

from exceptions import ExpeditionNotFoundError, GatewayError, ResiValidationError


def test_scan_requires_resi(service):
    with pytest.raises(ResiValidationError, match="Nomor resi tidak boleh kosong"):
        service.enqueue_scan("  ", "1", "JNE")


def test_scan_requires_expedition_and_sack(service):
    with pytest.raises(ResiValidationError, match="Pilih Expedisi dan No Karung"):
        service.enqueue_scan("RESI1", "", "JNE")
    with pytest.raises(ResiValidationError, match="Pilih Expedisi dan No Karung"):
        service.enqueue_scan("RESI1", "1", None)


def test_scan_rejects_unknown_resi_for_regular_courier(service):
    with pytest.raises(ResiValidationError, match="Resi tidak ditemukan di database ekspedisi"):
        service.enqueue_scan("RESI1", "1", "JNE")


def test_scan_rejects_courier_mismatch(service, gateway):
    gateway.add_expedition("RESI1", "SPX")

    with pytest.raises(ResiValidationError, match="Ini milik SPX"):
        service.enqueue_scan("RESI1", "1", "JNE")


def test_unknown_resi_scanned_as_id_becomes_id_rekomendasi(service, context):
    operation = service.enqueue_scan("RESI-NEW", "2", "id")

    assert operation.payload.courier_name == "ID_REKOMENDASI"
    assert context.pending_count() == 1


def test_id_scan_rejects_resi_of_other_courier(service, gateway):
    gateway.add_expedition("RESI1", "JNT")

    with pytest.raises(ResiValidationError, match="bukan milik ekspedisi ID"):
        service.enqueue_scan("RESI1", "1", "ID")


def test_scan_rejects_duplicate_in_pending_queue(service, gateway):
    gateway.add_expedition("RESI1", "JNE")
    service.enqueue_scan("RESI1", "1", "JNE")

    with pytest.raises(ResiValidationError, match="Resi duplikat"):
        service.enqueue_scan("resi1", "1", "JNE")


def test_scan_into_other_sack_is_marked_rescan(service, gateway):
    gateway.add_expedition("RESI1", "JNE")
    gateway.add_receipt("RESI1", "1", "JNE")

    operation = service.enqueue_scan("RESI1", "2", "JNE")

    assert operation.payload.is_rescan is True


def test_scan_rejects_duplicate_already_synced(service, gateway):
    gateway.add_expedition("RESI1", "JNE")
    gateway.add_receipt("RESI1", "1", "JNE")

    with pytest.raises(ResiValidationError, match="Resi duplikat"):
        service.enqueue_scan("RESI1", "1", "JNE")


def test_confirm_requires_expedition(service, context):
    with pytest.raises(ExpeditionNotFoundError) as excinfo:
        service.enqueue_confirm("RESI404")

    assert excinfo.value.resi_number == "RESI404"
    assert context.pending_count() == 0


def test_confirm_carries_expedition_details(service, gateway):
    gateway.add_expedition("RESI1", "jnt", created="2024-01-05T08:00:00")

    operation = service.enqueue_confirm("RESI1")

    assert operation.payload.courier_name == "JNT"
    assert operation.payload.expedisi_created == "2024-01-05T08:00:00"


def test_cancel_without_expedition_still_enqueues(service):
    operation = service.enqueue_cancel("RESI404")

    assert operation.payload.keterangan == "BATAL"
    assert operation.payload.fallback_created


def test_cancel_tolerates_lookup_failure(service, gateway, monkeypatch):
    def broken_lookup(resi_number):
        raise GatewayError("offline")

    monkeypatch.setattr(gateway, "find_expedition_by_resi", broken_lookup)

    operation = service.enqueue_cancel("RESI1")

    assert operation.resi_number == "RESI1"


def test_toggle_follow_up_enqueues_new_status(service):
    operation = service.enqueue_toggle_follow_up("RESI1", 1)

    assert operation.payload.new_cekfu_status is True


def test_delete_restores_cache_when_remote_fails(service, gateway, today):
    gateway.add_receipt("RESI1", "1", "JNE")
    before = service.receipts_for_date(today)
    gateway.always_fail = True

    with pytest.raises(GatewayError):
        service.delete_resi("RESI1", today.isoformat())

    cached = service.cache.get(("all_resi_data", today.isoformat()))
    assert [record.resi for record in cached] == [record.resi for record in before]
    assert "resi1" in gateway.receipts


def test_delete_removes_receipt_and_invalidates(service, gateway, today):
    gateway.add_receipt("RESI1", "3", "JNE")
    service.receipts_for_date(today)
    service.karung_summary(today, "JNE")

    deleted = service.delete_resi("RESI1")

    assert deleted.resi == "RESI1"
    assert "resi1" not in gateway.receipts
    assert service.cache.is_stale(("all_resi_data", today.isoformat()))
    assert service.cache.is_stale(("karung_summary", today.isoformat(), "JNE"))
    assert service.karung_summary(today, "JNE") == []


def test_karung_summary_and_last_karung(service, gateway, today):
    gateway.add_receipt("R1", "2", "JNE")
    gateway.add_receipt("R2", "10", "JNE")
    gateway.add_receipt("R3", "2", "JNE")
    gateway.add_receipt("R4", "0", "BATAL", schedule="batal")
    gateway.add_receipt("R5", "7", "SPX")

    assert service.karung_summary(today, "jne") == [
        {'karung': '2', 'count': 2},
        {'karung': '10', 'count': 1},
    ]
    assert service.last_karung(today, "JNE") == 10
    assert service.last_karung(today, "INSTAN") == 0


def test_courier_summaries_include_pending_scan(service, gateway, today):
    gateway.add_expedition("RESI1", "JNE")
    gateway.add_expedition("RESI2", "JNE")
    service.enqueue_scan("RESI1", "1", "JNE")

    summaries = {summary['name']: summary for summary in service.courier_summaries(today.isoformat())}

    assert summaries["JNE"]['total_transaksi'] == 2
    assert summaries["JNE"]['total_scan'] == 1
    assert summaries["JNE"]['sisa'] == 1
    assert summaries["JNE"]['jumlah_karung'] == 1
    assert list(summaries) == ["ID", "JNE", "SPX", "INSTAN", "SICEPAT", "JNT"]


def test_invalid_date_is_rejected(service):
    with pytest.raises(ResiValidationError):
        service.courier_summaries("kemarin sore")


def test_offline_id_scan_is_still_queued(service, gateway, context):
    gateway.offline = True

    operation = service.enqueue_scan("RESI1", "1", "ID")

    assert operation.payload.courier_name == "ID_REKOMENDASI"
    assert context.pending_count() == 1


def test_offline_scan_for_regular_courier_is_queued(service, gateway, context):
    gateway.offline = True

    operation = service.enqueue_scan("RESI1", "3", "JNE")

    assert operation.payload.courier_name == "JNE"
    assert operation.payload.is_rescan is False
    assert context.pending_count() == 1


def test_offline_scan_uses_cached_window_for_courier_check(service, gateway):
    gateway.add_expedition("RESI1", "SPX")
    service.all_expeditions_window()
    service.coordinator.invalidate_today()
    gateway.offline = True

    with pytest.raises(ResiValidationError, match="Ini milik SPX"):
        service.enqueue_scan("RESI1", "1", "JNE")


def test_offline_scan_still_rejects_pending_duplicate(service, gateway):
    gateway.offline = True
    service.enqueue_scan("RESI1", "1", "JNE")

    with pytest.raises(ResiValidationError, match="Resi duplikat"):
        service.enqueue_scan("RESI1", "1", "JNE")


def test_scan_records_enqueue_time(service, gateway):
    gateway.add_expedition("RESI1", "JNE")

    operation = service.enqueue_scan("RESI1", "1", "JNE")

    assert operation.payload.created
    assert service.pending_operations()[0].payload.created == operation.payload.created
