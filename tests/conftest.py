from datetime import datetime

import pytest
import pytz

from app import create_app
from exceptions import GatewayError
from models import (
    ExpeditionRecord,
    ReceiptRecord,
    normalize_expedition_name,
    normalize_resi,
    parse_timestamp,
    utc_now_iso,
)

TIMEZONE = "Asia/Jakarta"


def local_today():
    return datetime.now(pytz.timezone(TIMEZONE)).date()


class FakeGateway:
    """In-memory stand-in for SupabaseGateway (receipts keyed by resi, like the upsert conflict key)"""

    def __init__(self):
        self.receipts = {}
        self.expeditions = {}
        self.calls = []
        self.fail_times = 0
        self.always_fail = False
        self.offline = False

    def _write(self, name):
        self.calls.append(name)
        if self.offline:
            raise GatewayError("Koneksi ke server gagal")
        if self.always_fail:
            raise GatewayError("Koneksi ke server gagal", status_code=503)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise GatewayError("Koneksi ke server gagal", status_code=503)

    def _read(self):
        if self.offline:
            raise GatewayError("Koneksi ke server gagal")

    # helpers used by tests
    def add_expedition(self, resi, courier, created=None, flag="NO"):
        created = created or f"{local_today().isoformat()}T09:00:00"
        record = ExpeditionRecord(resi, couriername=courier, created=created, flag=flag)
        self.expeditions[normalize_resi(resi)] = record
        return record

    def add_receipt(self, resi, nokarung, keterangan, schedule="ontime", created=None):
        record = ReceiptRecord(resi, nokarung, created or utc_now_iso(), keterangan, schedule)
        self.receipts[normalize_resi(resi)] = record
        return record

    # tbl_resi
    def insert_receipt(self, record):
        self._write("insert_receipt")
        self.receipts[normalize_resi(record.resi)] = record.copy()

    def upsert_receipt(self, record, conflict_key="Resi"):
        self._write("upsert_receipt")
        self.receipts[normalize_resi(record.resi)] = record.copy()

    def update_receipt(self, resi_number, patch):
        self._write("update_receipt")
        record = self.receipts.get(normalize_resi(resi_number))
        if record is None:
            return []
        row = record.to_row()
        row.update(patch)
        self.receipts[normalize_resi(resi_number)] = ReceiptRecord.from_row(row)
        return [row]

    def delete_receipt(self, resi_number):
        self._write("delete_receipt")
        self.receipts.pop(normalize_resi(resi_number), None)

    def list_receipts_by_date_range(self, start, end):
        self._read()
        result = []
        for record in self.receipts.values():
            created = parse_timestamp(record.created)
            if created is None:
                continue
            if created.tzinfo is None:
                created = pytz.utc.localize(created)
            if start <= created <= end:
                result.append(record.copy())
        return result

    # tbl_expedisi
    def update_expedition_flag(self, resi_number, flag):
        self._write("update_expedition_flag")
        record = self.expeditions.get(normalize_resi(resi_number))
        if record is None:
            return []
        record.flag = flag
        return [record.to_row()]

    def update_expedition_follow_up(self, resi_number, cekfu):
        self._write("update_expedition_follow_up")
        record = self.expeditions.get(normalize_resi(resi_number))
        if record is None:
            return []
        record.cekfu = bool(cekfu)
        return [record.to_row()]

    def find_expedition_by_resi(self, resi_number):
        self._read()
        record = self.expeditions.get(normalize_resi(resi_number))
        return record.copy() if record is not None else None

    def list_expeditions_by_date_range(self, start=None, end=None):
        self._read()
        result = []
        for record in self.expeditions.values():
            created = parse_timestamp(record.created)
            if start is not None and end is not None:
                if created is None or not (start <= created.date() < end):
                    continue
            result.append(record.copy())
        return result

    # RPC
    def rpc(self, function_name, params=None):
        return []

    def get_resi_for_expedition_and_date(self, courier_name, selected_date):
        self._read()
        return [record.to_row() for record in self.receipts.values()
                if normalize_expedition_name(record.keterangan) == courier_name]


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def app(tmp_path, gateway):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'pending.db'}",
        "SQLALCHEMY_ENGINE_OPTIONS": {"connect_args": {"check_same_thread": False, "timeout": 0.5}},
        "SUPABASE_URL": "",
        "SYNC_AUTOSTART": False,
        "APP_TIMEZONE": TIMEZONE,
        "KNOWN_EXPEDITIONS": None,
    }, gateway=gateway)
    yield app
    app.extensions["change_feed_watcher"].cancel()
    app.extensions["resi_sync"].stop(timeout=2)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def context(app):
    return app.extensions["resi_sync"]


@pytest.fixture
def store(context):
    return context.store


@pytest.fixture
def service(app):
    return app.extensions["resi_service"]


@pytest.fixture
def today():
    return local_today()
