import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

# Nama ekspedisi yang dikenal (sudah dinormalisasi ke UPPERCASE).
# ID_REKOMENDASI tidak masuk daftar: dipetakan ke 'ID'.
KNOWN_EXPEDITIONS = ["ID", "JNE", "SPX", "INSTAN", "SICEPAT", "JNT"]

KETERANGAN_BATAL = "BATAL"
KETERANGAN_ID_REKOMENDASI = "ID_REKOMENDASI"
DEFAULT_KARUNG = "0"

# Alias keterangan khusus -> bucket ekspedisi induknya
EXPEDITION_ALIASES = {
    KETERANGAN_ID_REKOMENDASI: "ID",
}


class OperationType:
    SCAN = "scan"
    CONFIRM = "confirm"
    CANCEL = "batal"
    TOGGLE_FOLLOW_UP = "cekfu"


class Schedule:
    ONTIME = "ontime"
    LATE = "late"
    BATAL = "batal"
    IDREK = "idrek"


class ExpeditionFlag:
    YES = "YES"
    NO = "NO"
    BATAL = "BATAL"


def utc_now() -> datetime:
    """Naive UTC timestamp, the format stored in the local database"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO timestamp coming from the backend (tolerates 'Z' suffix)"""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logging.warning(f"Unparseable timestamp from backend: {value!r}")
        return None


def normalize_resi(resi_number: Optional[str]) -> str:
    return (resi_number or "").strip().lower()


def normalize_expedition_name(name: Optional[str]) -> Optional[str]:
    """Trim + UPPERCASE, mapping special keterangan to their parent bucket"""
    if not name:
        return None
    normalized = name.strip().upper()
    if not normalized:
        return None
    return EXPEDITION_ALIASES.get(normalized, normalized)


# ============= PENDING OPERATION PAYLOADS =============

class OperationPayload:
    """Base class for the payload of one pending operation type"""

    type: str = ""
    fields: tuple = ()

    def to_dict(self) -> Dict:
        return {name: getattr(self, name) for name in self.fields}

    @classmethod
    def from_dict(cls, data: Dict):
        missing = [name for name in cls.required if name not in data]
        if missing:
            raise ValueError(f"{cls.__name__} missing fields: {', '.join(missing)}")
        return cls(**{name: data[name] for name in cls.fields if name in data})

    required: tuple = ("resi_number",)

    def __eq__(self, other):
        return type(self) is type(other) and self.to_dict() == other.to_dict()

    def __repr__(self):
        args = ", ".join(f"{name}={getattr(self, name)!r}" for name in self.fields)
        return f"{type(self).__name__}({args})"


class ScanPayload(OperationPayload):
    type = OperationType.SCAN
    fields = ("resi_number", "karung", "courier_name", "is_rescan", "created")
    required = ("resi_number", "karung")

    def __init__(self, resi_number: str, karung: str, courier_name: Optional[str] = None,
                 is_rescan: bool = False, created: Optional[str] = None):
        self.resi_number = resi_number
        self.karung = karung
        self.courier_name = courier_name
        self.is_rescan = bool(is_rescan)
        # Waktu scan (ISO UTC); dipakai sebagai tbl_resi.created saat sinkronisasi
        self.created = created


class ConfirmPayload(OperationPayload):
    type = OperationType.CONFIRM
    fields = ("resi_number", "expedisi_created", "courier_name")

    def __init__(self, resi_number: str, expedisi_created: Optional[str] = None,
                 courier_name: Optional[str] = None):
        self.resi_number = resi_number
        self.expedisi_created = expedisi_created
        self.courier_name = courier_name


class CancelPayload(OperationPayload):
    type = OperationType.CANCEL
    fields = ("resi_number", "fallback_created", "keterangan")

    def __init__(self, resi_number: str, fallback_created: Optional[str] = None,
                 keterangan: Optional[str] = KETERANGAN_BATAL):
        self.resi_number = resi_number
        self.fallback_created = fallback_created
        self.keterangan = keterangan


class ToggleFollowUpPayload(OperationPayload):
    type = OperationType.TOGGLE_FOLLOW_UP
    fields = ("resi_number", "new_cekfu_status")
    required = ("resi_number", "new_cekfu_status")

    def __init__(self, resi_number: str, new_cekfu_status: bool):
        self.resi_number = resi_number
        self.new_cekfu_status = bool(new_cekfu_status)


PAYLOAD_TYPES = {
    OperationType.SCAN: ScanPayload,
    OperationType.CONFIRM: ConfirmPayload,
    OperationType.CANCEL: CancelPayload,
    OperationType.TOGGLE_FOLLOW_UP: ToggleFollowUpPayload,
}


def payload_from_dict(op_type: str, data: Dict) -> OperationPayload:
    payload_cls = PAYLOAD_TYPES.get(op_type)
    if payload_cls is None:
        raise ValueError(f"Unknown pending operation type: {op_type}")
    return payload_cls.from_dict(data)


class PendingOperation:
    """A mutation waiting to be applied to the remote backend"""

    def __init__(self, id: str, payload: OperationPayload, enqueued_at: Optional[datetime] = None,
                 retry_count: int = 0, last_attempt_at: Optional[datetime] = None):
        self.id = id
        self.payload = payload
        self.enqueued_at = enqueued_at or utc_now()
        self.retry_count = retry_count
        self.last_attempt_at = last_attempt_at

    @classmethod
    def create(cls, payload: OperationPayload) -> "PendingOperation":
        op_id = f"{payload.type}-{payload.resi_number}-{uuid.uuid4().hex[:12]}"
        return cls(op_id, payload)

    @property
    def type(self) -> str:
        return self.payload.type

    @property
    def resi_number(self) -> str:
        return self.payload.resi_number

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'type': self.type,
            'payload': self.payload.to_dict(),
            'enqueued_at': self.enqueued_at.isoformat() if self.enqueued_at else None,
            'retry_count': self.retry_count,
            'last_attempt_at': self.last_attempt_at.isoformat() if self.last_attempt_at else None,
        }

    def __repr__(self):
        return f"PendingOperation(id={self.id!r}, type={self.type!r}, retry_count={self.retry_count})"


# ============= REMOTE RECORDS =============

class ReceiptRecord:
    """One row of tbl_resi (a physical scan event)"""

    def __init__(self, resi: str, nokarung: Optional[str] = None, created: Optional[str] = None,
                 keterangan: Optional[str] = None, schedule: Optional[str] = None):
        self.resi = resi
        self.nokarung = nokarung
        self.created = created
        self.keterangan = keterangan
        self.schedule = schedule

    @classmethod
    def from_row(cls, row: Dict) -> "ReceiptRecord":
        return cls(
            resi=row.get('Resi'),
            nokarung=row.get('nokarung'),
            created=row.get('created'),
            keterangan=row.get('Keterangan'),
            schedule=row.get('schedule'),
        )

    def to_row(self) -> Dict:
        return {
            'Resi': self.resi,
            'nokarung': self.nokarung,
            'created': self.created,
            'Keterangan': self.keterangan,
            'schedule': self.schedule,
        }

    def copy(self, **changes) -> "ReceiptRecord":
        row = self.to_row()
        record = ReceiptRecord.from_row(row)
        for key, value in changes.items():
            setattr(record, key, value)
        return record


class ExpeditionRecord:
    """One row of tbl_expedisi (an expected shipment)"""

    def __init__(self, resino: str, couriername: Optional[str] = None, orderno: Optional[str] = None,
                 chanelsales: Optional[str] = None, created: Optional[str] = None,
                 datetrans: Optional[str] = None, flag: Optional[str] = ExpeditionFlag.NO,
                 cekfu: bool = False):
        self.resino = resino
        self.couriername = couriername
        self.orderno = orderno
        self.chanelsales = chanelsales
        self.created = created
        self.datetrans = datetrans
        self.flag = flag
        self.cekfu = bool(cekfu)

    @classmethod
    def from_row(cls, row: Dict) -> "ExpeditionRecord":
        return cls(
            resino=row.get('resino'),
            couriername=row.get('couriername'),
            orderno=row.get('orderno'),
            chanelsales=row.get('chanelsales'),
            created=row.get('created'),
            datetrans=row.get('datetrans'),
            flag=row.get('flag'),
            cekfu=row.get('cekfu') or False,
        )

    def to_row(self) -> Dict:
        return {
            'resino': self.resino,
            'couriername': self.couriername,
            'orderno': self.orderno,
            'chanelsales': self.chanelsales,
            'created': self.created,
            'datetrans': self.datetrans,
            'flag': self.flag,
            'cekfu': self.cekfu,
        }

    def copy(self, **changes) -> "ExpeditionRecord":
        record = ExpeditionRecord.from_row(self.to_row())
        for key, value in changes.items():
            setattr(record, key, value)
        return record


class CourierSummary:
    """Per-courier dashboard counters, rebuilt on every aggregation pass"""

    def __init__(self, name: str):
        self.name = name
        self.total_transaksi = 0
        self.total_scan = 0
        self.sisa = 0
        self.jumlah_karung = set()
        self.id_rekomendasi = 0
        self.total_batal = 0
        self.total_scan_follow_up = 0

    def to_dict(self) -> Dict:
        karung = self.jumlah_karung
        return {
            'name': self.name,
            'total_transaksi': self.total_transaksi,
            'total_scan': self.total_scan,
            'sisa': self.sisa,
            'jumlah_karung': len(karung) if isinstance(karung, set) else karung,
            'id_rekomendasi': self.id_rekomendasi,
            'total_batal': self.total_batal,
            'total_scan_follow_up': self.total_scan_follow_up,
        }

    def __eq__(self, other):
        return isinstance(other, CourierSummary) and self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"CourierSummary({self.to_dict()!r})"


def summaries_to_dicts(summaries: List[CourierSummary]) -> List[Dict]:
    return [summary.to_dict() for summary in summaries]
