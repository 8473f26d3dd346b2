"""
Maps a mutation (date, courier) to the cached queries that must be refetched
"""

import logging
from datetime import date, datetime

import pytz

from models import normalize_expedition_name, parse_timestamp

# Cache per tanggal: key = (nama, 'YYYY-MM-DD', ...)
DATE_KEYED_QUERIES = [
    "transaksi_hari_ini",
    "total_scan",
    "id_rek_count",
    "belum_kirim",
    "scan_followup_late_count",
    "batal_count",
    "follow_up_data",
    "all_expedisi_data",
    "all_resi_data",
    "history_data",
]

# Cache per tanggal + ekspedisi: key = (nama, 'YYYY-MM-DD', 'JNE')
COURIER_KEYED_QUERIES = [
    "karung_summary",
    "last_karung",
    "all_resi_for_expedition",
    "expedition_detail",
]

# Cache rolling yang selalu terdampak (deteksi duplikat & peta resi)
ROLLING_QUERIES = [
    "all_expedisi_unfiltered",
    "all_flag_no_expedisi",
    "recent_resi_numbers",
]

FOLLOW_UP_FLAG_NO_COUNT = "follow_up_flag_no_count"

# Cache yang langsung dimuat ulang setelah sinkronisasi (layar input)
CRITICAL_QUERIES = ["karung_summary", "last_karung"]


def format_date(value, tz=None) -> str:
    """Normalise a date / datetime / ISO string to 'YYYY-MM-DD' in the app timezone"""
    if isinstance(value, datetime):
        if value.tzinfo is not None and tz is not None:
            value = value.astimezone(tz)
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        if len(value) == 10:
            return date.fromisoformat(value).isoformat()
        parsed = parse_timestamp(value)
        if parsed is not None:
            return format_date(parsed, tz)
    raise ValueError(f"Tanggal tidak valid: {value!r}")


class CacheInvalidationCoordinator:
    def __init__(self, cache, timezone_name="Asia/Jakarta"):
        self.cache = cache
        self.tz = pytz.timezone(timezone_name)

    def today(self) -> str:
        return datetime.now(self.tz).date().isoformat()

    def bucket_for(self, courier_name):
        """Courier bucket used in cache keys (ID_REKOMENDASI -> ID)"""
        return normalize_expedition_name(courier_name)

    def invalidate(self, date_value, courier_name=None):
        """Mark stale everything a mutation on date_value (and courier) can change"""
        formatted_date = format_date(date_value, self.tz)
        invalidated = []

        for name in DATE_KEYED_QUERIES:
            invalidated += self.cache.invalidate((name, formatted_date))
        invalidated += self.cache.invalidate((FOLLOW_UP_FLAG_NO_COUNT, self.today()))

        bucket = self.bucket_for(courier_name)
        if bucket:
            for name in COURIER_KEYED_QUERIES:
                invalidated += self.cache.invalidate((name, formatted_date, bucket))

        for name in ROLLING_QUERIES:
            invalidated += self.cache.invalidate((name,))

        logging.info(f"Invalidated {len(invalidated)} cached queries for {formatted_date} / {bucket or '-'}")
        return invalidated

    def invalidate_today(self):
        return self.invalidate(self.today())

    def refresh_critical(self, date_value, courier_names):
        """Refetch sack summary / last sack for each courier so the input screen is current"""
        formatted_date = format_date(date_value, self.tz)
        refreshed = []
        for bucket in sorted({self.bucket_for(name) for name in courier_names if self.bucket_for(name)}):
            for name in CRITICAL_QUERIES:
                refreshed += self.cache.refetch((name, formatted_date, bucket))
        return refreshed
