"""
Supabase (PostgREST) gateway for tbl_resi / tbl_expedisi and the dashboard RPCs
"""

import logging
from datetime import date, datetime
from typing import Dict, List, Optional

import requests

from exceptions import GatewayError
from models import ExpeditionRecord, ReceiptRecord

TBL_RESI = "tbl_resi"
TBL_EXPEDISI = "tbl_expedisi"
RESI_COLUMNS = "Resi,nokarung,created,Keterangan,schedule"


class SupabaseGateway:
    """Thin wrapper over the hosted backend's REST surface.

    Every method either returns data or raises GatewayError; callers decide
    whether to retry.
    """

    def __init__(self, url: str, api_key: str, page_size: int = 1000, timeout: Optional[float] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = (url or "").rstrip("/")
        self.page_size = page_size
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'apikey': api_key,
            'Authorization': f'Bearer {api_key}',
            'Content-Type': 'application/json',
        })

    # ---------- low level ----------

    def _table_url(self, table: str) -> str:
        return f"{self.base_url}/rest/v1/{table}"

    def _request(self, method: str, url: str, params=None, json=None, headers=None):
        if not self.base_url:
            raise GatewayError("SUPABASE_URL belum dikonfigurasi")
        try:
            response = self.session.request(method, url, params=params, json=json, headers=headers,
                                            timeout=self.timeout)
        except requests.RequestException as e:
            raise GatewayError(f"Koneksi ke server gagal: {e}") from e

        if response.status_code >= 400:
            code = None
            message = response.text
            try:
                body = response.json()
                code = body.get('code')
                message = body.get('message') or message
            except ValueError:
                pass
            raise GatewayError(message, status_code=response.status_code, code=code)

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return None

    def fetch_all_paginated(self, table: str, params: Optional[Dict] = None) -> List[Dict]:
        """Fetch every matching row, page_size at a time, until a short page"""
        all_rows = []
        offset = 0
        while True:
            page_params = dict(params or {})
            page_params['limit'] = self.page_size
            page_params['offset'] = offset
            data = self._request('GET', self._table_url(table), params=page_params) or []
            if not data:
                break
            all_rows.extend(data)
            offset += len(data)
            if len(data) < self.page_size:
                break
        return all_rows

    # ---------- tbl_resi ----------

    def insert_receipt(self, record: ReceiptRecord) -> None:
        self._request('POST', self._table_url(TBL_RESI), json=record.to_row(),
                      headers={'Prefer': 'return=minimal'})

    def upsert_receipt(self, record: ReceiptRecord, conflict_key: str = 'Resi') -> None:
        self._request('POST', self._table_url(TBL_RESI), params={'on_conflict': conflict_key}, json=record.to_row(),
                      headers={'Prefer': 'resolution=merge-duplicates,return=minimal'})

    def update_receipt(self, resi_number: str, patch: Dict) -> List[Dict]:
        return self._request('PATCH', self._table_url(TBL_RESI), params={'Resi': f'eq.{resi_number}'},
                             json=patch, headers={'Prefer': 'return=representation'}) or []

    def delete_receipt(self, resi_number: str) -> None:
        self._request('DELETE', self._table_url(TBL_RESI), params={'Resi': f'eq.{resi_number}'})

    def list_receipts_by_date_range(self, start: datetime, end: datetime) -> List[ReceiptRecord]:
        """Receipts whose created (timestamptz) falls within [start, end]"""
        params = {
            'select': RESI_COLUMNS,
            'and': f'(created.gte.{start.isoformat()},created.lte.{end.isoformat()})',
            'order': 'created.asc',
        }
        return [ReceiptRecord.from_row(row) for row in self.fetch_all_paginated(TBL_RESI, params)]

    # ---------- tbl_expedisi ----------

    def update_expedition_flag(self, resi_number: str, flag: str) -> List[Dict]:
        return self._request('PATCH', self._table_url(TBL_EXPEDISI), params={'resino': f'eq.{resi_number}'},
                             json={'flag': flag}, headers={'Prefer': 'return=representation'}) or []

    def update_expedition_follow_up(self, resi_number: str, cekfu: bool) -> List[Dict]:
        return self._request('PATCH', self._table_url(TBL_EXPEDISI), params={'resino': f'eq.{resi_number}'},
                             json={'cekfu': bool(cekfu)}, headers={'Prefer': 'return=representation'}) or []

    def find_expedition_by_resi(self, resi_number: str) -> Optional[ExpeditionRecord]:
        rows = self._request('GET', self._table_url(TBL_EXPEDISI),
                             params={'select': '*', 'resino': f'eq.{resi_number}', 'limit': 1}) or []
        if not rows:
            return None
        return ExpeditionRecord.from_row(rows[0])

    def list_expeditions_by_date_range(self, start: Optional[date] = None,
                                       end: Optional[date] = None) -> List[ExpeditionRecord]:
        """Expeditions with start <= created < end (created is timestamp without tz)"""
        params = {'select': '*', 'order': 'created.asc'}
        if start is not None and end is not None:
            params['and'] = f'(created.gte.{start.isoformat()},created.lt.{end.isoformat()})'
        return [ExpeditionRecord.from_row(row) for row in self.fetch_all_paginated(TBL_EXPEDISI, params)]

    # ---------- RPC ----------

    def rpc(self, function_name: str, params: Optional[Dict] = None):
        """Call a database function; results are opaque to the sync core"""
        logging.debug(f"RPC {function_name} {params}")
        return self._request('POST', f"{self.base_url}/rest/v1/rpc/{function_name}", json=params or {})

    def get_resi_for_expedition_and_date(self, courier_name: str, selected_date: date) -> List[Dict]:
        return self.rpc('get_resi_for_expedition_and_date', {
            'p_couriername': courier_name,
            'p_selected_date': selected_date.isoformat(),
        }) or []
