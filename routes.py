from flask import request, jsonify
import logging

from exceptions import GatewayError, PendingStoreError, ResiValidationError
from change_feed import DASHBOARD_TABLES


def _json_body():
    return request.get_json(silent=True) or request.form.to_dict() or {}


def _error_response(e, action):
    """Map an exception to the JSON error shape used by every endpoint"""
    if isinstance(e, ResiValidationError):
        return jsonify({'success': False, 'message': str(e)}), 400
    if isinstance(e, GatewayError):
        logging.error(f"Gateway error during {action}: {e}")
        return jsonify({'success': False, 'message': f'Gagal {action}: {e}'}), 502
    if isinstance(e, PendingStoreError):
        logging.error(f"Pending store error during {action}: {e}")
        return jsonify({'success': False, 'message': str(e)}), 503
    logging.error(f"Error during {action}: {e}")
    return jsonify({'success': False, 'message': f'Terjadi kesalahan: {e}'}), 500


def init_resi_routes(app, service, feed):
    """Initialize resi scan / dashboard / sync routes"""

    @app.route('/api/resi/scan', methods=['POST'])
    def scan_resi():
        """Queue a scanned resi into the selected karung"""
        data = _json_body()
        try:
            operation = service.enqueue_scan(data.get('resi'), data.get('karung'), data.get('expedition'))
            return jsonify({
                'success': True,
                'message': f"Resi {operation.resi_number} berhasil diinput.",
                'operation': operation.to_dict(),
            })
        except Exception as e:
            return _error_response(e, 'menginput resi')

    @app.route('/api/resi/<resi>/confirm', methods=['POST'])
    def confirm_resi(resi):
        try:
            operation = service.enqueue_confirm(resi)
            return jsonify({
                'success': True,
                'message': f"Resi {resi} berhasil dikonfirmasi (disimpan secara lokal).",
                'operation': operation.to_dict(),
            })
        except Exception as e:
            return _error_response(e, f'mengonfirmasi resi {resi}')

    @app.route('/api/resi/<resi>/batal', methods=['POST'])
    def batal_resi(resi):
        try:
            operation = service.enqueue_cancel(resi)
            return jsonify({
                'success': True,
                'message': f"Resi {resi} berhasil dibatalkan (disimpan secara lokal).",
                'operation': operation.to_dict(),
            })
        except Exception as e:
            return _error_response(e, f'membatalkan resi {resi}')

    @app.route('/api/resi/<resi>/cekfu', methods=['POST'])
    def toggle_cekfu(resi):
        """Set follow-up status; send 'cekfu' (new value) or 'current' (value to flip)"""
        data = _json_body()
        if 'cekfu' in data:
            new_status = _as_bool(data.get('cekfu'))
        elif 'current' in data:
            new_status = not _as_bool(data.get('current'))
        else:
            return jsonify({'success': False, 'message': "Parameter 'cekfu' wajib diisi"}), 400
        try:
            operation = service.enqueue_toggle_follow_up(resi, new_status)
            return jsonify({
                'success': True,
                'message': f"Status follow up resi {resi} diperbarui (disimpan secara lokal).",
                'operation': operation.to_dict(),
            })
        except Exception as e:
            return _error_response(e, f'memperbarui follow up resi {resi}')

    @app.route('/api/resi/<resi>', methods=['DELETE'])
    def delete_resi(resi):
        """Direct delete (not queued); failures are reported immediately"""
        try:
            service.delete_resi(resi, request.args.get('date'))
            return jsonify({'success': True, 'message': f'Resi {resi} berhasil dihapus.'})
        except Exception as e:
            response = _error_response(e, f'menghapus resi {resi}')
            if not isinstance(e, ResiValidationError):
                service.context.notifier.error(f"Gagal menghapus resi {resi}: {e}", resi_number=resi)
            return response

    @app.route('/api/pending-operations', methods=['GET'])
    def pending_operations():
        operations = service.pending_operations()
        return jsonify({
            'success': True,
            'count': len(operations),
            'operations': [operation.to_dict() for operation in operations],
        })

    @app.route('/api/pending-operations/count', methods=['GET'])
    def pending_operation_count():
        return jsonify({'success': True, 'count': service.pending_operation_count()})

    @app.route('/api/sync', methods=['POST'])
    def trigger_sync():
        """Manual sync trigger; ?wait=1 runs the cycle inside the request"""
        wait = _as_bool(request.args.get('wait', '0'))
        result = service.trigger_sync_now(wait=wait)
        return jsonify({
            'success': True,
            'message': 'Sinkronisasi dijalankan.',
            'result': result.to_dict() if result is not None else None,
        })

    @app.route('/api/sync/status', methods=['GET'])
    def sync_status():
        return jsonify({'success': True, 'status': service.context.status()})

    @app.route('/api/dashboard/summary', methods=['GET'])
    def dashboard_summary():
        try:
            summaries = service.courier_summaries(request.args.get('date'))
            return jsonify({'success': True, 'summaries': summaries})
        except Exception as e:
            return _error_response(e, 'memuat ringkasan ekspedisi')

    @app.route('/api/karung/summary', methods=['GET'])
    def karung_summary():
        expedition = request.args.get('expedition', '').strip()
        if not expedition:
            return jsonify({'success': False, 'message': 'Pilih Expedisi terlebih dahulu.'}), 400
        try:
            selected_date = request.args.get('date')
            return jsonify({
                'success': True,
                'summary': service.karung_summary(selected_date, expedition),
                'last_karung': service.last_karung(selected_date, expedition),
            })
        except Exception as e:
            return _error_response(e, 'memuat ringkasan karung')

    @app.route('/api/notifications', methods=['GET'])
    def notifications():
        return jsonify({'success': True, 'notifications': service.context.notifier.drain()})

    @app.route('/api/changes/<table>', methods=['POST'])
    def table_changed(table):
        """Webhook target for database change events"""
        if table not in DASHBOARD_TABLES:
            return jsonify({'success': False, 'message': f'Tabel tidak dikenal: {table}'}), 404
        delivered = feed.publish(table, request.get_json(silent=True))
        return jsonify({'success': True, 'delivered': delivered})

    @app.route('/api/cache/stats', methods=['GET'])
    def cache_stats():
        return jsonify({'success': True, 'stats': service.cache.stats()})


def _as_bool(value):
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')
