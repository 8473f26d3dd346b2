"""
User-facing notifications raised outside a request (e.g. by the sync thread)
"""

import logging
from collections import deque
from threading import Lock

from models import utc_now


class NotificationCenter:
    """Bounded FIFO of toast messages; the UI drains it by polling"""

    def __init__(self, max_items=200):
        self.items = deque(maxlen=max_items)
        self.lock = Lock()

    def _push(self, level, message, resi_number=None):
        entry = {
            'level': level,
            'message': message,
            'resi_number': resi_number,
            'created_at': utc_now().isoformat(),
        }
        with self.lock:
            self.items.append(entry)
        return entry

    def error(self, message, resi_number=None):
        logging.warning(f"Notification (error): {message}")
        return self._push('error', message, resi_number)

    def success(self, message, resi_number=None):
        return self._push('success', message, resi_number)

    def drain(self):
        with self.lock:
            items = list(self.items)
            self.items.clear()
        return items

    def peek(self):
        with self.lock:
            return list(self.items)
