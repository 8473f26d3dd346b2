"""
Table change notifications -> debounced cache invalidation.

The transport (Supabase database webhook, polling, ...) only has to call
ChangeFeed.publish(table, event); the dashboard watcher does the rest.
"""

import logging
from collections import defaultdict
from threading import Lock, Timer

DASHBOARD_TABLES = ("tbl_resi", "tbl_expedisi")


class ChangeFeed:
    def __init__(self):
        self.handlers = defaultdict(list)
        self.lock = Lock()

    def subscribe(self, table_name, handler):
        """Register handler(event) for a table; returns an unsubscribe function"""
        with self.lock:
            self.handlers[table_name].append(handler)

        def unsubscribe():
            with self.lock:
                if handler in self.handlers[table_name]:
                    self.handlers[table_name].remove(handler)

        return unsubscribe

    def publish(self, table_name, event=None):
        with self.lock:
            handlers = list(self.handlers.get(table_name, ()))
        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logging.error(f"Change handler for {table_name} failed: {e}")
        return len(handlers)


class Debouncer:
    """Collapse bursts of calls into one call, delay seconds after the last"""

    def __init__(self, func, delay):
        self.func = func
        self.delay = delay
        self.timer = None
        self.pending = ((), {})
        self.lock = Lock()

    def __call__(self, *args, **kwargs):
        with self.lock:
            if self.timer is not None:
                self.timer.cancel()
            self.pending = (args, kwargs)
            self.timer = Timer(self.delay, self._fire, args, kwargs)
            self.timer.daemon = True
            self.timer.start()

    def _fire(self, *args, **kwargs):
        with self.lock:
            self.timer = None
        try:
            self.func(*args, **kwargs)
        except Exception as e:
            logging.error(f"Debounced call failed: {e}")

    def flush(self):
        """Run a pending call immediately (no-op if nothing is pending)"""
        with self.lock:
            timer = self.timer
            args, kwargs = self.pending
            self.timer = None
        if timer is not None:
            timer.cancel()
            self.func(*args, **kwargs)

    def cancel(self):
        with self.lock:
            if self.timer is not None:
                self.timer.cancel()
                self.timer = None


def watch_dashboard_tables(feed, coordinator, delay=0.15):
    """Invalidate today's dashboard caches whenever tbl_resi / tbl_expedisi change"""
    debounced = Debouncer(lambda: coordinator.invalidate_today(), delay)

    def handle_change(_event):
        debounced()

    for table_name in DASHBOARD_TABLES:
        feed.subscribe(table_name, handle_change)
    return debounced
