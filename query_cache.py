"""
In-process query result cache keyed by tuples, e.g. ('karung_summary', '2024-01-05', 'JNE')
Invalidation works on key prefixes, so ('all_resi_data', date) hits every variant for that date.
"""

import time
import logging
from threading import Lock

MAX_ENTRIES = 5000


class QueryCache:
    """Query result cache with TTL, prefix invalidation and loader-based refetch"""

    def __init__(self, max_entries=MAX_ENTRIES):
        self.cache = {}
        self.timestamps = {}
        self.loaders = {}
        self.stale = set()
        self.max_entries = max_entries
        self.lock = Lock()

    def get(self, key, ttl=None):
        """Cached value, or None when missing, stale or expired"""
        with self.lock:
            if key not in self.cache or key in self.stale:
                return None
            if ttl is not None and time.time() - self.timestamps.get(key, 0) >= ttl:
                return None
            return self.cache[key]

    def set(self, key, result, loader=None):
        with self.lock:
            self.cache[key] = result
            self.timestamps[key] = time.time()
            self.stale.discard(key)
            if loader is not None:
                self.loaders[key] = loader

            if len(self.cache) > self.max_entries:
                self._cleanup_old_entries()

    def peek(self, key):
        """Last cached value even when stale or expired (None if never loaded)"""
        with self.lock:
            return self.cache.get(key)

    def get_or_load(self, key, loader, ttl=60):
        """Return the cached value or run loader() and cache its result"""
        cached = self.get(key, ttl)
        if cached is not None:
            return cached
        result = loader()
        self.set(key, result, loader)
        return result

    def is_stale(self, key):
        with self.lock:
            return key in self.stale

    def invalidate(self, prefix):
        """Mark every cached key starting with prefix as stale; returns those keys"""
        prefix = tuple(prefix)
        with self.lock:
            matched = [key for key in self.cache if key[:len(prefix)] == prefix]
            self.stale.update(matched)
        if matched:
            logging.debug(f"Cache invalidated {len(matched)} entries for {prefix}")
        return matched

    def refetch(self, prefix):
        """Re-run the stored loader of every key under prefix; returns refreshed keys"""
        prefix = tuple(prefix)
        with self.lock:
            targets = [(key, loader) for key, loader in self.loaders.items() if key[:len(prefix)] == prefix]

        refreshed = []
        for key, loader in targets:
            try:
                self.set(key, loader(), loader)
                refreshed.append(key)
            except Exception as e:
                # Tetap stale; akan dimuat ulang saat diminta
                logging.error(f"Cache refetch failed for {key}: {e}")
        return refreshed

    def clear(self):
        with self.lock:
            self.cache.clear()
            self.timestamps.clear()
            self.loaders.clear()
            self.stale.clear()

    def _cleanup_old_entries(self):
        """Drop the oldest 20% of entries (lock already held)"""
        sorted_keys = sorted(self.timestamps.items(), key=lambda item: item[1])
        for key, _ in sorted_keys[:len(sorted_keys) // 5]:
            self.cache.pop(key, None)
            self.timestamps.pop(key, None)
            self.loaders.pop(key, None)
            self.stale.discard(key)

    def stats(self):
        with self.lock:
            return {
                'cached_items': len(self.cache),
                'stale_items': len(self.stale),
                'refetchable_items': len(self.loaders),
            }
