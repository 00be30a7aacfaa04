"""
Result cache for fetched API data.

Entries are keyed by a short sha256 digest of the logical key and carry an absolute
expiry time written at set() time. Expired entries are dropped lazily on get(); there
is no background sweep. Three interchangeable variants share the same interface:

- FileCache: one JSON file per entry under a directory, reused across runs
- MemoryCache: dict-backed, for lookups repeated within a single run
- NoopCache: always misses, lets callers disable caching without branching
"""

import hashlib
import json
import os
import shutil
import threading
import time
import logging
from contextlib import contextmanager
from typing import Optional, Any, Dict, Tuple, List

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 3600.0
ENTRY_SUFFIX = '.json'


def cache_key_digest(key: str) -> str:
    """First 8 bytes of sha256(key), hex encoded. Collisions are not handled."""
    return hashlib.sha256(key.encode('utf-8')).digest()[:8].hex()


class RWLock:
    """Readers share the lock, a writer holds it exclusively."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class NoopCache:
    """Cache that never stores anything."""

    def get(self, key: str) -> Tuple[Any, bool]:
        return None, False

    def set(self, key: str, value: Any):
        pass

    def delete(self, key: str):
        pass

    def clear(self):
        pass

    def stats(self) -> Dict[str, Any]:
        return {'count': 0, 'expired': 0}


class MemoryCache:
    def __init__(self, ttl_seconds: Optional[float] = None):
        self.ttl_seconds = float(ttl_seconds) if ttl_seconds is not None else DEFAULT_TTL_SECONDS
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._lock = RWLock()

    def get(self, key: str) -> Tuple[Any, bool]:
        digest = cache_key_digest(key)
        with self._lock.read():
            entry = self._entries.get(digest)
        if entry is None:
            return None, False
        if time.time() > entry['expires_at']:
            self.delete(key)
            return None, False
        return entry['value'], True

    def set(self, key: str, value: Any):
        with self._lock.write():
            self._entries[cache_key_digest(key)] = {'key': key, 'value': value, 'expires_at': time.time() + self.ttl_seconds}

    def delete(self, key: str):
        with self._lock.write():
            self._entries.pop(cache_key_digest(key), None)

    def clear(self):
        with self._lock.write():
            self._entries.clear()

    def stats(self) -> Dict[str, Any]:
        now = time.time()
        with self._lock.read():
            expired = sum(1 for e in self._entries.values() if now > e['expires_at'])
            return {'count': len(self._entries), 'expired': expired}


class FileCache:
    def __init__(self, directory: str, ttl_seconds: Optional[float] = None):
        """Create a file-backed cache.

        :param directory: directory holding one JSON file per entry; created if missing.
        :param ttl_seconds: lifetime of an entry from the moment it is written.
        """
        self.directory = directory
        self.ttl_seconds = float(ttl_seconds) if ttl_seconds is not None else DEFAULT_TTL_SECONDS
        self._lock = RWLock()
        os.makedirs(self.directory, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, cache_key_digest(key) + ENTRY_SUFFIX)

    def _read_entry(self, path: str) -> Optional[Dict[str, Any]]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as ex:
            logger.debug("unreadable cache entry %s: %s", path, ex)
            return {'expires_at': 0}

    def get(self, key: str) -> Tuple[Any, bool]:
        path = self._path(key)
        with self._lock.read():
            entry = self._read_entry(path)
        if entry is None:
            return None, False
        if time.time() > float(entry.get('expires_at', 0) or 0):
            self.delete(key)
            return None, False
        return entry.get('value'), True

    def set(self, key: str, value: Any):
        path = self._path(key)
        payload = json.dumps({'key': key, 'value': value, 'expires_at': time.time() + self.ttl_seconds})
        tmp = f"{path}.{threading.get_ident()}.tmp"
        with self._lock.write():
            os.makedirs(self.directory, exist_ok=True)
            with open(tmp, 'w', encoding='utf-8') as f:
                f.write(payload)
            os.replace(tmp, path)

    def delete(self, key: str):
        with self._lock.write():
            try:
                os.remove(self._path(key))
            except FileNotFoundError:
                pass

    def clear(self):
        """Remove the whole cache directory."""
        with self._lock.write():
            shutil.rmtree(self.directory, ignore_errors=True)

    def _entry_files(self) -> List[str]:
        if not os.path.isdir(self.directory):
            return []
        return [os.path.join(self.directory, n) for n in sorted(os.listdir(self.directory)) if n.endswith(ENTRY_SUFFIX)]

    def stats(self) -> Dict[str, Any]:
        """Return basic statistics about the cache: entry count, expired count, total bytes."""
        now = time.time()
        count = expired = size = 0
        with self._lock.read():
            for path in self._entry_files():
                entry = self._read_entry(path) or {}
                count += 1
                size += os.path.getsize(path)
                if now > float(entry.get('expires_at', 0) or 0):
                    expired += 1
        return {'count': count, 'expired': expired, 'bytes': size, 'directory': self.directory}

    def list_keys(self, limit: int = 1000) -> list:
        """Return logical keys with their expiry, soonest-expiring last."""
        items = []
        with self._lock.read():
            for path in self._entry_files():
                entry = self._read_entry(path) or {}
                items.append({'key': entry.get('key', ''), 'expires_at': float(entry.get('expires_at', 0) or 0)})
        items.sort(key=lambda i: i['expires_at'], reverse=True)
        return items[:limit]


def open_cache(enabled: bool, directory: str, ttl_seconds: Optional[float] = None):
    """Return a FileCache when caching is enabled, otherwise a NoopCache."""
    if not enabled:
        return NoopCache()
    return FileCache(directory, ttl_seconds)


__all__ = ["FileCache", "MemoryCache", "NoopCache", "RWLock", "cache_key_digest", "open_cache"]
