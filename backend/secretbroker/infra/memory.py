import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional, Tuple

from .store import KeyValueStore

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore(KeyValueStore):
    """In-process store for tests and single-node runs."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._lock = threading.RLock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[datetime]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            self._data.pop(key, None)
            return None
        return entry

    def put_with_ttl(self, key: str, value: str, ttl: timedelta) -> None:
        with self._lock:
            self._data[key] = (value, self._clock() + ttl)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live(key)
            return entry[0] if entry else None

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None and self._data.pop(key, None) is not None

    def increment_returning(self, key: str, ttl: Optional[timedelta] = None) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                value = 1
                expires_at = self._clock() + ttl if ttl is not None else None
            else:
                value, expires_at = int(entry[0]) + 1, entry[1]
            self._data[key] = (str(value), expires_at)
            return value

    # Test helpers
    def expire(self, key: str) -> None:
        """Force `key` to be past its expiry."""
        with self._lock:
            entry = self._data.get(key)
            if entry is not None:
                self._data[key] = (entry[0], self._clock() - timedelta(seconds=1))

    def expires_at(self, key: str) -> Optional[datetime]:
        with self._lock:
            entry = self._live(key)
            return entry[1] if entry else None

    def keys(self):
        with self._lock:
            return [k for k in list(self._data) if self._live(k) is not None]
