# secretbroker/infra/store.py

from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Optional

MESSAGE_PREFIX = "messages:"
ATTEMPT_PREFIX = "attempts:"


def message_key(message_id: str) -> str:
    return MESSAGE_PREFIX + message_id


def attempt_key(message_id: str) -> str:
    return ATTEMPT_PREFIX + message_id


def ttl_from_days(days: int) -> timedelta:
    return timedelta(days=days)


class KeyValueStore(ABC):
    """
    Narrow string key/value capability the broker needs.

    Adapters raise StoreUnavailableError for any I/O failure of the backing
    store; they know nothing about envelopes or counters.
    """

    @abstractmethod
    def put_with_ttl(self, key: str, value: str, ttl: timedelta) -> None:
        """Overwrite `key`; a non-positive ttl expires the entry at once."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Idempotent; True only for the call that actually removed the entry."""

    @abstractmethod
    def increment_returning(self, key: str, ttl: Optional[timedelta] = None) -> int:
        """
        Atomically add one (creating the counter at 1) and return the new value.
        A `ttl` applies only when the counter is created; later increments keep it.
        """

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        pass
