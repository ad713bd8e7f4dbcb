# secretbroker/infra/factory.py

from secretbroker.core.config import Settings
from .memory import MemoryStore
from .store import KeyValueStore


def build_store(settings: Settings) -> KeyValueStore:
    """Construct the store adapter named by `settings.store_backend`."""
    if settings.store_backend == "memory":
        return MemoryStore()
    if settings.store_backend == "postgres":
        from .postgres import SqlStore
        return SqlStore.from_settings(settings)
    from .redis_store import RedisStore
    return RedisStore.from_settings(settings)
