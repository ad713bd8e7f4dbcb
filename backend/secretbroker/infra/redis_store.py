# secretbroker/infra/redis_store.py

import logging
from datetime import timedelta
from typing import Optional

import redis

from secretbroker.core.exceptions import StoreUnavailableError
from .store import KeyValueStore

logger = logging.getLogger(__name__)


def create_redis_client(
    host: str = "localhost",
    port: int = 6379,
    password: Optional[str] = None,
    timeout: float = 5.0,
) -> redis.Redis:
    """
    Pooled client; the password is only sent when one is configured.
    """
    pool = redis.ConnectionPool(
        host=host,
        port=port,
        password=password or None,
        socket_timeout=timeout,
        socket_connect_timeout=timeout,
        decode_responses=True,
    )
    return redis.Redis(connection_pool=pool)


class RedisStore(KeyValueStore):

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_settings(cls, settings) -> "RedisStore":
        return cls(
            create_redis_client(
                host=settings.redis_host,
                port=settings.redis_port,
                password=settings.redis_password,
                timeout=settings.store_timeout,
            )
        )

    def _set_expiry(self, key: str, ttl: timedelta) -> None:
        if ttl.total_seconds() > 0:
            self._client.expire(key, ttl)
        else:
            # Redis rejects a zero expiry; keep the shortest one it accepts
            self._client.pexpire(key, 1)

    def put_with_ttl(self, key: str, value: str, ttl: timedelta) -> None:
        try:
            if ttl.total_seconds() > 0:
                self._client.set(key, value, ex=ttl)
            else:
                self._client.set(key, value, px=1)
        except redis.RedisError as e:
            raise StoreUnavailableError("redis set failed") from e

    def get(self, key: str) -> Optional[str]:
        try:
            value = self._client.get(key)
        except redis.RedisError as e:
            raise StoreUnavailableError("redis get failed") from e
        if isinstance(value, bytes):
            return value.decode("utf-8")
        return value

    def delete(self, key: str) -> bool:
        try:
            return self._client.delete(key) > 0
        except redis.RedisError as e:
            raise StoreUnavailableError("redis delete failed") from e

    def increment_returning(self, key: str, ttl: Optional[timedelta] = None) -> int:
        try:
            value = int(self._client.incr(key))
            if value == 1 and ttl is not None:
                self._set_expiry(key, ttl)
            return value
        except redis.RedisError as e:
            raise StoreUnavailableError("redis incr failed") from e

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError:
            logger.warning("Redis ping failed")
            return False

    def close(self) -> None:
        self._client.close()
