"""Shared fixtures: stores, engine, and an in-process stand-in for NATS."""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import fakeredis
import pytest

from secretbroker.core.message import SecretMessageService
from secretbroker.infra.memory import MemoryStore
from secretbroker.infra.postgres import SqlStore, create_db_engine, init_db
from secretbroker.infra.redis_store import RedisStore


@dataclass
class FakeMsg:
    subject: str
    data: bytes
    reply: str = ""


class FakeSubscription:
    def __init__(self, nc: "FakeNats", subject: str) -> None:
        self.nc = nc
        self.subject = subject

    async def unsubscribe(self) -> None:
        self.nc.handlers.pop(self.subject, None)


class FakeNats:
    """Request-reply over in-memory callbacks with the nats-py call shapes."""

    def __init__(self) -> None:
        self.handlers: Dict[str, Callable[[FakeMsg], Any]] = {}
        self.published: Dict[str, list] = {}
        self._waiters: Dict[str, asyncio.Future] = {}
        self._inbox_ids = itertools.count(1)
        self.drained = False

    async def subscribe(self, subject: str, cb=None) -> FakeSubscription:
        self.handlers[subject] = cb
        return FakeSubscription(self, subject)

    async def publish(self, subject: str, payload: bytes = b"") -> None:
        self.published.setdefault(subject, []).append(payload)
        waiter = self._waiters.pop(subject, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(FakeMsg(subject=subject, data=payload))

    async def deliver(self, subject: str, data: bytes, reply: str = "") -> None:
        await self.handlers[subject](FakeMsg(subject=subject, data=data, reply=reply))

    async def request(self, subject: str, payload: bytes = b"", timeout: float = 1.0) -> FakeMsg:
        inbox = f"_INBOX.{next(self._inbox_ids)}"
        waiter = asyncio.get_running_loop().create_future()
        self._waiters[inbox] = waiter
        await self.deliver(subject, payload, reply=inbox)
        return await asyncio.wait_for(waiter, timeout)

    async def drain(self) -> None:
        self.drained = True


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture
def service(store: MemoryStore) -> SecretMessageService:
    return SecretMessageService(store)


@pytest.fixture
def sql_store():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    s = SqlStore(engine)
    yield s
    s.close()


@pytest.fixture
def redis_client():
    client = fakeredis.FakeRedis(decode_responses=True)
    yield client
    client.flushall()


@pytest.fixture
def redis_store(redis_client) -> RedisStore:
    return RedisStore(redis_client)


@pytest.fixture
def fake_nats() -> FakeNats:
    return FakeNats()


def make_key(byte: int = 0x41, length: int = 32) -> bytes:
    return bytes([byte]) * length


def identifier_json(message_id: str, aes_key: str, extra: Optional[dict] = None) -> bytes:
    import json

    body = {"messageId": message_id, "aesKey": aes_key}
    body.update(extra or {})
    return json.dumps(body).encode("utf-8")
