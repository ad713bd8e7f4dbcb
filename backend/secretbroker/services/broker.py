# secretbroker/services/broker.py

import asyncio
import logging
from typing import Optional

import nats

from secretbroker.core.config import Settings
from secretbroker.core.message import SecretMessageService
from secretbroker.infra.factory import build_store
from secretbroker.infra.store import KeyValueStore
from secretbroker.services.dispatcher import Dispatcher

logger = logging.getLogger(__name__)


async def connect_nats(settings: Settings):
    """Open a NATS connection; credentials are used only when both are set."""
    options = {"servers": [settings.nats_url], "name": "secretbroker"}
    if settings.nats_auth_enabled:
        options["user"] = settings.nats_user
        options["password"] = settings.nats_password
    return await nats.connect(**options)


class Broker:
    """
    Wires store, engine and dispatcher together and owns their lifetimes.
    """

    def __init__(self, settings: Settings, store: Optional[KeyValueStore] = None):
        self.settings = settings
        self.store = store if store is not None else build_store(settings)
        self.service = SecretMessageService.from_settings(self.store, settings)
        self.dispatcher = Dispatcher(self.service, max_in_flight=settings.max_in_flight)
        self.nc = None

    async def start(self, nc=None) -> None:
        self.nc = nc if nc is not None else await connect_nats(self.settings)
        await self.dispatcher.start(self.nc)
        logger.info(
            "Broker ready (store=%s, max_tries=%d, auto_delete_days=%d)",
            self.settings.store_backend,
            self.settings.max_tries,
            self.settings.auto_delete_days,
        )

    async def stop(self) -> None:
        await self.dispatcher.stop()
        if self.nc is not None:
            await self.nc.drain()
            self.nc = None
        self.store.close()
        logger.info("Broker stopped")


async def serve(settings: Settings) -> None:
    """Run the broker without the HTTP status endpoint until cancelled."""
    broker = Broker(settings)
    await broker.start()
    try:
        await asyncio.Event().wait()
    finally:
        await broker.stop()
