# secretbroker/main.py

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

import click
import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from secretbroker.core.config import Settings
from secretbroker.infra.store import KeyValueStore
from secretbroker.services.broker import Broker, serve
from secretbroker.utils.logger import setup_logger

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[KeyValueStore] = None,
    nc=None,
) -> FastAPI:
    """
    HTTP process hosting the broker. The NATS subscriptions start with the
    app and are drained on shutdown; `/status` is a plain liveness check.
    """
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        broker = Broker(settings, store=store)
        await broker.start(nc)
        app.state.broker = broker
        try:
            yield
        finally:
            await broker.stop()

    app = FastAPI(
        title="Secret Broker",
        version="1.0.0",
        description="One-time-read secret messages over NATS",
        lifespan=lifespan,
    )

    @app.get("/status", response_class=PlainTextResponse)
    def status():
        return "UP AND RUNNING!\n"

    return app


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--no-http", is_flag=True, help="Serve NATS only, without the /status endpoint.")
def run(no_http: bool) -> None:
    """One-time-read secret message broker."""
    settings = Settings.from_env()
    setup_logger(settings.log_level)
    if no_http:
        try:
            asyncio.run(serve(settings))
        except KeyboardInterrupt:
            logger.info("Interrupted, broker stopped")
        return

    uvicorn.run(
        create_app(settings),
        host=settings.http_host,
        port=settings.http_port,
        log_config=None,
    )


if __name__ == "__main__":
    run()
