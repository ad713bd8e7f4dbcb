# secretbroker/clients/broker_client.py

import asyncio
import json
import os
import sys

from secretbroker.models.identifier import SecretMessageIdentifier
from secretbroker.services.dispatcher import RECEIVE_SUBJECT, SAVE_SUBJECT

# =========================
# CONFIGURATION
# =========================

DEFAULT_TIMEOUT = 5.0  # seconds to wait for the broker's reply


class BrokerReplyError(Exception):
    """The broker answered with {"error": ...}."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


def _parse_reply(data: bytes):
    payload = json.loads(data)
    if isinstance(payload, dict) and "error" in payload:
        raise BrokerReplyError(str(payload["error"]))
    return payload


# =========================
# CLIENT
# =========================

class SecretMessageClient:
    """
    Producer/consumer side of the broker.

        identifier = await client.save("the launch code")
        text = await client.receive(identifier)   # works once
    """

    def __init__(self, nc, timeout: float = DEFAULT_TIMEOUT):
        self.nc = nc
        self.timeout = timeout

    async def save(self, text: str) -> SecretMessageIdentifier:
        msg = await self.nc.request(SAVE_SUBJECT, text.encode("utf-8"), timeout=self.timeout)
        return SecretMessageIdentifier.model_validate(_parse_reply(msg.data))

    async def receive(self, identifier: SecretMessageIdentifier) -> str:
        msg = await self.nc.request(RECEIVE_SUBJECT, identifier.to_json(), timeout=self.timeout)
        payload = _parse_reply(msg.data)
        if not isinstance(payload, str):
            raise BrokerReplyError("Unexpected reply from broker")
        return payload


# =========================
# DEMO USAGE
# =========================

async def _demo(text: str) -> None:
    import nats

    nc = await nats.connect(os.getenv("NATS_URL", "nats://localhost:4222"))
    try:
        client = SecretMessageClient(nc)
        identifier = await client.save(text)
        print(f"Stored {identifier.message_id}")
        print(f"Read once: {await client.receive(identifier)}")
        try:
            await client.receive(identifier)
        except BrokerReplyError as e:
            print(f"Second read refused: {e.message}")
    finally:
        await nc.drain()


if __name__ == "__main__":
    asyncio.run(_demo(" ".join(sys.argv[1:]) or "Super secret message!"))
