# secretbroker/services/dispatcher.py

import asyncio
import json
import logging
from typing import Callable, List, Optional, Set

from pydantic import ValidationError

from secretbroker.core.message import SecretMessageService
from secretbroker.core.result import ErrorKind, Outcome
from secretbroker.models.identifier import ErrorReply, SecretMessageIdentifier

logger = logging.getLogger(__name__)

SAVE_SUBJECT = "save.msg"
RECEIVE_SUBJECT = "receive.msg"

INTERNAL_ERROR = "Internal server error"

# Short, category-level messages; never which of key/ciphertext/length failed
ERROR_MESSAGES = {
    ErrorKind.NOT_FOUND: "Message not found",
    ErrorKind.BAD_KEY_OR_CORRUPTION: "Unable to decrypt message",
    ErrorKind.STORE_UNAVAILABLE: "Storage unavailable",
    ErrorKind.RNG_FAILURE: "Unable to generate secure random data",
    ErrorKind.INTERNAL: INTERNAL_ERROR,
}


def error_reply(message: str) -> bytes:
    return ErrorReply(error=message).to_json()


def outcome_error(outcome: Outcome) -> bytes:
    if outcome.kind == ErrorKind.BAD_REQUEST:
        return error_reply(outcome.message or "Bad request")
    return error_reply(ERROR_MESSAGES.get(outcome.kind, INTERNAL_ERROR))


class Dispatcher:
    """
    Binds `save.msg` and `receive.msg` to the lifecycle engine.

    `handle_save` / `handle_receive` map a raw request body to a raw reply
    body and hold no transport state. The NATS side fans each message out to
    its own task and runs the engine on a worker thread. At most
    `max_in_flight` tasks exist at once; further messages wait in the
    subscription's own pending queue.
    """

    def __init__(self, service: SecretMessageService, max_in_flight: int = 32):
        self.service = service
        self.max_message_size = service.max_message_size
        self._nc = None
        self._subscriptions: List = []
        self._tasks: Set[asyncio.Task] = set()
        self.max_in_flight = max_in_flight
        self._slots: Optional[asyncio.Semaphore] = None

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    # ---------- request handlers ----------

    def handle_save(self, data: Optional[bytes]) -> bytes:
        if not data:
            logger.warning("Received empty message for secret message creation")
            return error_reply("Message cannot be empty")
        if len(data) > self.max_message_size:
            logger.warning("Received message exceeding size limit: %d bytes", len(data))
            return error_reply(
                f"Message size exceeds maximum allowed: {self.max_message_size} bytes"
            )
        try:
            plaintext = data.decode("utf-8")
        except UnicodeDecodeError:
            logger.warning("Received message that is not valid UTF-8")
            return error_reply("Message must be valid UTF-8")

        outcome = self.service.create(plaintext)
        if not outcome.ok:
            logger.warning("Secret message creation rejected: %s", outcome.kind.value)
            return outcome_error(outcome)
        return outcome.value.to_json()

    def handle_receive(self, data: Optional[bytes]) -> bytes:
        if not data:
            logger.warning("Received empty message for secret message retrieval")
            return error_reply("Message identifier cannot be empty")
        if len(data) > self.max_message_size:
            logger.warning("Received identifier exceeding size limit: %d bytes", len(data))
            return error_reply(
                f"Message size exceeds maximum allowed: {self.max_message_size} bytes"
            )
        try:
            identifier = SecretMessageIdentifier.model_validate_json(data)
        except ValidationError:
            logger.warning("Failed to parse message identifier")
            return error_reply("Invalid message identifier format")

        outcome = self.service.retrieve(identifier.message_id, identifier.aes_key)
        if not outcome.ok:
            logger.warning(
                "Retrieval of %s failed: %s", identifier.message_id[:100], outcome.kind.value
            )
            return outcome_error(outcome)
        return json.dumps(outcome.value, ensure_ascii=False).encode("utf-8")

    # ---------- NATS binding ----------

    async def on_save(self, msg) -> None:
        await self._spawn(msg, self.handle_save, SAVE_SUBJECT)

    async def on_receive(self, msg) -> None:
        await self._spawn(msg, self.handle_receive, RECEIVE_SUBJECT)

    async def _spawn(self, msg, handler: Callable[[bytes], bytes], subject: str) -> None:
        # Blocks the subscription callback while every slot is taken
        await self._slots.acquire()
        task = asyncio.get_running_loop().create_task(self._serve(msg, handler, subject))
        self._tasks.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._slots.release()

    async def _serve(self, msg, handler: Callable[[bytes], bytes], subject: str) -> None:
        if not msg.reply:
            logger.warning("No reply address provided on %s, dropping request", subject)
            return
        try:
            reply = await asyncio.to_thread(handler, msg.data)
        except Exception:
            logger.exception("Unexpected error handling %s", subject)
            reply = error_reply(INTERNAL_ERROR)
        await self._publish(msg.reply, reply)

    async def _publish(self, subject: str, payload: bytes) -> None:
        try:
            await self._nc.publish(subject, payload)
        except Exception:
            # There is no error channel back to the requester
            logger.exception("Failed to publish reply to %s", subject)

    async def start(self, nc) -> None:
        self._nc = nc
        self._slots = asyncio.Semaphore(self.max_in_flight)
        self._subscriptions = [
            await nc.subscribe(SAVE_SUBJECT, cb=self.on_save),
            await nc.subscribe(RECEIVE_SUBJECT, cb=self.on_receive),
        ]
        logger.info("Subscribed to %s and %s", SAVE_SUBJECT, RECEIVE_SUBJECT)

    async def stop(self) -> None:
        for sub in self._subscriptions:
            await sub.unsubscribe()
        self._subscriptions = []
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def wait_idle(self) -> None:
        """Wait until every in-flight request has been answered."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
