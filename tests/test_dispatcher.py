"""Transport dispatcher: request validation, reply envelopes, NATS binding."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from datetime import timedelta

import pytest

from conftest import FakeNats, identifier_json, make_key
from secretbroker.core import crypto
from secretbroker.core.message import MAX_ATTEMPTS_SENTINEL, SecretMessageService
from secretbroker.infra.memory import MemoryStore
from secretbroker.infra.store import attempt_key, message_key
from secretbroker.services.dispatcher import RECEIVE_SUBJECT, SAVE_SUBJECT, Dispatcher

SECRET = "Super secret message!"
SHORT_WRONG_KEY = "dGhpc2lzYXdyb25na2V5MTIzNDU2Nzg5MDEyMzQ1Ng=="
WRONG_KEY = crypto.encode_key(make_key(0x42))


@pytest.fixture
def dispatcher(service: SecretMessageService) -> Dispatcher:
    return Dispatcher(service)


def _save(dispatcher: Dispatcher, text: str = SECRET) -> dict:
    return json.loads(dispatcher.handle_save(text.encode("utf-8")))


def _receive(dispatcher: Dispatcher, message_id: str, aes_key: str, **extra):
    return json.loads(dispatcher.handle_receive(identifier_json(message_id, aes_key, extra)))


# ---------------------------------------------------------------------------
# save.msg
# ---------------------------------------------------------------------------


class TestHandleSave:
    def test_reply_is_identifier_json(self, dispatcher) -> None:
        reply = _save(dispatcher)
        assert set(reply) == {"messageId", "aesKey"}
        assert len(reply["aesKey"]) == 44

    @pytest.mark.parametrize(
        "body, error",
        [
            (b"", "Message cannot be empty"),
            (None, "Message cannot be empty"),
            (b"   \n", "Message cannot be empty or whitespace only"),
            (b"\xff\xfe", "Message must be valid UTF-8"),
        ],
    )
    def test_rejections(self, store, dispatcher, body, error) -> None:
        assert json.loads(dispatcher.handle_save(body)) == {"error": error}
        assert store.keys() == []

    def test_size_boundary(self, store) -> None:
        d = Dispatcher(SecretMessageService(store, max_message_size=32))
        assert "messageId" in json.loads(d.handle_save(b"x" * 32))
        reply = json.loads(d.handle_save(b"x" * 33))
        assert reply == {"error": "Message size exceeds maximum allowed: 32 bytes"}


# ---------------------------------------------------------------------------
# receive.msg
# ---------------------------------------------------------------------------


class TestHandleReceive:
    def test_reply_is_json_string(self, dispatcher) -> None:
        ident = _save(dispatcher)
        raw = dispatcher.handle_receive(identifier_json(ident["messageId"], ident["aesKey"]))
        assert raw == json.dumps(SECRET).encode()

    def test_non_ascii_plaintext(self, dispatcher) -> None:
        ident = _save(dispatcher, "päss ☃")
        assert _receive(dispatcher, ident["messageId"], ident["aesKey"]) == "päss ☃"

    def test_secret_key_field_ignored(self, dispatcher) -> None:
        ident = _save(dispatcher)
        reply = _receive(
            dispatcher, ident["messageId"], ident["aesKey"], secretKey={"algorithm": "AES"}
        )
        assert reply == SECRET

    @pytest.mark.parametrize(
        "body, error",
        [
            (b"", "Message identifier cannot be empty"),
            (b"not json", "Invalid message identifier format"),
            (b"[1, 2]", "Invalid message identifier format"),
            (b'{"messageId": "abc"}', "Invalid message identifier format"),
            (b'{"messageId": 5, "aesKey": "x"}', "Invalid message identifier format"),
        ],
    )
    def test_parse_rejections(self, dispatcher, body, error) -> None:
        assert json.loads(dispatcher.handle_receive(body)) == {"error": error}

    def test_snake_case_fields_rejected(self, store, dispatcher) -> None:
        ident = _save(dispatcher)
        body = json.dumps({"message_id": ident["messageId"], "aes_key": ident["aesKey"]}).encode()
        assert json.loads(dispatcher.handle_receive(body)) == {
            "error": "Invalid message identifier format"
        }
        assert store.get(attempt_key(ident["messageId"])) is None

    def test_oversize_payload_rejected_before_parsing(self, store) -> None:
        d = Dispatcher(SecretMessageService(store, max_message_size=64))
        body = identifier_json("a" * 80, WRONG_KEY)
        assert json.loads(d.handle_receive(body)) == {
            "error": "Message size exceeds maximum allowed: 64 bytes"
        }
        assert store.keys() == []

    def test_length_limits(self, store, dispatcher) -> None:
        assert _receive(dispatcher, "a" * 101, WRONG_KEY) == {"error": "Message ID too long"}
        assert _receive(dispatcher, "abc", "A" * 501) == {"error": "AES key too long"}
        assert store.keys() == []

    def test_not_found(self, dispatcher) -> None:
        assert _receive(dispatcher, "missing", WRONG_KEY) == {"error": "Message not found"}

    def test_decrypt_failure_does_not_leak_detail(self, store, dispatcher) -> None:
        ident = _save(dispatcher)
        assert _receive(dispatcher, ident["messageId"], WRONG_KEY) == {
            "error": "Unable to decrypt message"
        }

    def test_malformed_envelope(self, store, dispatcher) -> None:
        store.put_with_ttl(message_key("m1"), "0123456789", timedelta(days=1))
        assert _receive(dispatcher, "m1", WRONG_KEY) == {"error": "Unable to decrypt message"}
        assert store.get(attempt_key("m1")) == "1"


# ---------------------------------------------------------------------------
# NATS binding and end-to-end scenarios
# ---------------------------------------------------------------------------


async def _request_json(nc: FakeNats, subject: str, payload: bytes):
    msg = await nc.request(subject, payload)
    return json.loads(msg.data)


class TestOverNats:
    def test_subscribes_both_subjects(self, dispatcher, fake_nats) -> None:
        async def scenario():
            await dispatcher.start(fake_nats)
            assert set(fake_nats.handlers) == {SAVE_SUBJECT, RECEIVE_SUBJECT}
            await dispatcher.stop()
            assert fake_nats.handlers == {}

        asyncio.run(scenario())

    def test_happy_path(self, dispatcher, fake_nats) -> None:
        async def scenario():
            await dispatcher.start(fake_nats)
            ident = await _request_json(fake_nats, SAVE_SUBJECT, SECRET.encode())
            body = identifier_json(ident["messageId"], ident["aesKey"])
            first = await _request_json(fake_nats, RECEIVE_SUBJECT, body)
            second = await _request_json(fake_nats, RECEIVE_SUBJECT, body)
            await dispatcher.stop()
            return first, second

        first, second = asyncio.run(scenario())
        assert first == SECRET
        assert second == {"error": "Message not found"}

    def test_wrong_key_keeps_envelope(self, store, dispatcher, fake_nats) -> None:
        async def scenario():
            await dispatcher.start(fake_nats)
            ident = await _request_json(fake_nats, SAVE_SUBJECT, SECRET.encode())
            reply = await _request_json(
                fake_nats, RECEIVE_SUBJECT, identifier_json(ident["messageId"], SHORT_WRONG_KEY)
            )
            return ident, reply

        ident, reply = asyncio.run(scenario())
        assert "error" in reply
        assert store.get(message_key(ident["messageId"])) is not None

    def test_budget_exhaustion(self, store, dispatcher, fake_nats) -> None:
        async def scenario():
            await dispatcher.start(fake_nats)
            ident = await _request_json(fake_nats, SAVE_SUBJECT, SECRET.encode())
            for _ in range(3):
                reply = await _request_json(
                    fake_nats, RECEIVE_SUBJECT, identifier_json(ident["messageId"], WRONG_KEY)
                )
                assert "error" in reply
            final = await fake_nats.request(
                RECEIVE_SUBJECT, identifier_json(ident["messageId"], ident["aesKey"])
            )
            return ident, final.data

        ident, final = asyncio.run(scenario())
        assert final == json.dumps(MAX_ATTEMPTS_SENTINEL).encode()
        assert store.get(message_key(ident["messageId"])) is None

    def test_ttl_expiry(self, fake_nats) -> None:
        d = Dispatcher(SecretMessageService(MemoryStore(), auto_delete_days=0))

        async def scenario():
            await d.start(fake_nats)
            ident = await _request_json(fake_nats, SAVE_SUBJECT, SECRET.encode())
            return await _request_json(
                fake_nats, RECEIVE_SUBJECT, identifier_json(ident["messageId"], ident["aesKey"])
            )

        assert asyncio.run(scenario()) == {"error": "Message not found"}

    def test_concurrent_retrieves(self, dispatcher, fake_nats) -> None:
        async def scenario():
            await dispatcher.start(fake_nats)
            ident = await _request_json(fake_nats, SAVE_SUBJECT, SECRET.encode())
            body = identifier_json(ident["messageId"], ident["aesKey"])
            return await asyncio.gather(
                _request_json(fake_nats, RECEIVE_SUBJECT, body),
                _request_json(fake_nats, RECEIVE_SUBJECT, body),
            )

        replies = asyncio.run(scenario())
        assert replies.count(SECRET) == 1
        assert {"error": "Message not found"} in replies

    def test_request_without_reply_is_dropped(self, store, dispatcher, fake_nats, caplog) -> None:
        async def scenario():
            await dispatcher.start(fake_nats)
            await fake_nats.deliver(SAVE_SUBJECT, SECRET.encode(), reply="")
            await dispatcher.wait_idle()

        with caplog.at_level(logging.WARNING):
            asyncio.run(scenario())
        assert fake_nats.published == {}
        assert store.keys() == []
        assert "No reply address" in caplog.text

    def test_unexpected_error_is_generic(self, fake_nats) -> None:
        class Exploding(SecretMessageService):
            def create(self, plaintext):
                raise RuntimeError("redis password is hunter2")

        d = Dispatcher(Exploding(MemoryStore()))

        async def scenario():
            await d.start(fake_nats)
            return await _request_json(fake_nats, SAVE_SUBJECT, SECRET.encode())

        assert asyncio.run(scenario()) == {"error": "Internal server error"}

    def test_publish_failure_is_logged(self, dispatcher, caplog) -> None:
        class BrokenPublish(FakeNats):
            async def publish(self, subject, payload=b""):
                raise ConnectionError("gone")

        nc = BrokenPublish()

        async def scenario():
            await dispatcher.start(nc)
            await nc.deliver(SAVE_SUBJECT, SECRET.encode(), reply="_INBOX.1")
            await dispatcher.wait_idle()

        with caplog.at_level(logging.ERROR):
            asyncio.run(scenario())
        assert "Failed to publish reply" in caplog.text

    def test_plaintext_never_logged(self, dispatcher, fake_nats, caplog) -> None:
        async def scenario():
            await dispatcher.start(fake_nats)
            ident = await _request_json(fake_nats, SAVE_SUBJECT, SECRET.encode())
            await _request_json(
                fake_nats, RECEIVE_SUBJECT, identifier_json(ident["messageId"], ident["aesKey"])
            )
            return ident

        with caplog.at_level(logging.DEBUG):
            ident = asyncio.run(scenario())
        assert SECRET not in caplog.text
        assert ident["aesKey"] not in caplog.text


class TestBackpressure:
    def test_in_flight_requests_are_bounded(self, fake_nats) -> None:
        release = threading.Event()

        class SlowStore(MemoryStore):
            def put_with_ttl(self, key, value, ttl):
                release.wait(5)
                super().put_with_ttl(key, value, ttl)

        d = Dispatcher(SecretMessageService(SlowStore()), max_in_flight=4)

        async def scenario():
            await d.start(fake_nats)
            deliveries = [
                asyncio.create_task(
                    fake_nats.deliver(SAVE_SUBJECT, SECRET.encode(), reply=f"_INBOX.{i}")
                )
                for i in range(50)
            ]
            for _ in range(50):
                await asyncio.sleep(0.01)
            held = d.in_flight
            waiting = sum(not t.done() for t in deliveries)
            release.set()
            await asyncio.gather(*deliveries)
            await d.wait_idle()
            return held, waiting

        held, waiting = asyncio.run(scenario())
        assert held == 4
        # The rest are still parked in the subscription callback
        assert waiting == 46
        assert d.in_flight == 0
        replies = [json.loads(p[0]) for p in fake_nats.published.values()]
        assert len(replies) == 50
        assert all("messageId" in r for r in replies)

    def test_broker_uses_configured_limit(self) -> None:
        from secretbroker.core.config import Settings
        from secretbroker.services.broker import Broker

        broker = Broker(Settings(store_backend="memory", max_in_flight=7))
        assert broker.dispatcher.max_in_flight == 7
