import logging
import uuid
from typing import Optional

from secretbroker.core import crypto
from secretbroker.core.config import Settings
from secretbroker.core.exceptions import CryptoError, RNGFailureError, StoreUnavailableError
from secretbroker.core.result import ErrorKind, Outcome
from secretbroker.infra.store import KeyValueStore, attempt_key, message_key, ttl_from_days
from secretbroker.models.identifier import SecretMessageIdentifier

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_SENTINEL = "Maximum attempts reached, the message has been deleted."
MAX_MESSAGE_ID_LENGTH = 100
MAX_AES_KEY_LENGTH = 500


class SecretMessageService:
    """
    Lifecycle of one-time secrets: encrypt and store on create, guarded
    decrypt-and-destroy on retrieve.

    Ciphertext lives under `messages:<id>` with a TTL; failed attempts are
    counted under `attempts:<id>`. The key never reaches the store.
    """

    def __init__(
        self,
        store: KeyValueStore,
        auto_delete_days: int = 7,
        max_tries: int = 3,
        max_message_size: int = 1024 * 1024,
        rng: Optional[crypto.RandomSource] = None,
    ):
        self.store = store
        self.ttl = ttl_from_days(auto_delete_days)
        self.max_tries = max_tries
        self.max_message_size = max_message_size
        self._rng = rng

    @classmethod
    def from_settings(cls, store: KeyValueStore, settings: Settings) -> "SecretMessageService":
        return cls(
            store,
            auto_delete_days=settings.auto_delete_days,
            max_tries=settings.max_tries,
            max_message_size=settings.max_message_size,
        )

    # ---------- CREATE ----------

    def new_message_id(self) -> str:
        """Random v4 UUID drawn from the same source as keys and IVs."""
        return str(uuid.UUID(bytes=crypto.random_bytes(16, self._rng), version=4))

    def validate_plaintext(self, plaintext: str):
        """Return an error message, or None when the plaintext is acceptable."""
        if not plaintext:
            return "Message cannot be empty"
        if len(plaintext.encode("utf-8")) > self.max_message_size:
            return f"Message size exceeds maximum allowed: {self.max_message_size} bytes"
        if not plaintext.strip():
            return "Message cannot be empty or whitespace only"
        return None

    def create(self, plaintext: str) -> Outcome:
        error = self.validate_plaintext(plaintext)
        if error:
            return Outcome.failure(ErrorKind.BAD_REQUEST, error)

        try:
            message_id = self.new_message_id()
            key = crypto.generate_key(self._rng)
            envelope = crypto.encrypt(plaintext.encode("utf-8"), key, self._rng)
            self.store.put_with_ttl(message_key(message_id), envelope, self.ttl)
        except RNGFailureError:
            logger.exception("Random source failed while creating a message")
            return Outcome.failure(ErrorKind.RNG_FAILURE)
        except StoreUnavailableError:
            logger.exception("Store unavailable while creating a message")
            return Outcome.failure(ErrorKind.STORE_UNAVAILABLE)

        logger.info("Created secret message %s", message_id)
        return Outcome.success(
            SecretMessageIdentifier(messageId=message_id, aesKey=crypto.encode_key(key))
        )

    # ---------- RETRIEVE ----------

    def validate_identifier(self, message_id: str, aes_key_b64: str):
        if not message_id or not message_id.strip():
            return "Message ID cannot be empty"
        if len(message_id) > MAX_MESSAGE_ID_LENGTH:
            return "Message ID too long"
        if not aes_key_b64 or not aes_key_b64.strip():
            return "AES key cannot be empty"
        if len(aes_key_b64) > MAX_AES_KEY_LENGTH:
            return "AES key too long"
        try:
            key = crypto.decode_key(aes_key_b64)
        except ValueError:
            return "AES key is not valid base64"
        if len(key) != crypto.KEY_SIZE:
            return "AES key must decode to 32 bytes"
        return None

    def retrieve(self, message_id: str, aes_key_b64: str) -> Outcome:
        """
        Count the attempt first, then try to open the envelope.

        Exceeding the budget destroys the envelope and yields the sentinel as
        a successful outcome. A successful decrypt destroys the envelope
        before the counter; only the caller whose delete removed the envelope
        gets the plaintext.
        """
        error = self.validate_identifier(message_id, aes_key_b64)
        if error:
            return Outcome.failure(ErrorKind.BAD_REQUEST, error)
        key = crypto.decode_key(aes_key_b64)

        try:
            attempts = self.store.increment_returning(attempt_key(message_id), ttl=self.ttl)
            if attempts > self.max_tries:
                self.store.delete(message_key(message_id))
                logger.warning("Attempt budget exhausted for %s, message deleted", message_id)
                return Outcome.success(MAX_ATTEMPTS_SENTINEL, kind=ErrorKind.BUDGET_EXCEEDED)

            envelope = self.store.get(message_key(message_id))
            if envelope is None:
                logger.info("Message %s not found (attempt %d)", message_id, attempts)
                return Outcome.failure(ErrorKind.NOT_FOUND)

            try:
                plaintext = crypto.decrypt(envelope, key).decode("utf-8")
            except (CryptoError, UnicodeDecodeError):
                logger.warning("Failed to open message %s (attempt %d)", message_id, attempts)
                return Outcome.failure(ErrorKind.BAD_KEY_OR_CORRUPTION)

            if not self.store.delete(message_key(message_id)):
                # Consumed by a concurrent reader between our get and delete
                return Outcome.failure(ErrorKind.NOT_FOUND)
            self.store.delete(attempt_key(message_id))
        except StoreUnavailableError:
            logger.exception("Store unavailable while retrieving %s", message_id)
            return Outcome.failure(ErrorKind.STORE_UNAVAILABLE)

        logger.info("Secret message %s retrieved and destroyed", message_id)
        return Outcome.success(plaintext)
