# secretbroker/core/exceptions.py
"""Secret broker exception hierarchy."""


class BrokerError(Exception):
    """Base exception for all broker errors."""


class ConfigError(BrokerError):
    """Raised when an environment setting is invalid."""


class CryptoError(BrokerError):
    """Raised when an envelope cannot be opened."""


class MalformedEnvelopeError(CryptoError):
    """Raised when the stored envelope is not valid base64 or is too short."""


class BadKeyOrCorruptionError(CryptoError):
    """Raised when decryption fails (wrong key or tampered ciphertext)."""


class RNGFailureError(BrokerError):
    """Raised when the operating system CSPRNG cannot provide bytes."""


class StoreUnavailableError(BrokerError):
    """Raised by store adapters when the backing store cannot be reached."""
