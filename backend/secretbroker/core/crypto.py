from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives import hashes, padding
from typing import Callable, Optional
import binascii
import base64
import os

from secretbroker.core.exceptions import (
    BadKeyOrCorruptionError,
    MalformedEnvelopeError,
    RNGFailureError,
)

KEY_SIZE = 32
IV_SIZE = 16
BLOCK_SIZE_BITS = 128
PBKDF2_ITERATIONS = 65536

RandomSource = Callable[[int], bytes]


# ---------- RANDOMNESS ----------

def random_bytes(length: int, rng: Optional[RandomSource] = None) -> bytes:
    """Draw `length` bytes from the CSPRNG, wrapping OS failures."""
    try:
        data = (rng or os.urandom)(length)
    except (OSError, NotImplementedError) as e:
        raise RNGFailureError("CSPRNG unavailable") from e
    if len(data) != length:
        raise RNGFailureError("CSPRNG returned a short read")
    return data


def generate_key(rng: Optional[RandomSource] = None) -> bytes:
    """256-bit AES key"""
    return random_bytes(KEY_SIZE, rng)


def generate_iv(rng: Optional[RandomSource] = None) -> bytes:
    return random_bytes(IV_SIZE, rng)


def generate_salt(rng: Optional[RandomSource] = None) -> bytes:
    return random_bytes(IV_SIZE, rng)


# ---------- KEY DERIVATION ----------

def derive_key_from_password(password: str, salt: bytes) -> bytes:
    """
    PBKDF2-HMAC-SHA256 → 32-byte AES-256 key.
    The salt must travel with whatever was encrypted under the derived key.
    """
    return PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_SIZE,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    ).derive(password.encode("utf-8"))


# ---------- BASE64 FRAMING ----------

def encode_key(key: bytes) -> str:
    return base64.b64encode(key).decode("ascii")


def decode_key(key_b64: str) -> bytes:
    """Strict standard-alphabet base64; raises ValueError on bad input."""
    try:
        return base64.b64decode(key_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("aesKey is not valid base64") from e


# ---------- ENCRYPTION ----------

def encrypt(plaintext: bytes, key: bytes, rng: Optional[RandomSource] = None) -> str:
    """
    AES-256-CBC + PKCS#7 → base64(iv (16) + ciphertext)
    """
    iv = generate_iv(rng)
    padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return base64.b64encode(iv + ciphertext).decode("ascii")


def decrypt(envelope: str, key: bytes) -> bytes:
    """
    Open an envelope produced by `encrypt`.
    """
    try:
        raw = base64.b64decode(envelope, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedEnvelopeError("envelope is not valid base64") from e

    if len(raw) < IV_SIZE + 1:
        raise MalformedEnvelopeError("envelope too short")

    iv, ciphertext = raw[:IV_SIZE], raw[IV_SIZE:]
    if len(ciphertext) % (BLOCK_SIZE_BITS // 8):
        raise MalformedEnvelopeError("ciphertext is not block aligned")
    if len(key) != KEY_SIZE:
        raise BadKeyOrCorruptionError("key must be 32 bytes")

    decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
    padded = decryptor.update(ciphertext) + decryptor.finalize()

    unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
    try:
        return unpadder.update(padded) + unpadder.finalize()
    except ValueError as e:
        raise BadKeyOrCorruptionError("bad padding") from e
