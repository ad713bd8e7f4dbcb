# secretbroker/core/password.py

import secrets
import string

CHAR_LOWER = string.ascii_lowercase
CHAR_UPPER = string.ascii_uppercase
NUMBER = string.digits
OTHER_CHAR = "!@#$%&*()_+-=[]?"
PASSWORD_ALLOW_BASE = CHAR_LOWER + CHAR_UPPER + NUMBER + OTHER_CHAR


def generate_password(length: int) -> str:
    """Random password for producers that prefer a passphrase-derived key"""
    if length < 1:
        raise ValueError("Password length must be at least 1")
    return "".join(secrets.choice(PASSWORD_ALLOW_BASE) for _ in range(length))
