# secretbroker/core/result.py

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    BAD_REQUEST = "bad_request"
    NOT_FOUND = "not_found"
    BAD_KEY_OR_CORRUPTION = "bad_key_or_corruption"
    BUDGET_EXCEEDED = "budget_exceeded"
    STORE_UNAVAILABLE = "store_unavailable"
    RNG_FAILURE = "rng_failure"
    INTERNAL = "internal"


@dataclass(frozen=True)
class Outcome:
    """
    Result of an engine operation.

    `ok` outcomes carry `value`. BUDGET_EXCEEDED is reported as an ok outcome
    whose value is the sentinel string; `kind` is still set so callers can tell.
    """
    ok: bool
    value: Any = None
    kind: Optional[ErrorKind] = None
    message: str = ""

    @classmethod
    def success(cls, value: Any, kind: Optional[ErrorKind] = None) -> "Outcome":
        return cls(ok=True, value=value, kind=kind)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str = "") -> "Outcome":
        return cls(ok=False, kind=kind, message=message)
