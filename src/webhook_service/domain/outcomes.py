"""Result of a single delivery attempt.

``Outcome`` is a closed union so callers can branch exhaustively with
``isinstance`` instead of catching exceptions.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from webhook_service.domain.enums import AttemptOutcome, ErrorCode


@dataclass(frozen=True)
class Success:
    status_code: int
    response_body: str | None
    elapsed_ms: int

    kind = AttemptOutcome.SUCCESS
    error_code = None
    error_message = None


@dataclass(frozen=True)
class Failure:
    """Non-2xx answer (``status_code`` set) or network error (``status_code`` is None)."""

    status_code: int | None
    response_body: str | None
    elapsed_ms: int
    error_code: ErrorCode
    error_message: str

    kind = AttemptOutcome.FAILURE


@dataclass(frozen=True)
class Timeout:
    error_message: str
    elapsed_ms: int

    kind = AttemptOutcome.TIMEOUT
    status_code = None
    response_body = None
    error_code = ErrorCode.TIMEOUT


Outcome = Union[Success, Failure, Timeout]


def is_success(outcome: Outcome) -> bool:
    return isinstance(outcome, Success)
