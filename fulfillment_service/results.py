"""
Tagged handler results and the retry policy that maps exceptions onto them.

Handlers never let an exception escape to the hosting runtime; the dispatcher
turns whatever they raise into one of three results:

  - Ok:             the trigger is fully handled (or was a duplicate); commit.
  - RetryableError: transient; redeliver the same event later.
  - FatalError:     permanent; dead-letter the event, never retry.
"""

import asyncio
from dataclasses import dataclass

import httpx
from pydantic import ValidationError
from sqlalchemy.exc import OperationalError

from shared.collaborators.base import CollaboratorRejectedError, CollaboratorUnavailableError


class FulfillmentError(Exception):
    """Base class for errors raised by fulfillment handlers."""


class TransientError(FulfillmentError):
    """Safe to retry, e.g. the transition is claimed by a live concurrent run."""


class PermanentError(FulfillmentError):
    """Retrying cannot help, e.g. the order row does not exist."""


@dataclass(frozen=True)
class Ok:
    detail: str | None = None
    value: object = None

    @property
    def label(self) -> str:
        return "ok"


@dataclass(frozen=True)
class RetryableError:
    error: str

    @property
    def label(self) -> str:
        return "retryable"


@dataclass(frozen=True)
class FatalError:
    error: str

    @property
    def label(self) -> str:
        return "fatal"


HandlerResult = Ok | RetryableError | FatalError

_RETRYABLE = (
    TransientError,
    CollaboratorUnavailableError,
    httpx.TransportError,
    OperationalError,
    asyncio.TimeoutError,
)
_FATAL = (PermanentError, CollaboratorRejectedError, ValidationError)


def classify_exception(exc: BaseException) -> RetryableError | FatalError:
    message = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, _FATAL):
        return FatalError(message)
    if isinstance(exc, _RETRYABLE):
        return RetryableError(message)
    # Unknown failures are retried; the consumer dead-letters once attempts run out
    return RetryableError(message)
