"""Explicit result values for calls that cross an adapter boundary.

Adapters raise typed errors; consumers that must never abort on a single
failure (the controls engine) go through ``capture`` and receive either an
``Ok`` or an ``Err`` they are forced to inspect.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar, Union

from payouts_engine.errors import (
    AuthenticationError,
    ConfigurationError,
    DomainError,
    NotFoundError,
    PayoutsError,
    TransportError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Classification of an adapter failure."""

    CONFIGURATION = "configuration"
    AUTHENTICATION = "authentication"
    NOT_FOUND = "not_found"
    TRANSPORT = "transport"
    PROVIDER = "provider"
    DOMAIN = "domain"


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Err:
    kind: ErrorKind
    detail: str
    source: str | None = None

    @property
    def ok(self) -> bool:
        return False

    @property
    def not_found(self) -> bool:
        return self.kind is ErrorKind.NOT_FOUND


Result = Union[Ok[T], Err]


def classify(exc: BaseException) -> ErrorKind:
    """Map an exception onto an ErrorKind."""
    if isinstance(exc, ConfigurationError):
        return ErrorKind.CONFIGURATION
    if isinstance(exc, AuthenticationError):
        return ErrorKind.AUTHENTICATION
    if isinstance(exc, NotFoundError):
        return ErrorKind.NOT_FOUND
    if isinstance(exc, TransportError):
        return ErrorKind.TRANSPORT
    if isinstance(exc, DomainError):
        return ErrorKind.DOMAIN
    return ErrorKind.PROVIDER


async def capture(call: Awaitable[T]) -> Result[T]:
    """Await ``call`` and fold any failure into an ``Err``."""
    try:
        return Ok(await call)
    except PayoutsError as exc:
        kind = classify(exc)
        if kind is ErrorKind.NOT_FOUND:
            logger.info("%s: %s", exc.source or "adapter", exc.message)
        else:
            logger.warning("%s call failed (%s): %s", exc.source or "adapter", kind.value, exc.message)
        return Err(kind=kind, detail=exc.message, source=exc.source)
    except Exception as exc:
        logger.exception("Unexpected adapter failure")
        return Err(kind=ErrorKind.PROVIDER, detail=str(exc) or type(exc).__name__)
