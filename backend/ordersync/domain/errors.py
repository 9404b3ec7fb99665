from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import ClassVar, List

import httpx
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError


@dataclass(eq=False)
class DomainError(Exception):
    detail: str
    title: str = "Domain Error"
    type: str = "https://example.com/problems/domain-error"
    errors: List[dict] | None = None


class ErrorKind(str, Enum):
    AUTHENTICATION = "authentication"
    VALIDATION = "validation"
    DUPLICATE = "duplicate"
    TRANSIENT_EXTERNAL = "transient_external"
    PERMANENT_EXTERNAL = "permanent_external"
    HANDLER_LOGIC = "handler_logic"
    RECONCILIATION_DRIFT = "reconciliation_drift"
    UNKNOWN = "unknown"


@dataclass(eq=False)
class ProcessingError(Exception):
    """Base for the typed failures the pipeline reasons about."""

    detail: str
    kind: ClassVar[ErrorKind] = ErrorKind.UNKNOWN

    def __str__(self) -> str:
        return self.detail


@dataclass(eq=False)
class AuthenticationError(ProcessingError):
    reason: str = "invalid_signature"
    kind: ClassVar[ErrorKind] = ErrorKind.AUTHENTICATION


@dataclass(eq=False)
class ValidationError(ProcessingError):
    reason: str = "invalid_payload"
    kind: ClassVar[ErrorKind] = ErrorKind.VALIDATION


@dataclass(eq=False)
class DuplicateEvent(ProcessingError):
    kind: ClassVar[ErrorKind] = ErrorKind.DUPLICATE


@dataclass(eq=False)
class TransientExternalError(ProcessingError):
    status_code: int | None = None
    retry_after: float | None = None
    kind: ClassVar[ErrorKind] = ErrorKind.TRANSIENT_EXTERNAL


@dataclass(eq=False)
class StaleRecordError(TransientExternalError):
    """A conditional update lost an optimistic-concurrency race."""


@dataclass(eq=False)
class PermanentExternalError(ProcessingError):
    status_code: int | None = None
    kind: ClassVar[ErrorKind] = ErrorKind.PERMANENT_EXTERNAL


@dataclass(eq=False)
class HandlerLogicError(ProcessingError):
    kind: ClassVar[ErrorKind] = ErrorKind.HANDLER_LOGIC


@dataclass(eq=False)
class ReconciliationDriftError(ProcessingError):
    resource_id: str | None = None
    data: dict = field(default_factory=dict)
    kind: ClassVar[ErrorKind] = ErrorKind.RECONCILIATION_DRIFT


@dataclass(frozen=True)
class ClassifiedError:
    kind: ErrorKind
    message: str
    status_code: int | None = None
    retry_after: float | None = None


def _truncate(message: str, limit: int = 500) -> str:
    return message if len(message) <= limit else message[: limit - 3] + "..."


def classify_exception(exc: BaseException) -> ClassifiedError:
    """Map any exception to a typed error value. Matches on type only."""
    if isinstance(exc, TransientExternalError):
        return ClassifiedError(
            kind=exc.kind,
            message=_truncate(str(exc)),
            status_code=exc.status_code,
            retry_after=exc.retry_after,
        )
    if isinstance(exc, PermanentExternalError):
        return ClassifiedError(kind=exc.kind, message=_truncate(str(exc)), status_code=exc.status_code)
    if isinstance(exc, ProcessingError):
        return ClassifiedError(kind=exc.kind, message=_truncate(str(exc)))

    name = type(exc).__name__
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, PoolTimeoutError)):
        return ClassifiedError(kind=ErrorKind.TRANSIENT_EXTERNAL, message=f"timeout:{name}")
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError, ConnectionError)):
        return ClassifiedError(kind=ErrorKind.TRANSIENT_EXTERNAL, message=f"connection:{name}")
    if isinstance(exc, OperationalError) or (isinstance(exc, DBAPIError) and exc.connection_invalidated):
        return ClassifiedError(kind=ErrorKind.TRANSIENT_EXTERNAL, message=f"store:{name}")
    return ClassifiedError(kind=ErrorKind.UNKNOWN, message=_truncate(f"{name}: {exc}"))
