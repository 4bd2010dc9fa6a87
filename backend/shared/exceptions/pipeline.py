"""
Failure taxonomy shared by every worker.

- TRANSIENT: network timeouts, refused connections, broker or database
  unavailability, aborted transactions. Retried with backoff.
- FATAL: malformed payloads, unknown event types, missing correlation data,
  a 4xx from the allocation service. Dead-lettered without retry.

Unique-constraint hits that mean "already done" never reach this module: the
registries turn them into idempotent success.
"""

from __future__ import annotations

import asyncio
from enum import Enum
from typing import Any, Dict, Optional

import asyncpg
import httpx
from confluent_kafka import KafkaException
from pydantic import ValidationError
from redis.exceptions import RedisError

from .base import FatalEventError, PipelineError, TransientPipelineError


class ErrorClass(str, Enum):
    TRANSIENT = "transient"
    FATAL = "fatal"


# 25P02 / 42P10: the connection is left in an aborted transaction and must
# not go back to the pool.
TRANSACTION_ABORTED_ERRORS = (
    asyncpg.exceptions.InFailedSQLTransactionError,
    asyncpg.exceptions.InvalidColumnReferenceError,
)

_FATAL_POSTGRES_ERRORS = (
    asyncpg.exceptions.DataError,
    asyncpg.exceptions.NotNullViolationError,
    asyncpg.exceptions.ForeignKeyViolationError,
    asyncpg.exceptions.CheckViolationError,
)

_TRANSIENT_BUILTINS = (asyncio.TimeoutError, TimeoutError, ConnectionError, OSError)


class AllocationServiceError(TransientPipelineError):
    """Allocation RPC failed in a way another attempt may fix (timeout, 5xx)"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_body: Optional[Any] = None):
        super().__init__(
            message=f"Allocation service error: {message}",
            code="ALLOCATION_SERVICE_ERROR",
            details={"status_code": status_code, "response": response_body},
        )
        self.status_code = status_code
        self.response_body = response_body


class AllocationPendingError(AllocationServiceError):
    """The service accepted the request but has no trainer yet"""

    def __init__(self, message: str = "no trainer assigned yet", status_code: Optional[int] = None,
                 response_body: Optional[Any] = None):
        super().__init__(message=message, status_code=status_code, response_body=response_body)
        self.code = "ALLOCATION_PENDING"


class AllocationRejectedError(FatalEventError):
    """4xx from the allocation service: the request itself is wrong"""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 response_body: Optional[Any] = None):
        super().__init__(
            message=f"Allocation rejected: {message}",
            code="ALLOCATION_REJECTED",
            details={"status_code": status_code, "response": response_body},
        )
        self.status_code = status_code
        self.response_body = response_body


class AllocationNotVisibleError(TransientPipelineError):
    """RPC reported success but the allocation row is not observable yet"""

    def __init__(self, allocation_id: str, observed_status: Optional[str] = None):
        super().__init__(
            message=f"Allocation {allocation_id} not visible with an active status (observed={observed_status})",
            code="ALLOCATION_NOT_VISIBLE",
            details={"allocation_id": allocation_id, "observed_status": observed_status},
        )
        self.allocation_id = allocation_id
        self.observed_status = observed_status


class EventPublishError(TransientPipelineError):
    """Broker did not acknowledge a produced message"""

    def __init__(self, message: str, topic: Optional[str] = None):
        super().__init__(
            message=f"Event publish failed: {message}",
            code="EVENT_PUBLISH_FAILED",
            details={"topic": topic},
        )
        self.topic = topic


class UnexpectedEventTypeError(FatalEventError):
    """Envelope type is valid but not one this worker consumes"""

    def __init__(self, event_type: str, worker_name: str):
        super().__init__(
            message=f"{worker_name} does not handle {event_type}",
            code="UNEXPECTED_EVENT_TYPE",
            details={"event_type": event_type, "worker": worker_name},
        )


def is_transaction_aborted(exc: BaseException) -> bool:
    return isinstance(exc, TRANSACTION_ABORTED_ERRORS)


def classify_exception(exc: BaseException) -> ErrorClass:
    """Default classifier; workers wrap it when they know more."""
    if isinstance(exc, PipelineError):
        return ErrorClass.TRANSIENT if exc.retryable else ErrorClass.FATAL
    if isinstance(exc, ValidationError):
        return ErrorClass.FATAL
    if isinstance(exc, TRANSACTION_ABORTED_ERRORS):
        return ErrorClass.TRANSIENT
    if isinstance(exc, _FATAL_POSTGRES_ERRORS):
        return ErrorClass.FATAL
    if isinstance(exc, (asyncpg.PostgresError, asyncpg.InterfaceError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, (httpx.TimeoutException, httpx.TransportError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, (KafkaException, RedisError)):
        return ErrorClass.TRANSIENT
    if isinstance(exc, _TRANSIENT_BUILTINS):
        return ErrorClass.TRANSIENT
    if isinstance(exc, (ValueError, KeyError, TypeError)):
        return ErrorClass.FATAL
    return ErrorClass.TRANSIENT


def describe_exception(exc: BaseException) -> Dict[str, Any]:
    info: Dict[str, Any] = {"type": type(exc).__name__, "message": str(exc)[:4000]}
    if isinstance(exc, PipelineError):
        info["code"] = exc.code
        if exc.details:
            info["details"] = exc.details
    sqlstate = getattr(exc, "sqlstate", None)
    if sqlstate:
        info["sqlstate"] = sqlstate
    return info
