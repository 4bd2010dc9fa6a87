"""
Pipeline exception definitions

Every failure a worker can hit maps onto one ErrorClass; see
`shared.exceptions.pipeline.classify_exception`.
"""

from .base import FatalEventError, PipelineError, TransientPipelineError
from .pipeline import (
    TRANSACTION_ABORTED_ERRORS,
    AllocationNotVisibleError,
    AllocationPendingError,
    AllocationRejectedError,
    AllocationServiceError,
    ErrorClass,
    EventPublishError,
    UnexpectedEventTypeError,
    classify_exception,
    is_transaction_aborted,
)

__all__ = [
    # Base
    "PipelineError",
    "TransientPipelineError",
    "FatalEventError",

    # Allocation
    "AllocationServiceError",
    "AllocationPendingError",
    "AllocationRejectedError",
    "AllocationNotVisibleError",

    # Bus
    "EventPublishError",
    "UnexpectedEventTypeError",

    # Classification
    "ErrorClass",
    "TRANSACTION_ABORTED_ERRORS",
    "classify_exception",
    "is_transaction_aborted",
]
