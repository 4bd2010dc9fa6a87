"""
Base exception for the fulfillment pipeline
"""

from typing import Any, Dict, Optional


class PipelineError(Exception):
    """Pipeline base exception.

    `retryable` tells the retry combinator whether another attempt can
    succeed; subclasses fix it per failure kind.
    """

    retryable: bool = True

    def __init__(self, message: str, code: str = "PIPELINE_ERROR",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class TransientPipelineError(PipelineError):
    """Infrastructure hiccup; retry with backoff"""

    retryable = True

    def __init__(self, message: str, code: str = "TRANSIENT",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code=code, details=details)


class FatalEventError(PipelineError):
    """The event itself cannot be processed; never retried"""

    retryable = False

    def __init__(self, message: str, code: str = "FATAL_EVENT",
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message=message, code=code, details=details)
