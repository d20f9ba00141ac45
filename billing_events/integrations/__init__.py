"""External service integrations."""
from .processor_client import (
    CircuitBreaker,
    ProcessorClient,
    ProcessorErrorType,
    classify_error,
)

__all__ = ["CircuitBreaker", "ProcessorClient", "ProcessorErrorType", "classify_error"]
