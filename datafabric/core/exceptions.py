"""
Core Exceptions

Every component translates low-level failures into one of these kinds
before logging, alerting or dead-lettering.
"""
import asyncio
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Error taxonomy"""
    TRANSIENT = "transient"
    PERMANENT_RECORD = "permanent_record"
    PARTITION_FATAL = "partition_fatal"
    QUERY = "query"


class FabricError(Exception):
    """Base exception for the data fabric"""
    kind: ErrorKind = ErrorKind.PERMANENT_RECORD

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(FabricError):
    """Raised when configuration is inconsistent"""
    pass


# ============================================
# TRANSIENT
# ============================================

class TransientError(FabricError):
    """Retryable failure (timeout, temporary unavailability)"""
    kind = ErrorKind.TRANSIENT


class TransientStoreError(TransientError):
    """A target store timed out or is temporarily unavailable"""
    pass


class SubQueryTimeout(TransientError):
    """A federation sub-query missed its deadline"""
    pass


# ============================================
# PERMANENT PER RECORD
# ============================================

class PermanentRecordError(FabricError):
    """The record can never be processed; route it to the dead-letter channel"""
    kind = ErrorKind.PERMANENT_RECORD


class MalformedEventError(PermanentRecordError):
    """Payload could not be decoded or violates the event schema"""
    pass


class TransformError(PermanentRecordError):
    """Enrichment permanently rejected the input"""
    pass


# ============================================
# PARTITION FATAL
# ============================================

class PartitionFatalError(FabricError):
    """Halts the affected partition and raises an operator alert"""
    kind = ErrorKind.PARTITION_FATAL


class CheckpointExpired(PartitionFatalError):
    """The capture checkpoint is older than the source log retention"""
    pass


class KeyConflictError(PartitionFatalError):
    """The store reports a key conflict it cannot resolve"""
    pass


# ============================================
# QUERY
# ============================================

class QueryError(FabricError):
    """Query-level failure surfaced to the caller"""
    kind = ErrorKind.QUERY


class InvalidQuery(QueryError):
    """No valid sub-query could be derived from the request"""
    pass


def classify_exception(exc: BaseException) -> ErrorKind:
    """
    Map any exception onto the error taxonomy.

    Timeouts and connection problems are transient; everything else that is
    not already a FabricError is treated as a permanent per-record failure.
    """
    if isinstance(exc, FabricError):
        return exc.kind
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.PERMANENT_RECORD


def translate_exception(exc: BaseException, context: str = "") -> FabricError:
    """Wrap a raw exception in the matching FabricError subclass"""
    if isinstance(exc, FabricError):
        return exc
    message = f"{context}: {exc}" if context else str(exc)
    details = {"cause": exc.__class__.__name__}
    kind = classify_exception(exc)
    if kind == ErrorKind.TRANSIENT:
        return TransientStoreError(message, details)
    return PermanentRecordError(message, details)
