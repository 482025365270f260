"""
Core exceptions and operator alerts
"""
from .exceptions import (
    ErrorKind,
    FabricError,
    ConfigurationError,
    TransientError,
    TransientStoreError,
    SubQueryTimeout,
    PermanentRecordError,
    MalformedEventError,
    TransformError,
    PartitionFatalError,
    CheckpointExpired,
    KeyConflictError,
    QueryError,
    InvalidQuery,
    classify_exception,
    translate_exception,
)
from .alerts import Alert, AlertSink

__all__ = [
    "ErrorKind",
    "FabricError",
    "ConfigurationError",
    "TransientError",
    "TransientStoreError",
    "SubQueryTimeout",
    "PermanentRecordError",
    "MalformedEventError",
    "TransformError",
    "PartitionFatalError",
    "CheckpointExpired",
    "KeyConflictError",
    "QueryError",
    "InvalidQuery",
    "classify_exception",
    "translate_exception",
    "Alert",
    "AlertSink",
]
