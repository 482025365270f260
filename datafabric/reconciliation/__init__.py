"""
Reconciliation: drift detection and repair
"""
from .hashing import content_hash, key_range_hash
from .models import ReconciliationReport, ReconciliationStatus
from .monitor import ReconciliationMonitor, ReconciliationScheduler, mismatched_keys
from .reports import InMemoryReportStore, ReportStore, SqlReportStore

__all__ = [
    "content_hash",
    "key_range_hash",
    "ReconciliationReport",
    "ReconciliationStatus",
    "ReconciliationMonitor",
    "ReconciliationScheduler",
    "mismatched_keys",
    "InMemoryReportStore",
    "ReportStore",
    "SqlReportStore",
]
