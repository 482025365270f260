"""
Append-only report stores
"""
import threading
from abc import ABC, abstractmethod
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from ..database.database import session_scope
from ..database.models import ReconciliationReportRecord
from .models import ReconciliationReport, ReconciliationStatus


class ReportStore(ABC):
    """Audit trail of reconciliation reports; reports are never updated"""

    @abstractmethod
    def append(self, report: ReconciliationReport) -> None:
        pass

    @abstractmethod
    def list(
        self,
        limit: int = 100,
        status: Optional[ReconciliationStatus] = None,
        sink: Optional[str] = None
    ) -> List[ReconciliationReport]:
        """Most recent first"""
        pass


class InMemoryReportStore(ReportStore):

    def __init__(self, max_reports: int = 10000):
        self.max_reports = max_reports
        self._reports: List[ReconciliationReport] = []
        self._lock = threading.Lock()

    def append(self, report: ReconciliationReport) -> None:
        with self._lock:
            self._reports.append(report)
            if len(self._reports) > self.max_reports:
                self._reports.pop(0)

    def list(self, limit=100, status=None, sink=None) -> List[ReconciliationReport]:
        with self._lock:
            reports = list(reversed(self._reports))
        if status is not None:
            reports = [r for r in reports if r.status == status]
        if sink is not None:
            reports = [r for r in reports if r.sink == sink]
        return reports[:limit]


class SqlReportStore(ReportStore):
    """Reports in the ``reconciliation_reports`` table"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def append(self, report: ReconciliationReport) -> None:
        with session_scope(self.session_factory) as session:
            session.add(ReconciliationReportRecord(
                report_id=report.report_id,
                sink=report.sink,
                source_table=report.source_table,
                partition=report.partition,
                status=report.status.value,
                source_hash=report.source_hash,
                sink_hash=report.sink_hash,
                mismatched_keys=list(report.mismatched_keys),
                error=report.error,
                generated_at=report.generated_at,
            ))

    def list(self, limit=100, status=None, sink=None) -> List[ReconciliationReport]:
        with session_scope(self.session_factory) as session:
            query = session.query(ReconciliationReportRecord)
            if status is not None:
                query = query.filter(ReconciliationReportRecord.status == status.value)
            if sink is not None:
                query = query.filter(ReconciliationReportRecord.sink == sink)
            rows = query.order_by(ReconciliationReportRecord.generated_at.desc()).limit(limit).all()
            return [
                ReconciliationReport(
                    report_id=row.report_id,
                    sink=row.sink,
                    source_table=row.source_table,
                    partition=row.partition,
                    status=ReconciliationStatus(row.status),
                    source_hash=row.source_hash,
                    sink_hash=row.sink_hash,
                    mismatched_keys=tuple(row.mismatched_keys or ()),
                    error=row.error,
                    generated_at=row.generated_at,
                )
                for row in rows
            ]
