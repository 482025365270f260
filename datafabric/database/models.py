"""
SQLAlchemy models for capture bookkeeping, dead letters, audit reports
and the durable vector sink
"""
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text, JSON
from sqlalchemy.orm import DeclarativeBase


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class ChangeLogEntry(Base):
    """
    Source-side commit log (transactional outbox)

    Rows are written in the same transaction as the data change they
    describe, so a reader only ever sees committed mutations. ``sequence`` is
    the commit sequence handed to consumers and is never reused, even after
    every row was purged.
    """
    __tablename__ = 'change_log'
    __table_args__ = {"sqlite_autoincrement": True}

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    source_table = Column(String(255), nullable=False, index=True)
    source_key = Column(JSON, nullable=False)
    operation = Column(String(16), nullable=False)
    before = Column(JSON)
    after = Column(JSON)
    committed_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __repr__(self):
        return f"<ChangeLogEntry(seq={self.sequence}, table='{self.source_table}', op='{self.operation}')>"


class ChangeLogRetention(Base):
    """
    Retention low-water mark of ``change_log`` (a single row)

    ``retained_from`` is the lowest sequence still guaranteed to be in the
    log; ``purged_head`` is the highest sequence a purge removed, so the log
    head survives a purge of every row.
    """
    __tablename__ = 'change_log_retention'

    id = Column(Integer, primary_key=True, default=1)
    retained_from = Column(Integer, nullable=False, default=0)
    purged_head = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class CaptureCheckpoint(Base):
    """Last acknowledged commit sequence of a capture reader"""
    __tablename__ = 'capture_checkpoints'

    name = Column(String(255), primary_key=True)
    sequence = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class DeadLetterRecord(Base):
    """Events that could not be processed"""
    __tablename__ = 'dead_letters'

    id = Column(String(64), primary_key=True)
    stage = Column(String(64), nullable=False, index=True)
    reason = Column(Text, nullable=False)
    error_kind = Column(String(32), nullable=False)
    attempts = Column(Integer, nullable=False, default=1)
    record_id = Column(String(512), index=True)
    commit_sequence = Column(Integer)
    payload = Column(JSON, nullable=False)
    failed_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    resolved = Column(Boolean, nullable=False, default=False, index=True)


class ReconciliationReportRecord(Base):
    """Append-only audit trail of reconciliation runs"""
    __tablename__ = 'reconciliation_reports'

    report_id = Column(String(64), primary_key=True)
    sink = Column(String(32), nullable=False, index=True)
    source_table = Column(String(255), nullable=False)
    partition = Column(Integer, nullable=False)
    status = Column(String(16), nullable=False, index=True)
    source_hash = Column(String(64))
    sink_hash = Column(String(64))
    mismatched_keys = Column(JSON, nullable=False, default=list)
    error = Column(Text)
    generated_at = Column(DateTime(timezone=True), nullable=False, index=True)


class VectorRecordRow(Base):
    """Durable vector sink record; ``commit_sequence`` is the key's watermark"""
    __tablename__ = 'vector_records'

    record_id = Column(String(512), primary_key=True)
    source_table = Column(String(255), nullable=False)
    commit_sequence = Column(Integer, nullable=False)
    deleted = Column(Boolean, nullable=False, default=False)
    fields = Column(JSON, nullable=False, default=dict)
    vector = Column(JSON)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        Index('idx_vector_records_table_deleted', 'source_table', 'deleted'),
    )
