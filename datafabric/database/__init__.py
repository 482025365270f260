"""
Database models and session management

Main exports:
- Base: SQLAlchemy declarative base for all models
- Models: ChangeLogEntry, ChangeLogRetention, CaptureCheckpoint, DeadLetterRecord,
  ReconciliationReportRecord, VectorRecordRow
- Session management: get_engine, get_session_factory, session_scope
- Initialization: init_db
"""

from .models import (
    Base,
    ChangeLogEntry,
    ChangeLogRetention,
    CaptureCheckpoint,
    DeadLetterRecord,
    ReconciliationReportRecord,
    VectorRecordRow,
)
from .database import get_engine, get_session_factory, init_db, session_scope, close_db_connections

__all__ = [
    'Base',
    'ChangeLogEntry',
    'ChangeLogRetention',
    'CaptureCheckpoint',
    'DeadLetterRecord',
    'ReconciliationReportRecord',
    'VectorRecordRow',
    'get_engine',
    'get_session_factory',
    'init_db',
    'session_scope',
    'close_db_connections',
]
