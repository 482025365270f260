"""
SQL-backed vector sink

Records live in ``vector_records``; the watermark is a column of the same
row, and each batch is one database transaction.
"""
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import select, text
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..core.exceptions import KeyConflictError, PermanentRecordError, TransientStoreError
from ..database.database import session_scope
from ..database.models import VectorRecordRow
from ..events.models import SinkKind, SinkRecord
from ..utils.logger import setup_logger
from .base import RecordFilter, SinkOperation, SinkStore, should_apply
from .vector_store import rank_by_cosine

logger = setup_logger(__name__)


class SqlVectorStore(SinkStore):
    """Vector sink persisted through SQLAlchemy"""

    kind = SinkKind.VECTOR

    def __init__(self, session_factory: sessionmaker, dimension: int):
        self.session_factory = session_factory
        self.dimension = dimension

    def _translate(self, error: SQLAlchemyError, action: str) -> Exception:
        if isinstance(error, IntegrityError):
            return KeyConflictError(f"Vector store key conflict during {action}: {error.orig}")
        if isinstance(error, OperationalError):
            return TransientStoreError(f"Vector store unavailable during {action}: {error.orig}")
        return TransientStoreError(f"Vector store error during {action}: {error}")

    def load_watermarks(self, record_ids: Iterable[str]) -> Dict[str, int]:
        ids = list(record_ids)
        if not ids:
            return {}
        try:
            with session_scope(self.session_factory) as session:
                rows = session.execute(
                    select(VectorRecordRow.record_id, VectorRecordRow.commit_sequence)
                    .where(VectorRecordRow.record_id.in_(ids))
                ).all()
        except SQLAlchemyError as e:
            raise self._translate(e, "load_watermarks") from e
        return {record_id: sequence for record_id, sequence in rows}

    def apply_batch(self, operations: List[SinkOperation]) -> int:
        for operation in operations:
            if not operation.is_delete:
                vector = operation.enriched.vector
                if vector is None or len(vector) != self.dimension:
                    raise PermanentRecordError(
                        f"Vector for {operation.record_id} does not have dimension {self.dimension}",
                        {"record_id": operation.record_id}
                    )
        applied = 0
        now = datetime.now(timezone.utc)
        try:
            with session_scope(self.session_factory) as session:
                for operation in operations:
                    row = session.get(VectorRecordRow, operation.record_id)
                    watermark = row.commit_sequence if row is not None else None
                    if not should_apply(operation.commit_sequence, watermark, operation.snapshot):
                        continue
                    if row is None:
                        row = VectorRecordRow(record_id=operation.record_id)
                        session.add(row)
                    row.source_table = operation.source_table
                    row.commit_sequence = operation.commit_sequence
                    row.deleted = operation.is_delete
                    row.fields = {} if operation.is_delete else dict(operation.enriched.fields)
                    row.vector = None if operation.is_delete else list(operation.enriched.vector)
                    row.updated_at = now
                    applied += 1
        except SQLAlchemyError as e:
            raise self._translate(e, "apply_batch") from e
        return applied

    @staticmethod
    def _to_record(row: VectorRecordRow) -> SinkRecord:
        return SinkRecord(
            record_id=row.record_id,
            source_table=row.source_table,
            commit_sequence=row.commit_sequence,
            fields=dict(row.fields or {}),
            deleted=row.deleted,
            vector=list(row.vector) if row.vector is not None else None,
        )

    def get_record(self, record_id: str) -> Optional[SinkRecord]:
        with session_scope(self.session_factory) as session:
            row = session.get(VectorRecordRow, record_id)
            return self._to_record(row) if row is not None else None

    def iter_records(self, source_table: str) -> Iterator[SinkRecord]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(VectorRecordRow)
                .where(VectorRecordRow.source_table == source_table)
                .where(VectorRecordRow.deleted.is_(False))
            ).scalars().all()
            records = [self._to_record(row) for row in rows]
        return iter(records)

    def search(
        self,
        query_embedding: Sequence[float],
        k: int = 10,
        predicate: Optional[RecordFilter] = None,
        consistency: Optional[str] = None
    ) -> List[Tuple[str, float]]:
        """Brute-force cosine search over visible rows"""
        try:
            with session_scope(self.session_factory) as session:
                rows = session.execute(
                    select(VectorRecordRow.record_id, VectorRecordRow.vector, VectorRecordRow.fields)
                    .where(VectorRecordRow.deleted.is_(False))
                ).all()
        except SQLAlchemyError as e:
            raise self._translate(e, "search") from e
        candidates = [
            (record_id, vector)
            for record_id, vector, fields in rows
            if vector is not None and (predicate is None or predicate(fields or {}))
        ]
        return rank_by_cosine(query_embedding, candidates, k)

    def ping(self) -> bool:
        try:
            with session_scope(self.session_factory) as session:
                session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.warning(f"[SqlVectorStore] Ping failed: {e}")
            return False

    def count(self) -> int:
        with session_scope(self.session_factory) as session:
            return session.query(VectorRecordRow).filter(VectorRecordRow.deleted.is_(False)).count()
