"""
In-memory vector sink

Records and their watermarks live in one dict guarded by a lock; a batch is
validated first and then applied under the lock, so readers never observe
half a batch.
"""
import threading
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import numpy as np

from ..core.exceptions import PermanentRecordError
from ..events.models import SinkKind, SinkRecord
from ..utils.logger import setup_logger
from .base import RecordFilter, SinkOperation, SinkStore, should_apply

logger = setup_logger(__name__)


def rank_by_cosine(
    query: Sequence[float],
    candidates: List[Tuple[str, Sequence[float]]],
    k: int
) -> List[Tuple[str, float]]:
    """
    Top-k candidates by cosine similarity

    Ties are broken by record id so equal similarities rank stably.
    """
    if not candidates or k <= 0:
        return []
    q = np.asarray(query, dtype=np.float64)
    matrix = np.asarray([vector for _, vector in candidates], dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(q) or 1.0)
    norms[norms == 0] = 1.0
    scores = matrix @ q / norms
    ranked = sorted(
        ((candidates[i][0], float(scores[i])) for i in range(len(candidates))),
        key=lambda item: (-item[1], item[0])
    )
    return ranked[:k]


class InMemoryVectorStore(SinkStore):
    """
    Vector sink backed by process memory

    Usage:
        store = InMemoryVectorStore(dimension=256)
        store.apply_batch(operations)
        store.search(query_vector, k=10)
    """

    kind = SinkKind.VECTOR

    def __init__(self, dimension: int):
        self.dimension = dimension
        self._records: Dict[str, SinkRecord] = {}
        self._lock = threading.RLock()

    def _validate(self, operation: SinkOperation) -> None:
        if operation.is_delete:
            return
        vector = operation.enriched.vector
        if vector is None or len(vector) != self.dimension:
            raise PermanentRecordError(
                f"Vector for {operation.record_id} has dimension "
                f"{0 if vector is None else len(vector)}, expected {self.dimension}",
                {"record_id": operation.record_id}
            )

    def load_watermarks(self, record_ids: Iterable[str]) -> Dict[str, int]:
        with self._lock:
            return {
                rid: self._records[rid].commit_sequence
                for rid in record_ids if rid in self._records
            }

    def apply_batch(self, operations: List[SinkOperation]) -> int:
        for operation in operations:
            self._validate(operation)
        applied = 0
        with self._lock:
            for operation in operations:
                existing = self._records.get(operation.record_id)
                watermark = existing.commit_sequence if existing else None
                if not should_apply(operation.commit_sequence, watermark, operation.snapshot):
                    continue
                self._records[operation.record_id] = self._to_record(operation)
                applied += 1
        return applied

    @staticmethod
    def _to_record(operation: SinkOperation) -> SinkRecord:
        if operation.is_delete:
            return SinkRecord(
                record_id=operation.record_id,
                source_table=operation.source_table,
                commit_sequence=operation.commit_sequence,
                deleted=True,
            )
        enriched = operation.enriched
        return SinkRecord(
            record_id=operation.record_id,
            source_table=operation.source_table,
            commit_sequence=operation.commit_sequence,
            fields=dict(enriched.fields),
            vector=list(enriched.vector),
            text=enriched.text,
        )

    def get_record(self, record_id: str) -> Optional[SinkRecord]:
        with self._lock:
            return self._records.get(record_id)

    def iter_records(self, source_table: str) -> Iterator[SinkRecord]:
        with self._lock:
            records = [r for r in self._records.values() if r.source_table == source_table and r.visible]
        return iter(records)

    def search(
        self,
        query_embedding: Sequence[float],
        k: int = 10,
        predicate: Optional[RecordFilter] = None,
        consistency: Optional[str] = None
    ) -> List[Tuple[str, float]]:
        """Nearest visible records; ``predicate`` is applied before truncation"""
        with self._lock:
            candidates = [
                (r.record_id, r.vector)
                for r in self._records.values()
                if r.visible and r.vector is not None and (predicate is None or predicate(r.fields))
            ]
        return rank_by_cosine(query_embedding, candidates, k)

    def ping(self) -> bool:
        return True

    def count(self) -> int:
        with self._lock:
            return sum(1 for r in self._records.values() if r.visible)
