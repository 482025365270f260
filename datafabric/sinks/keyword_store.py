"""
Keyword sink (BM25, local in-process backend)

Stores text + fields per record and serves BM25 keyword search through
rank-bm25. Documents are tokenized once when written; BM25Okapi needs the
whole corpus for its IDF table, so the first search after a write rebuilds
the statistics from the cached tokens. The index lives in process memory;
it is meant for single-node deployments and tests.
"""
import threading
from typing import Dict, Iterable, Iterator, List, Optional, Tuple

from rank_bm25 import BM25Okapi

from ..events.models import SinkKind, SinkRecord
from ..utils.logger import setup_logger
from ..utils.text import tokenize
from .base import RecordFilter, SinkOperation, SinkStore, should_apply

logger = setup_logger(__name__)


class KeywordStore(SinkStore):
    """
    In-memory keyword index

    Usage:
        store = KeywordStore()
        store.apply_batch(operations)
        store.search("wireless mouse", k=10)
    """

    kind = SinkKind.KEYWORD

    def __init__(self):
        self._records: Dict[str, SinkRecord] = {}
        self._lock = threading.RLock()
        # tokens of visible records, maintained on write
        self._tokens: Dict[str, List[str]] = {}
        self._bm25: Optional[BM25Okapi] = None
        self._doc_ids: List[str] = []
        self._doc_tokens: List[List[str]] = []
        self._dirty = True

    def load_watermarks(self, record_ids: Iterable[str]) -> Dict[str, int]:
        with self._lock:
            return {
                rid: self._records[rid].commit_sequence
                for rid in record_ids if rid in self._records
            }

    def apply_batch(self, operations: List[SinkOperation]) -> int:
        applied = 0
        with self._lock:
            for operation in operations:
                existing = self._records.get(operation.record_id)
                watermark = existing.commit_sequence if existing else None
                if not should_apply(operation.commit_sequence, watermark, operation.snapshot):
                    continue
                if operation.is_delete:
                    record = SinkRecord(
                        record_id=operation.record_id,
                        source_table=operation.source_table,
                        commit_sequence=operation.commit_sequence,
                        deleted=True,
                    )
                    self._tokens.pop(operation.record_id, None)
                else:
                    record = SinkRecord(
                        record_id=operation.record_id,
                        source_table=operation.source_table,
                        commit_sequence=operation.commit_sequence,
                        fields=dict(operation.enriched.fields),
                        text=operation.enriched.text or "",
                    )
                    self._tokens[operation.record_id] = tokenize(record.text)
                self._records[operation.record_id] = record
                applied += 1
            if applied:
                self._dirty = True
        return applied

    def _build_index(self) -> None:
        """Rebuild BM25 statistics over the cached tokens of visible records"""
        self._doc_ids = sorted(self._tokens)
        self._doc_tokens = [self._tokens[record_id] for record_id in self._doc_ids]
        # BM25Okapi cannot be built over an empty corpus
        self._bm25 = BM25Okapi(self._doc_tokens) if self._doc_tokens else None
        self._dirty = False
        logger.debug(f"Built BM25 index with {len(self._doc_ids)} documents")

    def search(
        self,
        query: str,
        k: int = 10,
        predicate: Optional[RecordFilter] = None,
        consistency: Optional[str] = None
    ) -> List[Tuple[str, float]]:
        """
        BM25 search over visible records

        Only records sharing at least one query term are returned; ties on
        score rank by record id. ``predicate`` is applied before truncation.
        """
        query_tokens = tokenize(query)
        if not query_tokens:
            return []
        with self._lock:
            if self._dirty:
                self._build_index()
            if self._bm25 is None:
                return []
            scores = self._bm25.get_scores(query_tokens)
            wanted = set(query_tokens)
            hits = []
            for index, record_id in enumerate(self._doc_ids):
                if not wanted.intersection(self._doc_tokens[index]):
                    continue
                if predicate is not None and not predicate(self._records[record_id].fields):
                    continue
                hits.append((record_id, float(scores[index])))
        hits.sort(key=lambda h: (-h[1], h[0]))
        return hits[:k]

    def get_record(self, record_id: str) -> Optional[SinkRecord]:
        with self._lock:
            return self._records.get(record_id)

    def iter_records(self, source_table: str) -> Iterator[SinkRecord]:
        with self._lock:
            records = [r for r in self._records.values() if r.source_table == source_table and r.visible]
        return iter(records)

    def ping(self) -> bool:
        return True

    def count(self) -> int:
        with self._lock:
            return sum(1 for r in self._records.values() if r.visible)
