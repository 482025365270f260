"""
Sink store interface

Every store keeps the per-key watermark (last applied commit sequence)
inside the record itself and updates it in the same write as the data, so
a batch is either applied with its watermarks or not at all.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from ..events.models import EnrichedEvent, SinkKind, SinkRecord

# watermark of a key the store has never seen
NO_WATERMARK = -1


def should_apply(commit_sequence: int, watermark: Optional[int], snapshot: bool = False) -> bool:
    """
    Idempotent merge rule

    Log events apply only when strictly newer than the watermark. Snapshot
    events (resync, repair) carry the source head sequence, which may equal
    the watermark of a record that has since drifted, so they also apply on
    equality; re-applying current source state is harmless.
    """
    current = NO_WATERMARK if watermark is None else watermark
    if snapshot:
        return commit_sequence >= current
    return commit_sequence > current


@dataclass
class SinkOperation:
    """The event that won the merge for one key within a batch"""
    enriched: EnrichedEvent

    @property
    def record_id(self) -> str:
        return self.enriched.record_id

    @property
    def commit_sequence(self) -> int:
        return self.enriched.commit_sequence

    @property
    def snapshot(self) -> bool:
        return self.enriched.event.snapshot

    @property
    def is_delete(self) -> bool:
        return self.enriched.is_delete

    @property
    def source_table(self) -> str:
        return self.enriched.event.source_table


class SinkStore(ABC):
    """Abstract interface for a target store"""

    kind: SinkKind

    @abstractmethod
    def load_watermarks(self, record_ids: Iterable[str]) -> Dict[str, int]:
        """Watermarks of the given keys, tombstones included; unknown keys are omitted"""
        pass

    @abstractmethod
    def apply_batch(self, operations: List[SinkOperation]) -> int:
        """
        Apply operations atomically, re-checking each watermark

        Returns:
            number of operations applied (stale ones are skipped)
        """
        pass

    @abstractmethod
    def get_record(self, record_id: str) -> Optional[SinkRecord]:
        """The stored record, tombstones included"""
        pass

    @abstractmethod
    def iter_records(self, source_table: str) -> Iterator[SinkRecord]:
        """Visible (non-deleted) records of one source table"""
        pass

    @abstractmethod
    def ping(self) -> bool:
        pass

    def count(self) -> int:
        return 0

    def close(self) -> None:
        pass


# predicate over a record's projected fields, applied before top-k truncation
RecordFilter = Callable[[Dict[str, Any]], bool]
