"""
Batch accumulation and merge planning for sink writers
"""
import time
from typing import Dict, List, Tuple

from ..events.event_log import EventLog, LogRecord
from ..events.models import EnrichedEvent
from .base import SinkOperation, should_apply


class BatchAccumulator:
    """
    Accumulates records of one partition up to (max_batch_size, max_batch_delay)

    Records are taken in offset order, so a batch never reorders the
    sub-sequence of any key.
    """

    def __init__(self, event_log: EventLog, topic: str, max_batch_size: int, max_batch_delay: float):
        self.event_log = event_log
        self.topic = topic
        self.max_batch_size = max_batch_size
        self.max_batch_delay = max_batch_delay

    async def collect(self, partition: int, offset: int, fetch_size: int, timeout: float) -> List[LogRecord]:
        """
        Wait up to ``timeout`` for the first records, then keep fetching until
        the batch is full or ``max_batch_delay`` has passed since the first
        record arrived. A zero timeout never waits.
        """
        limit = max(1, min(fetch_size, self.max_batch_size))
        batch = await self.event_log.fetch(self.topic, partition, offset, limit, timeout)
        if not batch:
            return batch

        delay = self.max_batch_delay if timeout > 0 else 0.0
        deadline = time.monotonic() + delay
        while len(batch) < limit:
            remaining = max(0.0, deadline - time.monotonic())
            more = await self.event_log.fetch(
                self.topic, partition, batch[-1].offset + 1, limit - len(batch), remaining
            )
            if not more:
                break
            batch.extend(more)
        return batch


def plan_batch(
    events: List[EnrichedEvent],
    watermarks: Dict[str, int]
) -> Tuple[List[SinkOperation], int]:
    """
    Apply the idempotent merge rule to a batch

    Walks events in log order against a running per-key watermark, drops
    every event that is stale or a duplicate, and collapses each key to its
    final surviving event (every event carries the full row state).

    Returns:
        (operations in first-seen key order, number of stale events skipped)
    """
    current = dict(watermarks)
    winners: Dict[str, EnrichedEvent] = {}
    skipped = 0
    for event in events:
        key = event.record_id
        if should_apply(event.commit_sequence, current.get(key), event.event.snapshot):
            winners[key] = event
            current[key] = event.commit_sequence
        else:
            skipped += 1
    operations = [SinkOperation(enriched=e) for e in winners.values()]
    return operations, skipped
