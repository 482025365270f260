"""
Sink Writer

One writer per target store, one asyncio task per partition of the sink's
enriched topic. Each batch goes through:

    decode -> load watermarks -> plan (idempotent merge) -> apply atomically

- transient store errors retry with bounded exponential backoff; after the
  last attempt the batch's unresolved events are dead-lettered and the
  writer commits past them (fail-forward)
- a record the store permanently rejects is isolated and dead-lettered
- a key conflict the store cannot resolve halts only this partition
- store latency drives the adaptive fetch controller (backpressure)
"""
import asyncio
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from ..core.alerts import AlertSink
from ..core.exceptions import (
    KeyConflictError,
    MalformedEventError,
    PermanentRecordError,
    TransientError,
    translate_exception,
)
from ..events.codec import decode_enriched, raw_payload_dict
from ..events.dead_letter import DeadLetterChannel
from ..events.event_log import EventLog, LogRecord
from ..events.models import EnrichedEvent, SinkKind
from ..utils.config import Config
from ..utils.logger import setup_logger
from ..utils.resilience.retry import async_retrying, attempts_made
from ..workers.partition_worker import PartitionWorker
from .backpressure import AdaptiveFetchController
from .base import SinkOperation, SinkStore
from .batching import BatchAccumulator, plan_batch

logger = setup_logger(__name__)


@dataclass
class WriterStats:
    applied: int = 0
    skipped: int = 0
    dead_lettered: int = 0
    batches: int = 0
    last_batch_latency_ms: float = 0.0


class SinkWriter(PartitionWorker):
    """
    Applies enriched events to one store

    Usage:
        writer = SinkWriter(SinkKind.VECTOR, store, event_log, dead_letters, config)
        writer.start()          # one task per partition
        ...
        await writer.stop()     # finish in-flight batches, commit, exit
    """

    def __init__(
        self,
        kind: SinkKind,
        store: SinkStore,
        event_log: EventLog,
        dead_letters: DeadLetterChannel,
        config: Config,
        alerts: Optional[AlertSink] = None,
        write_timeout: float = 30.0
    ):
        topics = config.event_log.topics
        super().__init__(
            event_log=event_log,
            topic=topics.enriched(kind.value),
            group=f"{config.event_log.consumer_group}.sink.{kind.value}",
            fetch_size=config.batching.max_batch_size,
            fetch_timeout=config.event_log.fetch_timeout_ms / 1000.0,
            alerts=alerts,
        )
        self.kind = kind
        self.store = store
        self.dead_letters = dead_letters
        self.retry = config.retry
        self.write_timeout = write_timeout
        self.stage = f"sink:{kind.value}"
        self.accumulator = BatchAccumulator(
            event_log,
            self.topic,
            max_batch_size=config.batching.max_batch_size,
            max_batch_delay=config.batching.max_batch_delay_ms / 1000.0,
        )
        self.controllers: Dict[int, AdaptiveFetchController] = {
            p: AdaptiveFetchController(config.batching.max_batch_size, config.backpressure)
            for p in self.partition_ids
        }
        self.stats = WriterStats()

    @property
    def name(self) -> str:
        return f"SinkWriter:{self.kind.value}"

    async def collect(self, partition: int, offset: int, timeout: float) -> List[LogRecord]:
        fetch_size = self.controllers[partition].fetch_size
        return await self.accumulator.collect(partition, offset, fetch_size, timeout)

    def poll_delay(self, partition: int) -> float:
        return self.controllers[partition].poll_delay

    async def _store_call(self, func, *args):
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=self.write_timeout)

    async def _decode(self, records: List[LogRecord]) -> List[EnrichedEvent]:
        events = []
        for record in records:
            try:
                event = decode_enriched(record.value)
                if event.sink != self.kind:
                    raise MalformedEventError(f"{event.sink.value} event on the {self.kind.value} topic")
            except MalformedEventError as e:
                await self.dead_letters.send_raw(self.stage, raw_payload_dict(record.value), e, record_id=record.key)
                self.stats.dead_lettered += 1
                continue
            events.append(event)
        return events

    async def _write(self, events: List[EnrichedEvent]) -> int:
        """Plan and apply one batch; returns applied count. Retries transient failures."""
        retrying = async_retrying(
            max_attempts=self.retry.max_attempts,
            min_wait=self.retry.min_wait,
            max_wait=self.retry.max_wait,
            multiplier=self.retry.multiplier,
        )
        operations: List[SinkOperation] = []
        try:
            async for attempt in retrying:
                with attempt:
                    watermarks = await self._store_call(
                        self.store.load_watermarks, sorted({e.record_id for e in events})
                    )
                    operations, skipped = plan_batch(events, watermarks)
                    applied = await self._store_call(self.store.apply_batch, operations) if operations else 0
        except (KeyConflictError, PermanentRecordError):
            raise
        except Exception as e:
            error = translate_exception(e, f"{self.stage} batch")
            if not isinstance(error, TransientError):
                raise error from e
            # retries exhausted: fail forward
            unresolved = operations or [SinkOperation(enriched=ev) for ev in events]
            attempts = attempts_made(retrying)
            for operation in unresolved:
                await self.dead_letters.send_event(self.stage, operation.enriched.event, error, attempts=attempts)
            self.stats.dead_lettered += len(unresolved)
            logger.error(
                f"[{self.name}] Store unavailable after {attempts} attempts; "
                f"dead-lettered {len(unresolved)} events"
            )
            return 0
        self.stats.skipped += skipped
        return applied

    async def _write_isolating(self, events: List[EnrichedEvent]) -> int:
        """Apply a batch; if the store rejects a record, apply one by one and dead-letter the bad ones"""
        try:
            return await self._write(events)
        except KeyConflictError:
            raise
        except PermanentRecordError as batch_error:
            logger.warning(f"[{self.name}] Batch rejected ({batch_error.message}); isolating records")
        applied = 0
        for event in events:
            try:
                applied += await self._write([event])
            except KeyConflictError:
                raise
            except PermanentRecordError as e:
                await self.dead_letters.send_event(self.stage, event.event, e)
                self.stats.dead_lettered += 1
        return applied

    async def handle_batch(self, partition: int, records: List[LogRecord]) -> None:
        events = await self._decode(records)
        if not events:
            return
        start = time.perf_counter()
        applied = await self._write_isolating(events)
        latency_ms = (time.perf_counter() - start) * 1000
        self.controllers[partition].observe(latency_ms, len(records))
        self.stats.applied += applied
        self.stats.batches += 1
        self.stats.last_batch_latency_ms = latency_ms
        logger.debug(
            f"[{self.name}] Partition {partition}: {len(events)} events, {applied} applied "
            f"in {latency_ms:.1f}ms"
        )

    def status(self) -> Dict[str, Any]:
        status = super().status()
        status.update({
            "sink": self.kind.value,
            "stats": asdict(self.stats),
            "backpressure": {p: c.status() for p, c in self.controllers.items()},
        })
        return status
