"""
Partition worker base

Common consume loop for the transform stage and the sink writers: one
asyncio task per partition, fetch from the last committed offset, hand the
batch to the subclass, commit past it.

Features:
- Exactly one task per partition, so per-key order is the partition order
- Transient fetch/commit failures back off and retry
- Partition-fatal errors halt only that partition and raise an alert
- Graceful stop: no new fetches, the in-flight batch finishes and commits
"""
import asyncio
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core.alerts import AlertSink
from ..core.exceptions import PartitionFatalError, TransientError
from ..events.event_log import EventLog, LogRecord
from ..utils.logger import setup_logger

logger = setup_logger(__name__)


class PartitionWorker(ABC):
    """Base class for workers consuming one topic partition by partition"""

    component = "worker"
    FETCH_BACKOFF_SECONDS = 0.5

    def __init__(
        self,
        event_log: EventLog,
        topic: str,
        group: str,
        fetch_size: int = 200,
        fetch_timeout: float = 0.5,
        alerts: Optional[AlertSink] = None,
        partitions: Optional[List[int]] = None
    ):
        self.event_log = event_log
        self.topic = topic
        self.group = group
        self.fetch_size = fetch_size
        self.fetch_timeout = fetch_timeout
        self.alerts = alerts if alerts is not None else AlertSink()
        self.partition_ids = partitions if partitions is not None else list(range(event_log.partitions(topic)))

        self.halted: Dict[int, str] = {}
        self.records_consumed = 0
        self.batches = 0
        self._stopping = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    @property
    def name(self) -> str:
        return self.component

    @abstractmethod
    async def handle_batch(self, partition: int, records: List[LogRecord]) -> None:
        """
        Process one batch of records

        Must not raise for per-record failures (dead-letter them instead).
        Raising PartitionFatalError halts the partition; any other exception
        leaves the offset uncommitted and the batch is re-fetched.
        """
        pass

    async def collect(self, partition: int, offset: int, timeout: float) -> List[LogRecord]:
        """Fetch the next batch; subclasses may accumulate across fetches"""
        return await self.event_log.fetch(self.topic, partition, offset, self.fetch_size, timeout)

    def poll_delay(self, partition: int) -> float:
        """Seconds to wait before the next fetch (backpressure hook)"""
        return 0.0

    async def _step(self, partition: int, offset: int, timeout: float) -> Optional[int]:
        """
        One fetch/handle/commit cycle

        Returns:
            the new committed offset, or None if nothing was fetched
        """
        try:
            records = await self.collect(partition, offset, timeout)
        except TransientError as e:
            logger.warning(f"[{self.name}] Fetch failed on partition {partition}: {e}")
            await self._sleep(self.FETCH_BACKOFF_SECONDS)
            return None
        if not records:
            return None

        start = time.perf_counter()
        await self.handle_batch(partition, records)
        next_offset = records[-1].offset + 1
        await self.event_log.commit(self.group, self.topic, partition, next_offset)
        self.records_consumed += len(records)
        self.batches += 1
        logger.debug(
            f"[{self.name}] Partition {partition}: {len(records)} records "
            f"in {(time.perf_counter() - start) * 1000:.1f}ms, committed {next_offset}"
        )
        return next_offset

    def _halt(self, partition: int, error: PartitionFatalError) -> None:
        self.halted[partition] = error.message
        self.alerts.raise_alert(self.name, f"Partition halted: {error.message}", partition=partition, **error.details)

    async def run_partition(self, partition: int) -> None:
        offset = await self.event_log.committed(self.group, self.topic, partition)
        logger.info(f"[{self.name}] Partition {partition} starting at offset {offset}")
        while not self._stopping.is_set():
            delay = self.poll_delay(partition)
            if delay > 0:
                await self._sleep(delay)
                if self._stopping.is_set():
                    break
            try:
                next_offset = await self._step(partition, offset, self.fetch_timeout)
            except PartitionFatalError as e:
                self._halt(partition, e)
                return
            except Exception as e:
                logger.error(f"[{self.name}] Partition {partition} batch failed, re-fetching: {e}", exc_info=True)
                await self._sleep(self.FETCH_BACKOFF_SECONDS)
                continue
            if next_offset is not None:
                offset = next_offset
        logger.info(f"[{self.name}] Partition {partition} stopped at offset {offset}")

    async def drain(self) -> int:
        """
        Process everything currently in the topic, then return

        Used by one-shot runs and tests. Returns the number of records consumed.
        """
        before = self.records_consumed
        for partition in self.partition_ids:
            if partition in self.halted:
                continue
            offset = await self.event_log.committed(self.group, self.topic, partition)
            while True:
                try:
                    next_offset = await self._step(partition, offset, 0.0)
                except PartitionFatalError as e:
                    self._halt(partition, e)
                    break
                if next_offset is None:
                    break
                offset = next_offset
        return self.records_consumed - before

    def start(self) -> List[asyncio.Task]:
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self.run_partition(p), name=f"{self.name}-p{p}")
            for p in self.partition_ids
        ]
        return self._tasks

    async def run(self) -> None:
        await asyncio.gather(*self.start())

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop fetching, let in-flight batches finish and commit"""
        self._stopping.set()
        if not self._tasks:
            return
        done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        self._tasks = []
        logger.info(f"[{self.name}] Stopped ({len(done)} partitions drained, {len(pending)} cancelled)")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def lag(self) -> Dict[int, int]:
        return await self.event_log.lag(self.group, self.topic)

    def status(self) -> Dict[str, Any]:
        return {
            "topic": self.topic,
            "group": self.group,
            "partitions": len(self.partition_ids),
            "halted_partitions": dict(self.halted),
            "records_consumed": self.records_consumed,
            "batches": self.batches,
            "running": bool(self._tasks) and not self._stopping.is_set(),
        }
