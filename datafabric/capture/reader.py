"""
Change Capture Reader

Tails the source commit log from the last acknowledged checkpoint and
publishes one event per committed row mutation to the raw change topic.

Delivery is at-least-once: the checkpoint advances only after the events
up to it were published, so a crash in between re-publishes them and the
sinks' watermarks absorb the duplicates.
"""
import asyncio
import time
from typing import AsyncIterator, Dict, List, Optional, Sequence

from ..core.alerts import AlertSink
from ..core.exceptions import CheckpointExpired
from ..events.codec import encode_event
from ..events.event_log import EventLog
from ..events.models import ChangeEvent
from ..utils.logger import setup_logger
from .checkpoints import CheckpointStore
from .source import CommitLogSource

logger = setup_logger(__name__)


class ChangeCaptureReader:
    """
    Lazy, ordered, restartable reader over a CommitLogSource

    Usage:
        reader = ChangeCaptureReader(source, checkpoints, event_log, "fabric.changes")
        await reader.run_once()      # publish everything currently committed
        await reader.run()           # keep tailing until stop()
    """

    def __init__(
        self,
        source: CommitLogSource,
        checkpoint_store: CheckpointStore,
        event_log: EventLog,
        topic: str,
        checkpoint_name: str = "default",
        read_limit: int = 500,
        poll_interval: float = 0.2,
        gap_timeout: float = 5.0,
        tables: Optional[Sequence[str]] = None,
        alerts: Optional[AlertSink] = None
    ):
        self.source = source
        self.checkpoint_store = checkpoint_store
        self.event_log = event_log
        self.topic = topic
        self.checkpoint_name = checkpoint_name
        self.read_limit = read_limit
        self.poll_interval = poll_interval
        self.gap_timeout = gap_timeout
        self.tables = set(tables) if tables else None
        self.alerts = alerts

        self.published = 0
        self.position = 0
        self.expired = False
        self._stopping = asyncio.Event()
        self._gap_since: Optional[float] = None

    @property
    def name(self) -> str:
        return f"capture:{self.checkpoint_name}"

    async def checkpoint(self) -> int:
        return await asyncio.to_thread(self.checkpoint_store.load, self.checkpoint_name)

    async def _resume_position(self) -> int:
        position = await self.checkpoint()
        earliest = await asyncio.to_thread(self.source.earliest_retained)
        if earliest is not None and position < earliest - 1:
            self.expired = True
            message = (
                f"Checkpoint {position} of '{self.checkpoint_name}' precedes retained "
                f"log start {earliest}; a full resync is required"
            )
            if self.alerts is not None:
                self.alerts.raise_alert(self.name, message, checkpoint=position, earliest_retained=earliest)
            raise CheckpointExpired(message, {"checkpoint": position, "earliest_retained": earliest})
        return position

    def _contiguous(self, batch: List[ChangeEvent], position: int) -> List[ChangeEvent]:
        """
        Trim ``batch`` at the first sequence gap

        A gap can be a transaction that took its sequence but has not
        committed yet. Hold back until it fills or ``gap_timeout`` passes
        (then the sequence is treated as rolled back).
        """
        expected = position + 1
        for index, event in enumerate(batch):
            if event.commit_sequence != expected:
                if self._gap_since is None:
                    self._gap_since = time.monotonic()
                if time.monotonic() - self._gap_since >= self.gap_timeout:
                    logger.warning(
                        f"[CaptureReader] Sequence gap at {expected} persisted "
                        f"{self.gap_timeout}s; treating it as rolled back"
                    )
                    self._gap_since = None
                    return batch
                return batch[:index]
            expected += 1
        self._gap_since = None
        return batch

    async def batches(self, follow: bool = False) -> AsyncIterator[List[ChangeEvent]]:
        """
        Yield committed events after the checkpoint in commit-ordered batches

        With ``follow=False`` the iterator ends once it has caught up with
        the source head; with ``follow=True`` it keeps polling until stop().

        Raises:
            CheckpointExpired: if the checkpoint fell out of log retention
        """
        position = await self._resume_position()
        self.position = position
        while not self._stopping.is_set():
            batch = await asyncio.to_thread(self.source.read, position, self.read_limit)
            ready = self._contiguous(batch, position)
            if not ready:
                if not follow and not batch:
                    return
                await self._sleep(self.poll_interval)
                continue
            position = ready[-1].commit_sequence
            self.position = position
            if self.tables is not None:
                ready = [e for e in ready if e.source_table in self.tables]
            # an all-filtered batch is still yielded so the position advances
            yield ready

    async def events(self, follow: bool = False) -> AsyncIterator[ChangeEvent]:
        """Lazy, ordered, restartable event sequence starting after the checkpoint"""
        async for batch in self.batches(follow=follow):
            for event in batch:
                yield event

    async def acknowledge(self, sequence: int) -> None:
        """Persist ``sequence`` as processed"""
        await asyncio.to_thread(self.checkpoint_store.save, self.checkpoint_name, sequence)

    async def _publish_batches(self, follow: bool) -> int:
        count = 0
        async for batch in self.batches(follow=follow):
            for event in batch:
                await self.event_log.publish(self.topic, event.record_id, encode_event(event))
            count += len(batch)
            self.published += len(batch)
            await self.acknowledge(self.position)
        return count

    async def run_once(self) -> int:
        """Publish every committed event not yet acknowledged; returns the count"""
        count = await self._publish_batches(follow=False)
        if count:
            logger.info(f"[CaptureReader] Published {count} change events to {self.topic}")
        return count

    async def run(self) -> None:
        """Tail the source until stop(), acknowledging after each published batch"""
        logger.info(f"[CaptureReader] Starting from checkpoint '{self.checkpoint_name}'")
        try:
            await self._publish_batches(follow=True)
        finally:
            logger.info(f"[CaptureReader] Stopped after publishing {self.published} events")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        self._stopping.set()

    def status(self) -> Dict[str, object]:
        return {
            "checkpoint_name": self.checkpoint_name,
            "position": self.position,
            "published": self.published,
            "expired": self.expired,
            "stopping": self._stopping.is_set(),
        }
