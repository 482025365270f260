"""
Change Event Log client

The bus between pipeline stages: a durable, ordered, partitioned,
append-only log. Every record with the same key lands in the same partition,
so per-key order is the partition order. Consumers track their position per
(group, topic, partition) and commit it explicitly after processing.
"""
import asyncio
import hashlib
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from ..utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class LogRecord:
    """One record read from the log"""
    topic: str
    partition: int
    offset: int
    key: str
    value: bytes
    timestamp: float


def partition_for(key: str, partitions: int) -> int:
    """Stable key -> partition assignment shared by producers and auditors"""
    if partitions <= 0:
        raise ValueError("partitions must be positive")
    digest = hashlib.md5(key.encode("utf-8")).digest()
    return int.from_bytes(digest[:8], "big") % partitions


class EventLog(ABC):
    """Abstract interface for the Change Event Log"""

    @abstractmethod
    def partitions(self, topic: str) -> int:
        """Number of partitions of a topic"""
        pass

    @abstractmethod
    async def publish(self, topic: str, key: str, value: bytes) -> LogRecord:
        """Append a record; the partition is chosen from the key"""
        pass

    @abstractmethod
    async def fetch(
        self,
        topic: str,
        partition: int,
        offset: int,
        max_records: int,
        timeout: float
    ) -> List[LogRecord]:
        """
        Read up to ``max_records`` starting at ``offset``

        Waits up to ``timeout`` seconds for records to arrive and returns an
        empty list if none do.
        """
        pass

    @abstractmethod
    async def commit(self, group: str, topic: str, partition: int, offset: int) -> None:
        """Persist the next offset ``group`` will read from"""
        pass

    @abstractmethod
    async def committed(self, group: str, topic: str, partition: int) -> int:
        """Last committed offset for ``group`` (0 if none)"""
        pass

    @abstractmethod
    async def end_offset(self, topic: str, partition: int) -> int:
        """Offset the next appended record will receive"""
        pass

    async def lag(self, group: str, topic: str) -> Dict[int, int]:
        """Per-partition consumer lag for ``group``"""
        lags = {}
        for partition in range(self.partitions(topic)):
            end = await self.end_offset(topic, partition)
            position = await self.committed(group, topic, partition)
            lags[partition] = max(0, end - position)
        return lags

    async def close(self) -> None:
        """Release client resources"""
        pass


class InMemoryEventLog(EventLog):
    """
    In-process log with the same ordering and offset semantics as Kafka

    Used for local runs and tests. Records survive consumer restarts for the
    lifetime of the process.
    """

    POLL_INTERVAL_SECONDS = 0.005

    def __init__(self, default_partitions: int = 8, topic_partitions: Optional[Dict[str, int]] = None):
        self.default_partitions = default_partitions
        self._topic_partitions = dict(topic_partitions or {})
        self._topics: Dict[str, List[List[LogRecord]]] = {}
        self._offsets: Dict[Tuple[str, str, int], int] = {}
        self._lock = threading.RLock()
        self._closed = False

    def _ensure_topic(self, topic: str) -> List[List[LogRecord]]:
        with self._lock:
            if topic not in self._topics:
                count = self._topic_partitions.get(topic, self.default_partitions)
                self._topics[topic] = [[] for _ in range(count)]
            return self._topics[topic]

    def partitions(self, topic: str) -> int:
        return len(self._ensure_topic(topic))

    async def publish(self, topic: str, key: str, value: bytes) -> LogRecord:
        partitions = self._ensure_topic(topic)
        partition = partition_for(key, len(partitions))
        with self._lock:
            log = partitions[partition]
            record = LogRecord(
                topic=topic,
                partition=partition,
                offset=len(log),
                key=key,
                value=value,
                timestamp=time.time()
            )
            log.append(record)
        return record

    async def fetch(
        self,
        topic: str,
        partition: int,
        offset: int,
        max_records: int,
        timeout: float
    ) -> List[LogRecord]:
        partitions = self._ensure_topic(topic)
        if partition >= len(partitions):
            raise ValueError(f"Topic {topic} has no partition {partition}")
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            with self._lock:
                records = partitions[partition][offset:offset + max_records]
            if records or self._closed or time.monotonic() >= deadline:
                return list(records)
            await asyncio.sleep(self.POLL_INTERVAL_SECONDS)

    async def commit(self, group: str, topic: str, partition: int, offset: int) -> None:
        with self._lock:
            self._offsets[(group, topic, partition)] = offset

    async def committed(self, group: str, topic: str, partition: int) -> int:
        with self._lock:
            return self._offsets.get((group, topic, partition), 0)

    async def end_offset(self, topic: str, partition: int) -> int:
        partitions = self._ensure_topic(topic)
        with self._lock:
            return len(partitions[partition])

    def records(self, topic: str) -> List[LogRecord]:
        """All records of a topic across partitions (test/ops helper)"""
        partitions = self._ensure_topic(topic)
        with self._lock:
            return [r for log in partitions for r in log]

    async def close(self) -> None:
        self._closed = True


def create_event_log(config) -> EventLog:
    """Build the configured event log client"""
    backend = config.event_log.backend
    if backend == "memory":
        return InMemoryEventLog(default_partitions=config.event_log.partitions)
    if backend == "kafka":
        from .kafka_log import KafkaEventLog
        return KafkaEventLog(
            bootstrap_servers=config.event_log.bootstrap_servers,
            default_partitions=config.event_log.partitions
        )
    from ..core.exceptions import ConfigurationError
    raise ConfigurationError(f"Unsupported event log backend: {backend}")
