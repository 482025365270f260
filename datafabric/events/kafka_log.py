"""
Kafka-backed Change Event Log (aiokafka)

Topics are expected to exist with ``default_partitions`` partitions. Offsets
are committed manually per consumer group; auto-commit is disabled so a
record is only acknowledged after its batch has been applied.
"""
from typing import Dict, List, Optional, Tuple

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer, TopicPartition
from aiokafka.errors import KafkaError

from ..core.exceptions import TransientStoreError
from ..utils.logger import setup_logger
from .event_log import EventLog, LogRecord, partition_for

logger = setup_logger(__name__)


class KafkaEventLog(EventLog):
    """EventLog over Kafka with manual partition assignment"""

    def __init__(self, bootstrap_servers: str, default_partitions: int = 8,
                 topic_partitions: Optional[Dict[str, int]] = None):
        self.bootstrap_servers = bootstrap_servers
        self.default_partitions = default_partitions
        self._topic_partitions = dict(topic_partitions or {})
        self._producer: Optional[AIOKafkaProducer] = None
        self._readers: Dict[Tuple[str, int], AIOKafkaConsumer] = {}
        self._positions: Dict[Tuple[str, int], int] = {}
        self._group_clients: Dict[str, AIOKafkaConsumer] = {}

    def partitions(self, topic: str) -> int:
        return self._topic_partitions.get(topic, self.default_partitions)

    async def _get_producer(self) -> AIOKafkaProducer:
        if self._producer is None:
            self._producer = AIOKafkaProducer(
                bootstrap_servers=self.bootstrap_servers,
                acks="all",
                enable_idempotence=True
            )
            await self._producer.start()
            logger.info(f"[KafkaEventLog] Producer connected to {self.bootstrap_servers}")
        return self._producer

    async def _get_reader(self, topic: str, partition: int) -> AIOKafkaConsumer:
        key = (topic, partition)
        reader = self._readers.get(key)
        if reader is None:
            reader = AIOKafkaConsumer(
                bootstrap_servers=self.bootstrap_servers,
                group_id=None,
                enable_auto_commit=False,
                auto_offset_reset="earliest"
            )
            await reader.start()
            reader.assign([TopicPartition(topic, partition)])
            self._readers[key] = reader
        return reader

    async def _get_group_client(self, group: str) -> AIOKafkaConsumer:
        client = self._group_clients.get(group)
        if client is None:
            client = AIOKafkaConsumer(
                bootstrap_servers=self.bootstrap_servers,
                group_id=group,
                enable_auto_commit=False,
                auto_offset_reset="earliest"
            )
            await client.start()
            self._group_clients[group] = client
        return client

    async def publish(self, topic: str, key: str, value: bytes) -> LogRecord:
        partition = partition_for(key, self.partitions(topic))
        try:
            producer = await self._get_producer()
            metadata = await producer.send_and_wait(
                topic, value=value, key=key.encode("utf-8"), partition=partition
            )
        except KafkaError as e:
            raise TransientStoreError(f"Kafka publish to {topic} failed: {e}") from e
        return LogRecord(
            topic=topic,
            partition=metadata.partition,
            offset=metadata.offset,
            key=key,
            value=value,
            timestamp=metadata.timestamp / 1000.0 if metadata.timestamp else 0.0
        )

    async def fetch(self, topic: str, partition: int, offset: int,
                    max_records: int, timeout: float) -> List[LogRecord]:
        tp = TopicPartition(topic, partition)
        try:
            reader = await self._get_reader(topic, partition)
            if self._positions.get((topic, partition)) != offset:
                reader.seek(tp, offset)
            batches = await reader.getmany(tp, timeout_ms=int(timeout * 1000), max_records=max_records)
        except KafkaError as e:
            raise TransientStoreError(f"Kafka fetch from {topic}[{partition}] failed: {e}") from e

        records = [
            LogRecord(
                topic=topic,
                partition=partition,
                offset=message.offset,
                key=message.key.decode("utf-8") if message.key else "",
                value=message.value,
                timestamp=message.timestamp / 1000.0
            )
            for message in batches.get(tp, [])
        ]
        self._positions[(topic, partition)] = records[-1].offset + 1 if records else offset
        return records

    async def commit(self, group: str, topic: str, partition: int, offset: int) -> None:
        tp = TopicPartition(topic, partition)
        try:
            client = await self._get_group_client(group)
            if tp not in client.assignment():
                client.assign(list(client.assignment()) + [tp])
            await client.commit({tp: offset})
        except KafkaError as e:
            raise TransientStoreError(f"Kafka commit for {group} failed: {e}") from e

    async def committed(self, group: str, topic: str, partition: int) -> int:
        tp = TopicPartition(topic, partition)
        try:
            client = await self._get_group_client(group)
            if tp not in client.assignment():
                client.assign(list(client.assignment()) + [tp])
            offset = await client.committed(tp)
        except KafkaError as e:
            raise TransientStoreError(f"Kafka committed() for {group} failed: {e}") from e
        return offset or 0

    async def end_offset(self, topic: str, partition: int) -> int:
        tp = TopicPartition(topic, partition)
        try:
            reader = await self._get_reader(topic, partition)
            offsets = await reader.end_offsets([tp])
        except KafkaError as e:
            raise TransientStoreError(f"Kafka end_offsets for {topic} failed: {e}") from e
        return offsets.get(tp, 0)

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
        for client in list(self._readers.values()) + list(self._group_clients.values()):
            await client.stop()
        self._readers.clear()
        self._group_clients.clear()
        logger.info("[KafkaEventLog] Closed")
