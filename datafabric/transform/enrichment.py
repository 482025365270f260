"""
Transform / Enrichment Stage

Consumes raw change events and produces one EnrichedEvent per configured
sink, published to that sink's topic keyed by record id:

- vector: embedding of the text columns + projected fields
- graph: node/edge mutations from the relational mapping
- keyword: text + projected fields

Enrichment is a function of (row image, sink configuration). Embeddings are
cached by (record_id, commit_sequence, sink), so redelivery returns the
artifact computed the first time. A record that can never be enriched goes
to the dead-letter channel and the partition moves on.
"""
import asyncio
from typing import Dict, List, Optional

from ..core.alerts import AlertSink
from ..core.exceptions import (
    PermanentRecordError,
    TransformError,
    TransientError,
    translate_exception,
)
from ..events.codec import decode_event, encode_enriched, raw_payload_dict
from ..events.dead_letter import DeadLetterChannel
from ..events.event_log import EventLog, LogRecord
from ..events.models import ChangeEvent, EnrichedEvent, SinkKind
from ..utils.config import Config, TableConfig
from ..utils.logger import setup_logger
from ..utils.resilience.retry import RetryConfig, async_retrying
from ..workers.partition_worker import PartitionWorker
from .cache import ArtifactCache
from .embedding import EmbeddingProvider, create_embedding_provider
from .graph_mapping import map_event, node_label
from .projection import project_fields, project_text

logger = setup_logger(__name__)

TRANSFORM_STAGE = "transform"


class TransformStage(PartitionWorker):
    """
    Raw change topic -> per-sink enriched topics

    Usage:
        stage = TransformStage(config, event_log, dead_letters)
        enriched = await stage.enrich(event)
        await stage.drain()    # or stage.start() for the long-running pool
    """

    component = "Transform"

    def __init__(
        self,
        config: Config,
        event_log: EventLog,
        dead_letters: DeadLetterChannel,
        embedder: Optional[EmbeddingProvider] = None,
        cache: Optional[ArtifactCache] = None,
        alerts: Optional[AlertSink] = None,
        embed_timeout: float = 10.0
    ):
        topics = config.event_log.topics
        super().__init__(
            event_log=event_log,
            topic=topics.changes,
            group=f"{config.event_log.consumer_group}.transform",
            fetch_size=config.batching.max_batch_size,
            fetch_timeout=config.event_log.fetch_timeout_ms / 1000.0,
            alerts=alerts,
        )
        self.config = config
        self.dead_letters = dead_letters
        self.embedder = embedder or (
            create_embedding_provider(config.sinks.vector) if config.sinks.vector.enabled else None
        )
        self.cache = cache if cache is not None else ArtifactCache(
            max_size=config.sinks.artifact_cache_size,
            ttl_seconds=config.sinks.artifact_cache_ttl_seconds,
        )
        self.embed_timeout = embed_timeout
        self.labels: Dict[str, str] = {t.name: node_label(t) for t in config.tables}
        self.key_columns: Dict[str, List[str]] = {t.name: t.key_columns for t in config.tables}
        self.enriched_count = 0
        self.dead_lettered = 0

    def sinks_for(self, table: TableConfig) -> List[SinkKind]:
        enabled = set(self.config.sinks.enabled_sinks())
        return [SinkKind(s) for s in table.sinks if s in enabled]

    def _table(self, event: ChangeEvent) -> TableConfig:
        table = self.config.table(event.source_table)
        if table is None:
            raise TransformError(f"No mapping configured for table {event.source_table}")
        return table

    async def _embed(self, text: str) -> List[float]:
        if self.embedder is None:
            raise TransformError("Vector sink enabled without an embedding provider")
        async for attempt in async_retrying(
            max_attempts=RetryConfig.TRANSFORM_MAX_ATTEMPTS,
            min_wait=RetryConfig.TRANSFORM_MIN_WAIT,
            max_wait=RetryConfig.TRANSFORM_MAX_WAIT,
            multiplier=RetryConfig.TRANSFORM_MULTIPLIER,
        ):
            with attempt:
                vector = await asyncio.wait_for(
                    asyncio.to_thread(self.embedder.encode, text),
                    timeout=self.embed_timeout
                )
        dimension = self.config.sinks.vector.dimension
        if len(vector) != dimension:
            raise TransformError(f"Embedding has dimension {len(vector)}, expected {dimension}")
        return vector

    async def _build(self, sink: SinkKind, event: ChangeEvent, table: TableConfig) -> EnrichedEvent:
        if sink == SinkKind.GRAPH:
            return EnrichedEvent(
                sink=sink,
                event=event,
                fields={} if event.is_delete else project_fields(event.after, table),
                mutations=map_event(event, table, self.labels),
            )
        if event.is_delete:
            return EnrichedEvent(sink=sink, event=event)

        fields = project_fields(event.after, table)
        text = project_text(event.after, table)
        if sink == SinkKind.VECTOR:
            return EnrichedEvent(sink=sink, event=event, fields=fields, text=text, vector=await self._embed(text))
        return EnrichedEvent(sink=sink, event=event, fields=fields, text=text)

    async def enrich(self, event: ChangeEvent) -> List[EnrichedEvent]:
        """
        Enrich one change event for every sink its table feeds

        Raises:
            PermanentRecordError: the event can never be enriched
            TransientError: a collaborator stayed unavailable through all retries
        """
        table = self._table(event)
        enriched = []
        for sink in self.sinks_for(table):
            key = ArtifactCache.key(event.record_id, event.commit_sequence, sink.value)
            artifact = self.cache.get(key)
            if artifact is None:
                try:
                    artifact = await self._build(sink, event, table)
                except (PermanentRecordError, TransientError):
                    raise
                except Exception as e:
                    raise translate_exception(e, f"enrich {event.record_id} for {sink.value}") from e
                self.cache.set(key, artifact)
            enriched.append(artifact)
        return enriched

    async def process(self, record: LogRecord) -> int:
        """Decode, enrich and publish one raw record; returns the number published"""
        try:
            event = decode_event(record.value, self.key_columns)
        except PermanentRecordError as e:
            await self.dead_letters.send_raw(TRANSFORM_STAGE, raw_payload_dict(record.value), e, record_id=record.key)
            self.dead_lettered += 1
            return 0

        try:
            enriched = await self.enrich(event)
        except (PermanentRecordError, TransientError) as e:
            attempts = RetryConfig.TRANSFORM_MAX_ATTEMPTS if isinstance(e, TransientError) else 1
            await self.dead_letters.send_event(TRANSFORM_STAGE, event, e, attempts=attempts)
            self.dead_lettered += 1
            return 0

        topics = self.config.event_log.topics
        for item in enriched:
            await self.event_log.publish(topics.enriched(item.sink.value), item.record_id, encode_enriched(item))
        self.enriched_count += len(enriched)
        return len(enriched)

    async def handle_batch(self, partition: int, records: List[LogRecord]) -> None:
        published = 0
        for record in records:
            published += await self.process(record)
        logger.debug(f"[Transform] Partition {partition}: {len(records)} events -> {published} enriched")

    def status(self) -> Dict[str, object]:
        status = super().status()
        status.update({
            "enriched": self.enriched_count,
            "dead_lettered": self.dead_lettered,
            "cache": self.cache.get_stats(),
        })
        return status
