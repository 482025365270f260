"""
Data Fabric orchestrator

Wires configuration into the running pipeline:

    source -> ChangeCaptureReader -> raw topic -> TransformStage
           -> enriched topics -> SinkWriter (one per sink) -> stores

plus the reconciliation scheduler and the query federation service over
the same stores. Stages talk only through the event log; each worker pool
is a set of asyncio tasks, one per partition.
"""
import asyncio
from typing import Any, Dict, List, Optional

from ..capture.checkpoints import CheckpointStore, InMemoryCheckpointStore, SqlCheckpointStore
from ..capture.reader import ChangeCaptureReader
from ..capture.resync import SnapshotResync
from ..capture.source import CommitLogSource, SourceSnapshotReader, SqlCommitLogSource, SqlSnapshotReader
from ..core.alerts import AlertSink
from ..core.exceptions import CheckpointExpired, ConfigurationError
from ..events.dead_letter import DeadLetterChannel, SqlDeadLetterStore
from ..events.event_log import EventLog, create_event_log
from ..events.models import SinkKind
from ..federation.models import FederatedQuery, FederatedResponse
from ..federation.retrievers import GraphRetriever, KeywordRetriever, Retriever, VectorRetriever
from ..federation.service import QueryFederationService
from ..reconciliation.models import ReconciliationReport
from ..reconciliation.monitor import ReconciliationMonitor, ReconciliationScheduler
from ..reconciliation.reports import InMemoryReportStore, ReportStore, SqlReportStore
from ..sinks import create_sink_store
from ..sinks.base import SinkStore
from ..sinks.writer import SinkWriter
from ..transform.embedding import EmbeddingProvider, create_embedding_provider
from ..transform.enrichment import TransformStage
from ..utils.config import Config
from ..utils.logger import setup_logger

logger = setup_logger(__name__)

STOP_TIMEOUT_SECONDS = 30.0


class DataFabric:
    """
    The whole sync and federation core

    Usage:
        fabric = DataFabric.from_config(config)
        await fabric.start()
        response = await fabric.query(FederatedQuery(query_text="wireless headphones"))
        await fabric.stop()

    Tests and one-shot runs can drive the stages without background tasks:
        await fabric.sync_once()
    """

    def __init__(
        self,
        config: Config,
        source: CommitLogSource,
        snapshot_reader: SourceSnapshotReader,
        checkpoint_store: Optional[CheckpointStore] = None,
        event_log: Optional[EventLog] = None,
        stores: Optional[Dict[SinkKind, SinkStore]] = None,
        embedder: Optional[EmbeddingProvider] = None,
        report_store: Optional[ReportStore] = None,
        dead_letter_store: Optional[SqlDeadLetterStore] = None,
        alerts: Optional[AlertSink] = None
    ):
        if not config.tables:
            raise ConfigurationError("No tables configured")
        self.config = config
        self.alerts = alerts if alerts is not None else AlertSink()
        self.event_log = event_log if event_log is not None else create_event_log(config)
        self.checkpoint_store = checkpoint_store if checkpoint_store is not None else InMemoryCheckpointStore()
        topics = config.event_log.topics

        self.dead_letters = DeadLetterChannel(self.event_log, topics.dead_letter, store=dead_letter_store)

        enabled = [SinkKind(s) for s in config.sinks.enabled_sinks()]
        if stores is None:
            stores = {kind: create_sink_store(kind, config) for kind in enabled}
        self.stores = stores

        if embedder is None and SinkKind.VECTOR in self.stores:
            embedder = create_embedding_provider(config.sinks.vector)
        self.embedder = embedder

        self.reader = ChangeCaptureReader(
            source,
            self.checkpoint_store,
            self.event_log,
            topics.changes,
            checkpoint_name=config.source.checkpoint_name,
            read_limit=config.source.read_limit,
            poll_interval=config.source.poll_interval_ms / 1000.0,
            tables=[t.name for t in config.tables],
            alerts=self.alerts,
        )
        self.resyncer = SnapshotResync(
            snapshot_reader,
            self.event_log,
            topics.changes,
            config.tables,
            checkpoint_store=self.checkpoint_store,
            checkpoint_name=config.source.checkpoint_name,
        )
        self.transform = TransformStage(config, self.event_log, self.dead_letters, embedder=self.embedder, alerts=self.alerts)
        self.writers: Dict[SinkKind, SinkWriter] = {
            kind: SinkWriter(kind, store, self.event_log, self.dead_letters, config, alerts=self.alerts)
            for kind, store in self.stores.items()
        }

        self.monitor = ReconciliationMonitor(
            snapshot_reader,
            self.stores,
            config.tables,
            self.event_log,
            topics.changes,
            report_store=report_store if report_store is not None else InMemoryReportStore(),
            partitions=config.reconciliation.partitions,
            auto_repair=config.reconciliation.auto_repair,
            alerts=self.alerts,
        )
        self.scheduler = ReconciliationScheduler(self.monitor, config.reconciliation.interval_seconds)
        self.federation = QueryFederationService(self._retrievers(), config.federation)

        self._reader_task: Optional[asyncio.Task] = None
        self.started = False

    @classmethod
    def from_config(cls, config: Config) -> "DataFabric":
        """Build a fabric over the SQL source named by ``config.source.database_url``"""
        from ..database.database import get_session_factory, init_db

        init_db(config.source.database_url)
        session_factory = get_session_factory(config.source.database_url)
        dead_letter_store = None
        if config.dead_letter.persist_to_database:
            url = config.dead_letter.database_url or config.source.database_url
            init_db(url)
            dead_letter_store = SqlDeadLetterStore(get_session_factory(url))
        return cls(
            config,
            source=SqlCommitLogSource(session_factory),
            snapshot_reader=SqlSnapshotReader(session_factory),
            checkpoint_store=SqlCheckpointStore(session_factory),
            report_store=SqlReportStore(session_factory),
            dead_letter_store=dead_letter_store,
        )

    def _retrievers(self) -> List[Retriever]:
        retrievers: List[Retriever] = []
        if SinkKind.KEYWORD in self.stores:
            retrievers.append(KeywordRetriever(self.stores[SinkKind.KEYWORD]))
        if SinkKind.VECTOR in self.stores and self.embedder is not None:
            retrievers.append(VectorRetriever(self.stores[SinkKind.VECTOR], self.embedder))
        if SinkKind.GRAPH in self.stores:
            retrievers.append(GraphRetriever(self.stores[SinkKind.GRAPH], self.config.federation.hop_limit))
        return retrievers

    # ============================================
    # LIFECYCLE
    # ============================================

    async def _run_reader(self) -> None:
        try:
            await self.reader.run()
        except CheckpointExpired as e:
            # alert already raised by the reader; capture stays down until a resync
            logger.error(f"[DataFabric] Capture stopped: {e.message}")

    async def start(self) -> None:
        """Start every worker pool, downstream first"""
        if self.started:
            return
        for kind, writer in self.writers.items():
            writer.start()
            logger.info(f"[DataFabric] Sink writer '{kind.value}' started on {len(writer.partition_ids)} partitions")
        self.transform.start()
        self._reader_task = asyncio.create_task(self._run_reader(), name="capture-reader")
        if self.config.reconciliation.enabled:
            self.scheduler.start()
        self.started = True
        logger.info(f"[DataFabric] Started with sinks: {', '.join(k.value for k in self.stores)}")

    async def stop(self, timeout: float = STOP_TIMEOUT_SECONDS) -> None:
        """Graceful shutdown in pipeline order: capture, transform, sinks, reconciliation"""
        if not self.started:
            return
        self.reader.stop()
        if self._reader_task is not None:
            try:
                await asyncio.wait_for(self._reader_task, timeout=timeout)
            except asyncio.TimeoutError:
                self._reader_task.cancel()
            self._reader_task = None
        await self.transform.stop(timeout)
        await asyncio.gather(*(writer.stop(timeout) for writer in self.writers.values()))
        await self.scheduler.stop(timeout)
        self.started = False
        logger.info("[DataFabric] Stopped")

    async def close(self) -> None:
        await self.stop()
        for store in self.stores.values():
            store.close()
        await self.event_log.close()

    async def sync_once(self) -> Dict[str, int]:
        """Push everything currently committed at the source through every stage"""
        counts = {"captured": await self.reader.run_once(), "transformed": await self.transform.drain()}
        for kind, writer in self.writers.items():
            counts[kind.value] = await writer.drain()
        return counts

    # ============================================
    # OPERATIONS
    # ============================================

    async def query(self, query: FederatedQuery) -> FederatedResponse:
        return await self.federation.execute(query)

    async def resync(self, table_names: Optional[List[str]] = None) -> Dict[str, int]:
        published = await self.resyncer.resync(table_names)
        if table_names is None and self.reader.expired:
            self.reader.expired = False
            if self.started and (self._reader_task is None or self._reader_task.done()):
                self._reader_task = asyncio.create_task(self._run_reader(), name="capture-reader")
                logger.info("[DataFabric] Capture restarted after resync")
        return published

    async def reconcile(
        self,
        sinks: Optional[List[SinkKind]] = None,
        table_names: Optional[List[str]] = None
    ) -> List[ReconciliationReport]:
        return await self.monitor.run_once(sinks=sinks, table_names=table_names)

    # ============================================
    # HEALTH
    # ============================================

    async def _ping(self, store: SinkStore) -> Dict[str, Any]:
        try:
            healthy = await asyncio.wait_for(asyncio.to_thread(store.ping), timeout=5.0)
            return {"healthy": bool(healthy), "records": await asyncio.to_thread(store.count)}
        except Exception as e:
            return {"healthy": False, "error": str(e)}

    async def health(self) -> Dict[str, Any]:
        """
        Component health of the whole fabric

        Returns:
            {"status": "healthy" | "degraded" | "unhealthy", "components": {...}}
        """
        components: Dict[str, Dict[str, Any]] = {}
        components["capture"] = {"healthy": not self.reader.expired, **self.reader.status()}

        workers = {"transform": self.transform}
        workers.update({f"sink:{k.value}": w for k, w in self.writers.items()})
        for name, worker in workers.items():
            lag = await worker.lag()
            components[name] = {
                "healthy": not worker.halted,
                "lag": sum(lag.values()),
                **worker.status(),
            }

        for kind, store in self.stores.items():
            components[f"store:{kind.value}"] = await self._ping(store)

        components["reconciliation"] = {"healthy": True, **self.monitor.status()}
        components["federation"] = {"healthy": True, **self.federation.status()}

        store_health = [components[f"store:{k.value}"]["healthy"] for k in self.stores]
        if store_health and not any(store_health):
            status = "unhealthy"
        elif all(c["healthy"] for c in components.values()):
            status = "healthy"
        else:
            status = "degraded"

        return {
            "status": status,
            "started": self.started,
            "alerts": len(self.alerts),
            "dead_letters": self.dead_letters.counts(),
            "components": components,
        }
