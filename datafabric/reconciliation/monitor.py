"""
Reconciliation Monitor

Periodically compares each sink against the source of truth: for every
(sink, source table, partition) it hashes the projected fields of the
source rows and of the sink's visible records and reports the keys whose
hashes differ. Drifted keys are repaired by re-publishing their current
source state as snapshot events, which flow through the normal pipeline.

The monitor only reads the source and the sinks; it never writes to a
store directly.
"""
import asyncio
from typing import Any, Dict, Iterable, List, Optional, Sequence

from ..core.alerts import AlertSink
from ..core.exceptions import ConfigurationError, translate_exception
from ..capture.resync import snapshot_delete, snapshot_upsert
from ..capture.source import SourceSnapshotReader
from ..events.codec import encode_event
from ..events.event_log import EventLog, partition_for
from ..events.models import SinkKind, parse_record_id
from ..sinks.base import SinkStore
from ..transform.projection import project_fields
from ..utils.config import TableConfig
from ..utils.logger import setup_logger
from .hashing import content_hash, key_range_hash
from .models import ReconciliationReport, ReconciliationStatus
from .reports import InMemoryReportStore, ReportStore

logger = setup_logger(__name__)


def _partitioned(hashes: Dict[str, str], partitions: int) -> List[Dict[str, str]]:
    buckets: List[Dict[str, str]] = [{} for _ in range(partitions)]
    for record_id, digest in hashes.items():
        buckets[partition_for(record_id, partitions)][record_id] = digest
    return buckets


def mismatched_keys(source: Dict[str, str], sink: Dict[str, str]) -> List[str]:
    """Keys missing on either side or whose content hashes differ"""
    return sorted(k for k in set(source) | set(sink) if source.get(k) != sink.get(k))


class ReconciliationMonitor:
    """
    Audits every sink against the source

    Usage:
        monitor = ReconciliationMonitor(reader, stores, tables, event_log, topic)
        reports = await monitor.run_once()
    """

    def __init__(
        self,
        snapshot_reader: SourceSnapshotReader,
        stores: Dict[SinkKind, SinkStore],
        tables: Sequence[TableConfig],
        event_log: EventLog,
        topic: str,
        report_store: Optional[ReportStore] = None,
        partitions: int = 8,
        auto_repair: bool = True,
        alerts: Optional[AlertSink] = None
    ):
        self.snapshot_reader = snapshot_reader
        self.stores = stores
        self.tables = {t.name: t for t in tables}
        self.event_log = event_log
        self.topic = topic
        self.report_store = report_store if report_store is not None else InMemoryReportStore()
        self.partitions = partitions
        self.auto_repair = auto_repair
        self.alerts = alerts if alerts is not None else AlertSink()
        self.runs = 0
        self.last_reports: List[ReconciliationReport] = []

    def _unknown(self, sink: SinkKind, table: TableConfig, error: Exception) -> List[ReconciliationReport]:
        message = translate_exception(error, f"reconcile {sink.value}/{table.name}").message
        self.alerts.raise_alert("Reconciliation", message, sink=sink.value, table=table.name)
        return [
            ReconciliationReport(
                sink=sink.value,
                source_table=table.name,
                partition=p,
                status=ReconciliationStatus.UNKNOWN,
                error=message,
            )
            for p in range(self.partitions)
        ]

    async def _source_rows(self, table: TableConfig) -> Dict[str, Dict[str, Any]]:
        return await asyncio.to_thread(self.snapshot_reader.read_rows, table.name, table.key_columns)

    async def _sink_hashes(self, store: SinkStore, table: TableConfig) -> Dict[str, str]:
        records = await asyncio.to_thread(lambda: list(store.iter_records(table.name)))
        return {r.record_id: content_hash(r.fields) for r in records}

    async def reconcile_table(
        self,
        table: TableConfig,
        sinks: Iterable[SinkKind],
        head: int
    ) -> List[ReconciliationReport]:
        sinks = [s for s in sinks if s.value in table.sinks and s in self.stores]
        if not sinks:
            return []
        try:
            rows = await self._source_rows(table)
        except Exception as e:
            logger.error(f"[Reconciliation] Cannot read source table {table.name}: {e}")
            return [r for sink in sinks for r in self._unknown(sink, table, e)]

        source_hashes = {rid: content_hash(project_fields(row, table)) for rid, row in rows.items()}
        source_buckets = _partitioned(source_hashes, self.partitions)

        reports: List[ReconciliationReport] = []
        drifted_by_sink: Dict[SinkKind, List[List[str]]] = {}
        sink_buckets_by_sink: Dict[SinkKind, List[Dict[str, str]]] = {}
        for sink in sinks:
            try:
                sink_hashes = await self._sink_hashes(self.stores[sink], table)
            except Exception as e:
                logger.error(f"[Reconciliation] Cannot read {sink.value} sink for {table.name}: {e}")
                reports.extend(self._unknown(sink, table, e))
                continue
            sink_buckets_by_sink[sink] = _partitioned(sink_hashes, self.partitions)
            drifted_by_sink[sink] = [
                mismatched_keys(source_buckets[p], sink_buckets_by_sink[sink][p])
                for p in range(self.partitions)
            ]

        # one snapshot event per drifted key repairs every sink at once
        to_repair = sorted({k for per_sink in drifted_by_sink.values() for keys in per_sink for k in keys})
        if to_repair and self.auto_repair:
            await self._republish(table, to_repair, rows, head)

        for sink, per_partition in drifted_by_sink.items():
            for partition, mismatched in enumerate(per_partition):
                source_part = source_buckets[partition]
                sink_part = sink_buckets_by_sink[sink][partition]
                reports.append(ReconciliationReport(
                    sink=sink.value,
                    source_table=table.name,
                    partition=partition,
                    status=ReconciliationStatus.DRIFTED if mismatched else ReconciliationStatus.IN_SYNC,
                    source_hash=key_range_hash(source_part),
                    sink_hash=key_range_hash(sink_part),
                    mismatched_keys=tuple(mismatched),
                    source_count=len(source_part),
                    sink_count=len(sink_part),
                    repairs_published=len(mismatched) if self.auto_repair else 0,
                ))
            drifted = sum(1 for keys in per_partition if keys)
            if drifted:
                logger.warning(
                    f"[Reconciliation] {sink.value}/{table.name}: {drifted} of {self.partitions} partitions drifted"
                )
        return reports

    async def run_once(
        self,
        sinks: Optional[List[SinkKind]] = None,
        table_names: Optional[List[str]] = None
    ) -> List[ReconciliationReport]:
        """
        Audit the given sinks and tables (all by default)

        Returns one report per (sink, table, partition); every report is
        appended to the report store.
        """
        names = table_names or list(self.tables)
        unknown = [n for n in names if n not in self.tables]
        if unknown:
            raise ConfigurationError(f"Unknown tables for reconciliation: {', '.join(unknown)}")
        targets = sinks or list(self.stores)

        # repairs are stamped with a head read before any row, like a resync
        head = await asyncio.to_thread(self.snapshot_reader.head)
        reports: List[ReconciliationReport] = []
        for name in names:
            reports.extend(await self.reconcile_table(self.tables[name], targets, head))

        for report in reports:
            await asyncio.to_thread(self.report_store.append, report)
        self.runs += 1
        self.last_reports = reports
        summary = {s.value: 0 for s in ReconciliationStatus}
        for report in reports:
            summary[report.status.value] += 1
        logger.info(f"[Reconciliation] Run {self.runs} complete", **summary)
        return reports

    async def _republish(
        self,
        table: TableConfig,
        record_ids: List[str],
        rows: Dict[str, Dict[str, Any]],
        head: int
    ) -> int:
        for record_id in record_ids:
            row = rows.get(record_id)
            if row is not None:
                event = snapshot_upsert(table, row, head)
            else:
                _, key = parse_record_id(record_id)
                event = snapshot_delete(table, key, head)
            await self.event_log.publish(self.topic, event.record_id, encode_event(event))
        logger.info(f"[Reconciliation] Re-published {len(record_ids)} keys of {table.name} at sequence {head}")
        return len(record_ids)

    async def repair_keys(self, table_name: str, record_ids: List[str]) -> int:
        """
        Re-publish the current source state of specific keys

        Keys that no longer exist at the source are re-published as
        deletes. Returns the number of events published.
        """
        table = self.tables.get(table_name)
        if table is None:
            raise ConfigurationError(f"Unknown table: {table_name}")
        head = await asyncio.to_thread(self.snapshot_reader.head)
        rows = await self._source_rows(table)
        return await self._republish(table, sorted(set(record_ids)), rows, head)

    def status(self) -> Dict[str, Any]:
        return {
            "runs": self.runs,
            "partitions": self.partitions,
            "auto_repair": self.auto_repair,
            "drifted": [
                {"sink": r.sink, "table": r.source_table, "partition": r.partition, "keys": len(r.mismatched_keys)}
                for r in self.last_reports if r.drifted
            ],
            "unknown": sum(1 for r in self.last_reports if r.status == ReconciliationStatus.UNKNOWN),
        }


class ReconciliationScheduler:
    """Runs the monitor on a fixed interval until stopped"""

    def __init__(self, monitor: ReconciliationMonitor, interval_seconds: float):
        self.monitor = monitor
        self.interval_seconds = interval_seconds
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run(self) -> None:
        logger.info(f"[Reconciliation] Scheduler started (every {self.interval_seconds}s)")
        while not self._stop.is_set():
            try:
                await self.monitor.run_once()
            except Exception as e:
                logger.error(f"[Reconciliation] Run failed: {e}", exc_info=True)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("[Reconciliation] Scheduler stopped")

    def start(self) -> asyncio.Task:
        self._stop.clear()
        self._task = asyncio.create_task(self.run(), name="reconciliation")
        return self._task

    async def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except asyncio.TimeoutError:
                self._task.cancel()
            self._task = None
