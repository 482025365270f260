"""
Reconciliation tests: hashing, drift detection, repair and the report trail
"""
import asyncio
from unittest.mock import Mock

import pytest

from datafabric.capture.source import InMemorySourceDatabase
from datafabric.core.alerts import AlertSink
from datafabric.core.exceptions import ConfigurationError
from datafabric.database.database import get_session_factory, init_db
from datafabric.events.codec import decode_event
from datafabric.events.event_log import InMemoryEventLog, partition_for
from datafabric.events.models import ChangeEvent, EnrichedEvent, Operation, SinkKind
from datafabric.pipeline.orchestrator import DataFabric
from datafabric.reconciliation import (
    InMemoryReportStore,
    ReconciliationMonitor,
    ReconciliationReport,
    ReconciliationScheduler,
    ReconciliationStatus,
    SqlReportStore,
    content_hash,
    key_range_hash,
    mismatched_keys,
)
from datafabric.sinks.base import SinkOperation
from datafabric.sinks.keyword_store import KeywordStore
from datafabric.utils.config import Config, RetrySettings, TableConfig


ITEM_COUNT = 1000


def items_fabric(partitions: int = 8) -> DataFabric:
    """A keyword-only fabric over a single ``items`` table"""
    config = Config.default([TableConfig(name="items", key_columns=["item_id"], text_columns=["name"], sinks=["keyword"])])
    config.sinks.vector.enabled = False
    config.sinks.graph.enabled = False
    config.event_log.partitions = 4
    config.retry = RetrySettings(max_attempts=2, min_wait=0, max_wait=0, multiplier=1)
    config.batching.max_batch_delay_ms = 0
    config.reconciliation.partitions = partitions
    db = InMemorySourceDatabase({"items": ["item_id"]})
    return DataFabric(config, source=db, snapshot_reader=db, event_log=InMemoryEventLog(4))


def tamper(store: KeywordStore, record_id: str, **changes) -> None:
    """Overwrite a sink record in place, keeping its watermark"""
    record = store.get_record(record_id)
    table, _ = record_id.split(":", 1)
    fields = {**record.fields, **changes}
    change = ChangeEvent(
        source_table=table, source_key=[record_id.split(":", 1)[1]], operation=Operation.INSERT,
        after=fields, commit_sequence=record.commit_sequence, snapshot=True,
    )
    store.apply_batch([SinkOperation(enriched=EnrichedEvent(
        sink=SinkKind.KEYWORD, event=change, fields=fields, text=str(changes),
    ))])


def statuses(reports):
    return {r.status for r in reports}


# ============================================
# HASHING
# ============================================

class TestHashing:
    """Test content and key-range digests"""

    def test_content_hash_ignores_key_order(self):
        assert content_hash({"a": 1, "b": "x"}) == content_hash({"b": "x", "a": 1})

    def test_content_hash_sees_value_changes(self):
        assert content_hash({"price": 10}) != content_hash({"price": 11})

    def test_key_range_hash_ignores_insertion_order(self):
        first = {"t:1": "aa", "t:2": "bb"}
        second = {"t:2": "bb", "t:1": "aa"}
        assert key_range_hash(first) == key_range_hash(second)
        assert key_range_hash(first) != key_range_hash({"t:1": "aa"})

    def test_mismatched_keys(self):
        source = {"t:1": "a", "t:2": "b", "t:3": "c"}
        sink = {"t:1": "a", "t:2": "x", "t:4": "d"}
        assert mismatched_keys(source, sink) == ["t:2", "t:3", "t:4"]
        assert mismatched_keys(source, dict(source)) == []


# ============================================
# DRIFT DETECTION AND REPAIR
# ============================================

class TestReconciliationMonitor:
    """Test audits against a running fabric"""

    @pytest.mark.asyncio
    async def test_synced_fabric_is_in_sync(self, fabric, seeded_db):
        await fabric.sync_once()
        reports = await fabric.reconcile()

        # customers, products, orders on three sinks and order_lines on the graph
        assert len(reports) == 10 * 4
        assert statuses(reports) == {ReconciliationStatus.IN_SYNC}
        assert all(r.source_hash == r.sink_hash for r in reports)

    @pytest.mark.asyncio
    async def test_single_corrupted_key_drifts_one_partition_and_is_repaired(self):
        fabric = items_fabric(partitions=8)
        db = fabric.monitor.snapshot_reader
        for i in range(ITEM_COUNT):
            db.insert("items", {"item_id": f"I{i:04d}", "name": f"item number {i}"})
        await fabric.sync_once()
        keyword = fabric.stores[SinkKind.KEYWORD]
        assert keyword.count() == ITEM_COUNT

        tamper(keyword, "items:I0500", name="tampered")
        reports = await fabric.reconcile()

        assert len(reports) == 8
        drifted = [r for r in reports if r.drifted]
        assert len(drifted) == 1
        assert drifted[0].partition == partition_for("items:I0500", 8)
        assert drifted[0].mismatched_keys == ("items:I0500",)
        assert drifted[0].repairs_published == 1

        await fabric.sync_once()
        assert keyword.get_record("items:I0500").fields["name"] == "item number 500"
        assert statuses(await fabric.reconcile()) == {ReconciliationStatus.IN_SYNC}

    @pytest.mark.asyncio
    async def test_missing_key_is_republished_as_snapshot_upsert(self, fabric, seeded_db, test_config):
        await fabric.sync_once()
        keyword = fabric.stores[SinkKind.KEYWORD]
        # the sink lost the record: a tombstone at its own watermark hides it
        change = ChangeEvent(
            source_table="customers", source_key=["C1"], operation=Operation.DELETE,
            commit_sequence=1, snapshot=True,
        )
        keyword.apply_batch([SinkOperation(enriched=EnrichedEvent(sink=SinkKind.KEYWORD, event=change, fields={}))])
        assert keyword.get_record("customers:C1").deleted

        raw_before = len(fabric.event_log.records(test_config.event_log.topics.changes))
        reports = await fabric.reconcile(sinks=[SinkKind.KEYWORD], table_names=["customers"])
        drifted = [r for r in reports if r.drifted]
        assert [r.mismatched_keys for r in drifted] == [("customers:C1",)]

        published = fabric.event_log.records(test_config.event_log.topics.changes)[raw_before:]
        events = [decode_event(r.value) for r in published]
        assert [(e.record_id, e.operation, e.snapshot) for e in events] == [
            ("customers:C1", Operation.INSERT, True)
        ]
        assert events[0].commit_sequence == seeded_db.head()

        await fabric.sync_once()
        assert keyword.get_record("customers:C1").visible
        assert statuses(await fabric.reconcile()) == {ReconciliationStatus.IN_SYNC}

    @pytest.mark.asyncio
    async def test_extra_sink_key_is_repaired_as_delete(self, fabric, seeded_db):
        await fabric.sync_once()
        keyword = fabric.stores[SinkKind.KEYWORD]
        ghost = ChangeEvent(
            source_table="customers", source_key=["C9"], operation=Operation.INSERT,
            after={"customer_id": "C9", "name": "Nobody"}, commit_sequence=2,
        )
        keyword.apply_batch([SinkOperation(enriched=EnrichedEvent(
            sink=SinkKind.KEYWORD, event=ghost, fields={"customer_id": "C9", "name": "Nobody"}, text="Nobody",
        ))])

        reports = await fabric.reconcile(sinks=[SinkKind.KEYWORD], table_names=["customers"])
        assert [r.mismatched_keys for r in reports if r.drifted] == [("customers:C9",)]

        await fabric.sync_once()
        assert keyword.get_record("customers:C9").deleted
        assert keyword.search("nobody") == []

    @pytest.mark.asyncio
    async def test_repair_is_published_once_for_all_sinks(self, fabric, seeded_db, test_config):
        await fabric.sync_once()
        # a source change the pipeline has not consumed yet drifts every sink
        seeded_db.update("customers", ("C2",), {"city": "New York"})
        raw_before = len(fabric.event_log.records(test_config.event_log.topics.changes))

        reports = await fabric.reconcile(table_names=["customers"])
        assert {r.sink for r in reports if r.drifted} == {"vector", "graph", "keyword"}
        published = fabric.event_log.records(test_config.event_log.topics.changes)[raw_before:]
        assert len(published) == 1

    @pytest.mark.asyncio
    async def test_disabled_auto_repair_only_reports(self, fabric, seeded_db, test_config):
        await fabric.sync_once()
        fabric.monitor.auto_repair = False
        seeded_db.update("customers", ("C2",), {"city": "New York"})
        raw_before = len(fabric.event_log.records(test_config.event_log.topics.changes))

        reports = await fabric.reconcile(table_names=["customers"])
        assert any(r.drifted for r in reports)
        assert all(r.repairs_published == 0 for r in reports)
        assert len(fabric.event_log.records(test_config.event_log.topics.changes)) == raw_before

    @pytest.mark.asyncio
    async def test_unreadable_sink_reports_unknown_and_alerts(self, tables, seeded_db):
        broken = Mock(spec=KeywordStore)
        broken.iter_records.side_effect = ConnectionError("index offline")
        alerts = AlertSink()
        monitor = ReconciliationMonitor(
            seeded_db, {SinkKind.KEYWORD: broken}, tables, InMemoryEventLog(4), "changes",
            partitions=4, alerts=alerts,
        )

        reports = await monitor.run_once(table_names=["customers"])
        assert len(reports) == 4
        assert statuses(reports) == {ReconciliationStatus.UNKNOWN}
        assert "index offline" in reports[0].error
        assert len(alerts) == 1
        assert monitor.status()["unknown"] == 4

    @pytest.mark.asyncio
    async def test_unknown_table(self, fabric):
        with pytest.raises(ConfigurationError):
            await fabric.reconcile(table_names=["invoices"])

    @pytest.mark.asyncio
    async def test_repair_keys_publishes_upserts_and_deletes(self, fabric, seeded_db, test_config):
        published = await fabric.monitor.repair_keys("customers", ["customers:C1", "customers:C9", "customers:C1"])
        assert published == 2

        events = {
            e.record_id: e for e in
            (decode_event(r.value) for r in fabric.event_log.records(test_config.event_log.topics.changes))
        }
        assert events["customers:C1"].operation == Operation.INSERT
        assert events["customers:C9"].operation == Operation.DELETE
        assert all(e.snapshot and e.commit_sequence == seeded_db.head() for e in events.values())

    @pytest.mark.asyncio
    async def test_repair_keys_unknown_table(self, fabric):
        with pytest.raises(ConfigurationError):
            await fabric.monitor.repair_keys("invoices", ["invoices:1"])


# ============================================
# REPORT TRAIL AND SCHEDULING
# ============================================

class TestReportStores:
    """Test the append-only report trail"""

    def reports(self):
        return [
            ReconciliationReport(sink="vector", source_table="t", partition=0, status=ReconciliationStatus.IN_SYNC),
            ReconciliationReport(
                sink="graph", source_table="t", partition=1, status=ReconciliationStatus.DRIFTED,
                mismatched_keys=("t:1",),
            ),
            ReconciliationReport(sink="vector", source_table="t", partition=2, status=ReconciliationStatus.UNKNOWN),
        ]

    def test_in_memory_filters_newest_first(self):
        store = InMemoryReportStore()
        for report in self.reports():
            store.append(report)
        assert [r.partition for r in store.list()] == [2, 1, 0]
        assert [r.partition for r in store.list(sink="vector")] == [2, 0]
        assert [r.partition for r in store.list(status=ReconciliationStatus.DRIFTED)] == [1]
        assert len(store.list(limit=1)) == 1

    def test_reports_are_immutable(self):
        report = self.reports()[0]
        with pytest.raises(Exception):
            report.status = ReconciliationStatus.DRIFTED

    def test_sql_store(self, tmp_path):
        url = f"sqlite:///{tmp_path}/reports.db"
        init_db(url)
        store = SqlReportStore(get_session_factory(url))
        for report in self.reports():
            store.append(report)

        drifted = store.list(status=ReconciliationStatus.DRIFTED)
        assert len(drifted) == 1
        assert drifted[0].mismatched_keys == ("t:1",)
        assert len(store.list(sink="vector")) == 2


class TestReconciliationScheduler:
    """Test the periodic loop"""

    @pytest.mark.asyncio
    async def test_runs_until_stopped(self, fabric, seeded_db):
        await fabric.sync_once()
        scheduler = ReconciliationScheduler(fabric.monitor, interval_seconds=0.01)
        scheduler.start()
        for _ in range(200):
            if fabric.monitor.runs >= 2:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop(timeout=2)

        assert fabric.monitor.runs >= 2
        assert not scheduler.running
        assert fabric.monitor.report_store.list(limit=1)
