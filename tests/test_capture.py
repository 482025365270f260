"""
Change capture tests: commit log sources, checkpoints, the capture reader
and full resynchronization
"""
import json
from typing import List, Optional

import pytest
from sqlalchemy import Column, MetaData, String, Table, insert

from datafabric.capture.checkpoints import InMemoryCheckpointStore, SqlCheckpointStore
from datafabric.capture.reader import ChangeCaptureReader
from datafabric.capture.resync import SnapshotResync
from datafabric.capture.source import (
    CommitLogSource,
    InMemorySourceDatabase,
    SqlCommitLogSource,
    SqlSnapshotReader,
    record_change,
)
from datafabric.core.alerts import AlertSink
from datafabric.core.exceptions import CheckpointExpired, ConfigurationError
from datafabric.database.database import get_engine, get_session_factory, init_db, session_scope
from datafabric.events.codec import decode_event
from datafabric.events.event_log import InMemoryEventLog
from datafabric.events.models import ChangeEvent, Operation

TOPIC = "fabric.changes"


def published(log: InMemoryEventLog) -> List[ChangeEvent]:
    events = [decode_event(r.value) for r in log.records(TOPIC)]
    return sorted(events, key=lambda e: e.commit_sequence)


class ListSource(CommitLogSource):
    """Commit log whose sequences the test controls (to simulate gaps)"""

    def __init__(self, sequences: List[int]):
        self.events = [self.make(s) for s in sequences]

    @staticmethod
    def make(sequence: int) -> ChangeEvent:
        return ChangeEvent(
            source_table="customers", source_key=[f"C{sequence}"], operation=Operation.INSERT,
            after={"customer_id": f"C{sequence}"}, commit_sequence=sequence,
        )

    def add(self, sequence: int) -> None:
        self.events = sorted(self.events + [self.make(sequence)], key=lambda e: e.commit_sequence)

    def read(self, after_sequence: int, limit: int) -> List[ChangeEvent]:
        return [e for e in self.events if e.commit_sequence > after_sequence][:limit]

    def head(self) -> int:
        return max((e.commit_sequence for e in self.events), default=0)

    def earliest_retained(self) -> Optional[int]:
        return self.events[0].commit_sequence if self.events else None


# ============================================
# IN-MEMORY SOURCE
# ============================================

class TestInMemorySourceDatabase:
    """Test the reference relational source"""

    def test_sequences_are_assigned_in_commit_order(self, source_db):
        first = source_db.insert("customers", {"customer_id": "C1", "name": "Ada"})
        second = source_db.update("customers", ("C1",), {"name": "Ada L."})
        third = source_db.delete("customers", ("C1",))
        assert [first.commit_sequence, second.commit_sequence, third.commit_sequence] == [1, 2, 3]
        assert second.before == {"customer_id": "C1", "name": "Ada"}
        assert third.after is None
        assert source_db.head() == 3

    def test_transaction_commits_atomically(self, source_db):
        with pytest.raises(ValueError):
            with source_db.transaction() as tx:
                tx.insert("customers", {"customer_id": "C1"})
                tx.insert("customers", {"customer_id": "C1"})
        assert source_db.head() == 0
        assert source_db.read_rows("customers", ["customer_id"]) == {}

    def test_read_rows_keys_by_record_id(self, seeded_db):
        rows = seeded_db.read_rows("order_lines", ["order_id", "product_id"])
        assert set(rows) == {"order_lines:O1|P1", "order_lines:O1|P3"}

    def test_retention(self, source_db):
        assert source_db.earliest_retained() is None
        for i in range(5):
            source_db.insert("customers", {"customer_id": f"C{i}"})
        assert source_db.purge_before(4) == 3
        assert source_db.earliest_retained() == 4
        assert [e.commit_sequence for e in source_db.read(0, 10)] == [4, 5]


# ============================================
# SQL SOURCE AND CHECKPOINTS
# ============================================

class TestSqlSource:
    """Test the change_log outbox source"""

    def setup_method(self):
        self.url = None

    def database(self, tmp_path):
        self.url = f"sqlite:///{tmp_path}/source.db"
        init_db(self.url)
        return get_session_factory(self.url)

    def test_outbox_rows_read_in_sequence(self, tmp_path):
        factory = self.database(tmp_path)
        with session_scope(factory) as session:
            record_change(session, "customers", ["C1"], Operation.INSERT, after={"customer_id": "C1"})
            record_change(
                session, "customers", ["C1"], Operation.UPDATE,
                before={"customer_id": "C1"}, after={"customer_id": "C1", "city": "Oslo"},
            )
        source = SqlCommitLogSource(factory)

        events = source.read(0, 10)
        assert [e.operation for e in events] == [Operation.INSERT, Operation.UPDATE]
        assert events[0].before is None
        assert events[1].after["city"] == "Oslo"
        assert source.head() == 2
        assert [e.commit_sequence for e in source.read(1, 10)] == [2]

    def test_purge_moves_retention(self, tmp_path):
        factory = self.database(tmp_path)
        with session_scope(factory) as session:
            for i in range(3):
                record_change(session, "customers", [f"C{i}"], Operation.INSERT, after={"customer_id": f"C{i}"})
        source = SqlCommitLogSource(factory)
        assert source.purge_before(3) == 2
        assert source.earliest_retained() == 3

    def commit(self, factory, *keys):
        with session_scope(factory) as session:
            for key in keys:
                record_change(session, "customers", [key], Operation.INSERT, after={"customer_id": key})

    def test_sequences_are_never_reused_after_a_full_purge(self, tmp_path):
        """Test the commit sequence keeps rising once every row is purged"""
        factory = self.database(tmp_path)
        self.commit(factory, "C1", "C2", "C3")
        source = SqlCommitLogSource(factory)

        assert source.purge_before(4) == 3
        assert source.head() == 3
        assert source.earliest_retained() == 4
        assert SqlSnapshotReader(factory).head() == 3

        self.commit(factory, "C4")
        assert [e.commit_sequence for e in source.read(0, 10)] == [4]
        assert source.head() == 4

    def test_purge_past_head_keeps_a_caught_up_checkpoint_valid(self, tmp_path):
        """Test retention never moves past the next sequence to commit"""
        factory = self.database(tmp_path)
        self.commit(factory, "C1", "C2", "C3")
        source = SqlCommitLogSource(factory)

        source.purge_before(100)
        assert source.earliest_retained() == 4
        assert source.head() == 3

    @pytest.mark.asyncio
    async def test_full_purge_expires_an_old_checkpoint(self, tmp_path, event_log):
        """Test a reader behind a fully purged log fails instead of silently skipping"""
        factory = self.database(tmp_path)
        self.commit(factory, "C1", "C2", "C3")
        source = SqlCommitLogSource(factory)
        source.purge_before(4)
        self.commit(factory, "C4")

        behind = ChangeCaptureReader(source, InMemoryCheckpointStore(), event_log, TOPIC)
        with pytest.raises(CheckpointExpired):
            await behind.run_once()

        caught_up = InMemoryCheckpointStore()
        caught_up.save("default", 3)
        reader = ChangeCaptureReader(source, caught_up, event_log, TOPIC)
        assert await reader.run_once() == 1
        assert [e.commit_sequence for e in published(event_log)] == [4]

    def test_snapshot_reader_reflects_tables(self, tmp_path):
        factory = self.database(tmp_path)
        metadata = MetaData()
        customers = Table(
            "customers", metadata,
            Column("customer_id", String, primary_key=True),
            Column("name", String),
        )
        metadata.create_all(get_engine(self.url))
        with session_scope(factory) as session:
            session.execute(insert(customers).values(customer_id="C1", name="Ada"))

        reader = SqlSnapshotReader(factory)
        assert reader.read_rows("customers", ["customer_id"]) == {
            "customers:C1": {"customer_id": "C1", "name": "Ada"}
        }
        assert reader.read_row("customers", ["customer_id"], ("C1",))["name"] == "Ada"
        assert reader.read_row("customers", ["customer_id"], ("C9",)) is None


class TestCheckpointStores:
    """Test checkpoint persistence"""

    def test_in_memory_defaults_to_zero(self):
        store = InMemoryCheckpointStore()
        assert store.load("default") == 0
        store.save("default", 7)
        assert store.load("default") == 7

    def test_sql_store_survives_new_instances(self, tmp_path):
        url = f"sqlite:///{tmp_path}/checkpoints.db"
        init_db(url)
        SqlCheckpointStore(get_session_factory(url)).save("default", 12)
        SqlCheckpointStore(get_session_factory(url)).save("default", 15)
        assert SqlCheckpointStore(get_session_factory(url)).load("default") == 15
        assert SqlCheckpointStore(get_session_factory(url)).load("other") == 0


# ============================================
# CAPTURE READER
# ============================================

class TestChangeCaptureReader:
    """Test ordered, restartable capture"""

    def reader(self, source, log, checkpoints=None, **kwargs):
        return ChangeCaptureReader(
            source,
            checkpoints if checkpoints is not None else InMemoryCheckpointStore(),
            log,
            TOPIC,
            poll_interval=0.01,
            **kwargs
        )

    @pytest.mark.asyncio
    async def test_publishes_every_committed_event_in_order(self, seeded_db, event_log):
        reader = self.reader(seeded_db, event_log)
        count = await reader.run_once()

        assert count == seeded_db.head()
        events = published(event_log)
        assert [e.commit_sequence for e in events] == list(range(1, seeded_db.head() + 1))
        assert await reader.checkpoint() == seeded_db.head()

    @pytest.mark.asyncio
    async def test_events_are_keyed_by_record_id(self, seeded_db, event_log):
        await self.reader(seeded_db, event_log).run_once()
        for record in event_log.records(TOPIC):
            assert record.key == json.loads(record.value)["sourceTable"] + ":" + "|".join(
                json.loads(record.value)["sourceKey"]
            )

    @pytest.mark.asyncio
    async def test_restart_resumes_after_checkpoint(self, source_db, event_log):
        checkpoints = InMemoryCheckpointStore()
        source_db.insert("customers", {"customer_id": "C1"})
        source_db.insert("customers", {"customer_id": "C2"})
        assert await self.reader(source_db, event_log, checkpoints).run_once() == 2

        source_db.insert("customers", {"customer_id": "C3"})
        restarted = self.reader(source_db, event_log, checkpoints)
        assert await restarted.run_once() == 1
        assert [e.commit_sequence for e in published(event_log)] == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_lazy_event_iteration(self, seeded_db, event_log):
        reader = self.reader(seeded_db, event_log)
        sequences = [event.commit_sequence async for event in reader.events()]
        assert sequences == list(range(1, seeded_db.head() + 1))
        # iterating alone publishes and acknowledges nothing
        assert event_log.records(TOPIC) == []
        assert await reader.checkpoint() == 0

    @pytest.mark.asyncio
    async def test_holds_back_at_a_sequence_gap(self, event_log):
        source = ListSource([1, 2, 4])
        reader = self.reader(source, event_log, gap_timeout=60.0)
        batches = reader.batches(follow=True)

        first = await batches.__anext__()
        assert [e.commit_sequence for e in first] == [1, 2]

        # the in-flight transaction commits and fills the gap
        source.add(3)
        second = await batches.__anext__()
        assert [e.commit_sequence for e in second] == [3, 4]
        reader.stop()
        await batches.aclose()

    @pytest.mark.asyncio
    async def test_gap_past_timeout_is_treated_as_rolled_back(self, event_log):
        reader = self.reader(ListSource([1, 2, 4]), event_log, gap_timeout=0.0)
        assert await reader.run_once() == 3
        assert await reader.checkpoint() == 4

    @pytest.mark.asyncio
    async def test_expired_checkpoint(self, source_db, event_log):
        for i in range(5):
            source_db.insert("customers", {"customer_id": f"C{i}"})
        source_db.purge_before(4)
        alerts = AlertSink()
        reader = self.reader(source_db, event_log, alerts=alerts)

        with pytest.raises(CheckpointExpired):
            await reader.run_once()
        assert reader.expired
        assert len(alerts) == 1
        assert event_log.records(TOPIC) == []

    @pytest.mark.asyncio
    async def test_checkpoint_just_before_retention_is_still_valid(self, source_db, event_log):
        for i in range(5):
            source_db.insert("customers", {"customer_id": f"C{i}"})
        source_db.purge_before(4)
        checkpoints = InMemoryCheckpointStore()
        checkpoints.save("default", 3)

        assert await self.reader(source_db, event_log, checkpoints).run_once() == 2

    @pytest.mark.asyncio
    async def test_table_filter_still_advances_position(self, seeded_db, event_log):
        reader = self.reader(seeded_db, event_log, tables=["customers"])
        assert await reader.run_once() == 2
        assert {e.source_table for e in published(event_log)} == {"customers"}
        assert await reader.checkpoint() == seeded_db.head()


# ============================================
# RESYNC
# ============================================

class TestSnapshotResync:
    """Test re-snapshotting tables"""

    def resyncer(self, db, log, tables, checkpoints=None):
        return SnapshotResync(db, log, TOPIC, tables, checkpoint_store=checkpoints)

    @pytest.mark.asyncio
    async def test_full_resync_publishes_snapshot_events_at_head(self, seeded_db, event_log, tables):
        checkpoints = InMemoryCheckpointStore()
        counts = await self.resyncer(seeded_db, event_log, tables, checkpoints).resync()

        assert counts == {"customers": 2, "products": 3, "orders": 2, "order_lines": 2}
        events = published(event_log)
        assert len(events) == 9
        assert all(e.snapshot and e.operation == Operation.INSERT for e in events)
        assert {e.commit_sequence for e in events} == {seeded_db.head()}
        assert checkpoints.load("default") == seeded_db.head()

    @pytest.mark.asyncio
    async def test_partial_resync_keeps_checkpoint(self, seeded_db, event_log, tables):
        checkpoints = InMemoryCheckpointStore()
        counts = await self.resyncer(seeded_db, event_log, tables, checkpoints).resync(["products"])
        assert counts == {"products": 3}
        assert checkpoints.load("default") == 0

    @pytest.mark.asyncio
    async def test_unknown_table(self, seeded_db, event_log, tables):
        with pytest.raises(ConfigurationError):
            await self.resyncer(seeded_db, event_log, tables).resync(["invoices"])

    @pytest.mark.asyncio
    async def test_resync_recovers_an_expired_checkpoint(self, source_db, event_log, tables):
        for i in range(5):
            source_db.insert("customers", {"customer_id": f"C{i}"})
        source_db.purge_before(4)
        checkpoints = InMemoryCheckpointStore()
        reader = ChangeCaptureReader(source_db, checkpoints, event_log, TOPIC)
        with pytest.raises(CheckpointExpired):
            await reader.run_once()

        await self.resyncer(source_db, event_log, tables, checkpoints).resync()
        source_db.insert("customers", {"customer_id": "C9"})
        assert await reader.run_once() == 1
