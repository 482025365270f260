"""
Sink store tests: the idempotent merge rule, batch planning and every
store backend
"""
from unittest.mock import patch

import pytest
from rank_bm25 import BM25Okapi

from datafabric.core.exceptions import PermanentRecordError
from datafabric.database.database import get_session_factory, init_db
from datafabric.events.event_log import InMemoryEventLog
from datafabric.events.models import ChangeEvent, EnrichedEvent, Operation, SinkKind
from datafabric.sinks import create_sink_store
from datafabric.sinks.backpressure import AdaptiveFetchController
from datafabric.sinks.base import NO_WATERMARK, SinkOperation, should_apply
from datafabric.sinks.batching import BatchAccumulator, plan_batch
from datafabric.sinks.graph_store import NetworkXGraphStore
from datafabric.sinks.keyword_store import KeywordStore
from datafabric.sinks.sql_vector_store import SqlVectorStore
from datafabric.sinks.vector_store import InMemoryVectorStore, rank_by_cosine
from datafabric.transform.graph_mapping import map_event
from datafabric.utils.config import BackpressureConfig
from datafabric.utils.text import row_text, tokenize


def event(table, key, sequence, after=None, before=None, snapshot=False):
    operation = Operation.DELETE if after is None else (Operation.UPDATE if before else Operation.INSERT)
    return ChangeEvent(
        source_table=table, source_key=key, operation=operation,
        before=before, after=after, commit_sequence=sequence, snapshot=snapshot,
    )


def keyword_op(key, sequence, text=None, fields=None, snapshot=False):
    after = None if text is None else {"id": key, "text": text}
    return SinkOperation(enriched=EnrichedEvent(
        sink=SinkKind.KEYWORD,
        event=event("docs", [key], sequence, after=after, snapshot=snapshot),
        fields=fields or ({} if text is None else {"text": text}),
        text=text,
    ))


def vector_op(key, sequence, vector=None, fields=None):
    after = None if vector is None else {"id": key}
    return SinkOperation(enriched=EnrichedEvent(
        sink=SinkKind.VECTOR,
        event=event("docs", [key], sequence, after=after),
        fields=fields or {},
        vector=vector,
    ))


def graph_op(table_config, sequence, after=None, before=None, key=None):
    key = key or [after[c] if after else before[c] for c in table_config.key_columns]
    change = event(table_config.name, key, sequence, after=after, before=before)
    fields = dict(after) if after else {}
    return SinkOperation(enriched=EnrichedEvent(
        sink=SinkKind.GRAPH,
        event=change,
        fields=fields,
        mutations=map_event(change, table_config),
    ))


# ============================================
# MERGE RULE AND BATCH PLANNING
# ============================================

class TestShouldApply:
    """Test the per-key watermark rule"""

    def test_unknown_key_applies(self):
        assert should_apply(0, None)
        assert should_apply(1, NO_WATERMARK)

    def test_log_events_must_be_strictly_newer(self):
        assert should_apply(6, 5)
        assert not should_apply(5, 5)
        assert not should_apply(4, 5)

    def test_snapshot_events_apply_on_equality(self):
        assert should_apply(5, 5, snapshot=True)
        assert not should_apply(4, 5, snapshot=True)


class TestPlanBatch:
    """Test collapsing a batch to one winning event per key"""

    def test_last_event_per_key_wins(self):
        ops = [keyword_op("a", 1, "v1"), keyword_op("b", 2, "b"), keyword_op("a", 3, "v3")]
        planned, skipped = plan_batch([o.enriched for o in ops], {})
        assert [(p.record_id, p.commit_sequence) for p in planned] == [("docs:a", 3), ("docs:b", 2)]
        assert skipped == 0

    def test_stale_and_duplicate_events_are_skipped(self):
        ops = [keyword_op("a", 4, "old"), keyword_op("a", 6, "new"), keyword_op("a", 6, "new")]
        planned, skipped = plan_batch([o.enriched for o in ops], {"docs:a": 5})
        assert [p.commit_sequence for p in planned] == [6]
        assert skipped == 2

    def test_everything_stale(self):
        planned, skipped = plan_batch([keyword_op("a", 1, "x").enriched], {"docs:a": 9})
        assert planned == []
        assert skipped == 1


class TestBatchAccumulator:
    """Test batch accumulation from one partition"""

    @pytest.mark.asyncio
    async def test_zero_timeout_takes_what_is_there(self):
        log = InMemoryEventLog(default_partitions=1)
        for i in range(5):
            await log.publish("t", f"k{i}", b"x")
        accumulator = BatchAccumulator(log, "t", max_batch_size=3, max_batch_delay=1.0)
        batch = await accumulator.collect(0, 0, fetch_size=10, timeout=0)
        assert [r.offset for r in batch] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_fetch_size_caps_the_batch(self):
        log = InMemoryEventLog(default_partitions=1)
        for i in range(5):
            await log.publish("t", f"k{i}", b"x")
        accumulator = BatchAccumulator(log, "t", max_batch_size=100, max_batch_delay=0.0)
        assert len(await accumulator.collect(0, 1, fetch_size=2, timeout=0)) == 2


class TestAdaptiveFetchController:
    """Test backpressure on store latency"""

    def test_slow_writes_shrink_fetch_and_add_delay(self):
        controller = AdaptiveFetchController(100, BackpressureConfig(latency_threshold_ms=50, min_fetch_size=10))
        controller.observe(200, 100)
        assert controller.fetch_size == 50
        assert controller.poll_delay > 0
        assert controller.throttled

    def test_fetch_size_has_a_floor(self):
        controller = AdaptiveFetchController(100, BackpressureConfig(latency_threshold_ms=50, min_fetch_size=10))
        for _ in range(10):
            controller.observe(500, 10)
        assert controller.fetch_size == 10

    def test_recovers_when_latency_drops(self):
        config = BackpressureConfig(latency_threshold_ms=50, min_fetch_size=10, ewma_alpha=1.0)
        controller = AdaptiveFetchController(100, config)
        controller.observe(500, 10)
        for _ in range(20):
            controller.observe(1, 10)
        assert controller.fetch_size == 100
        assert not controller.throttled


# ============================================
# KEYWORD STORE
# ============================================

class TestKeywordStore:
    """Test the BM25 keyword sink"""

    def setup_method(self):
        self.store = KeywordStore()
        self.store.apply_batch([
            keyword_op("1", 1, "wireless noise cancelling headphones", {"category": "audio", "price": 199}),
            keyword_op("2", 2, "portable wireless speaker", {"category": "audio", "price": 89}),
            keyword_op("3", 3, "mechanical keyboard", {"category": "peripherals", "price": 120}),
        ])

    def test_search_returns_only_matching_documents(self):
        hits = self.store.search("wireless headphones", k=10)
        assert [record_id for record_id, _ in hits] == ["docs:1", "docs:2"]

    def test_predicate_applies_before_truncation(self):
        hits = self.store.search("wireless", k=1, predicate=lambda f: f["price"] < 100)
        assert [record_id for record_id, _ in hits] == ["docs:2"]

    def test_stopword_query_returns_nothing(self):
        assert self.store.search("the and of") == []

    def test_stale_update_is_ignored(self):
        assert self.store.apply_batch([keyword_op("1", 1, "replayed")]) == 0
        assert self.store.get_record("docs:1").text == "wireless noise cancelling headphones"

    def test_delete_leaves_a_tombstone(self):
        self.store.apply_batch([keyword_op("1", 10)])
        record = self.store.get_record("docs:1")
        assert record.deleted and record.commit_sequence == 10
        assert self.store.search("headphones") == []
        assert self.store.count() == 2

    def test_tombstone_blocks_late_insert(self):
        self.store.apply_batch([keyword_op("1", 10)])
        assert self.store.apply_batch([keyword_op("1", 4, "resurrected")]) == 0
        assert self.store.load_watermarks(["docs:1"]) == {"docs:1": 10}

    def test_snapshot_reapplies_at_equal_sequence(self):
        assert self.store.apply_batch([keyword_op("3", 3, "mechanical keyboard rgb", snapshot=True)]) == 1
        assert self.store.get_record("docs:3").text == "mechanical keyboard rgb"

    def test_iter_records_skips_tombstones(self):
        self.store.apply_batch([keyword_op("2", 20)])
        assert sorted(r.record_id for r in self.store.iter_records("docs")) == ["docs:1", "docs:3"]

    def test_documents_are_tokenized_once(self):
        with patch("datafabric.sinks.keyword_store.tokenize", wraps=tokenize) as tokenizer, \
                patch("datafabric.sinks.keyword_store.BM25Okapi", wraps=BM25Okapi) as bm25:
            self.store.search("wireless")
            self.store.search("keyboard")
            # only the two queries were tokenized; the index was built once
            assert tokenizer.call_count == 2
            assert bm25.call_count == 1

            self.store.apply_batch([keyword_op("4", 4, "wireless mouse")])
            assert [r for r, _ in self.store.search("mouse")] == ["docs:4"]
            assert tokenizer.call_count == 4
            assert bm25.call_count == 2


# ============================================
# VECTOR STORES
# ============================================

class TestRankByCosine:
    """Test cosine ranking"""

    def test_orders_by_similarity_then_id(self):
        candidates = [("b", [1.0, 0.0]), ("a", [1.0, 0.0]), ("c", [0.0, 1.0])]
        assert [rid for rid, _ in rank_by_cosine([1.0, 0.0], candidates, 3)] == ["a", "b", "c"]

    def test_zero_vectors_do_not_divide_by_zero(self):
        assert rank_by_cosine([0.0, 0.0], [("a", [0.0, 0.0])], 1) == [("a", 0.0)]

    def test_empty(self):
        assert rank_by_cosine([1.0], [], 5) == []


class TestInMemoryVectorStore:
    """Test the in-memory vector sink"""

    def setup_method(self):
        self.store = InMemoryVectorStore(dimension=2)
        self.store.apply_batch([
            vector_op("1", 1, [1.0, 0.0], {"category": "audio"}),
            vector_op("2", 2, [0.7, 0.7], {"category": "audio"}),
            vector_op("3", 3, [0.0, 1.0], {"category": "peripherals"}),
        ])

    def test_nearest_first(self):
        assert [rid for rid, _ in self.store.search([1.0, 0.1], k=2)] == ["docs:1", "docs:2"]

    def test_predicate(self):
        hits = self.store.search([1.0, 0.0], k=5, predicate=lambda f: f["category"] == "peripherals")
        assert [rid for rid, _ in hits] == ["docs:3"]

    def test_wrong_dimension_rejects_whole_batch(self):
        with pytest.raises(PermanentRecordError):
            self.store.apply_batch([vector_op("4", 4, [1.0, 0.0]), vector_op("5", 5, [1.0])])
        assert self.store.get_record("docs:4") is None

    def test_delete_hides_record(self):
        self.store.apply_batch([vector_op("1", 7)])
        assert "docs:1" not in [rid for rid, _ in self.store.search([1.0, 0.0], k=5)]
        assert self.store.get_record("docs:1").deleted


class TestSqlVectorStore:
    """Test the SQLAlchemy-backed vector sink"""

    def store(self, tmp_path) -> SqlVectorStore:
        url = f"sqlite:///{tmp_path}/vectors.db"
        init_db(url)
        return SqlVectorStore(get_session_factory(url), dimension=2)

    def test_apply_and_search(self, tmp_path):
        store = self.store(tmp_path)
        applied = store.apply_batch([
            vector_op("1", 1, [1.0, 0.0], {"category": "audio"}),
            vector_op("2", 2, [0.0, 1.0], {"category": "peripherals"}),
        ])
        assert applied == 2
        assert [rid for rid, _ in store.search([0.0, 1.0], k=1)] == ["docs:2"]
        assert store.load_watermarks(["docs:1", "docs:9"]) == {"docs:1": 1}
        assert store.ping()
        assert store.count() == 2

    def test_watermark_survives_delete(self, tmp_path):
        store = self.store(tmp_path)
        store.apply_batch([vector_op("1", 1, [1.0, 0.0])])
        store.apply_batch([vector_op("1", 5)])
        assert store.apply_batch([vector_op("1", 3, [0.0, 1.0])]) == 0
        assert store.get_record("docs:1").deleted
        assert list(store.iter_records("docs")) == []

    def test_factory_builds_sql_backend(self, tmp_path, test_config):
        test_config.sinks.vector.backend = "sql"
        test_config.sinks.vector.database_url = f"sqlite:///{tmp_path}/factory.db"
        assert isinstance(create_sink_store(SinkKind.VECTOR, test_config), SqlVectorStore)


# ============================================
# GRAPH STORE
# ============================================

class TestNetworkXGraphStore:
    """Test the graph sink"""

    def setup_method(self):
        self.store = NetworkXGraphStore()

    def customer(self, test_config, key, name, sequence):
        return graph_op(test_config.table("customers"), sequence, after={"customer_id": key, "name": name})

    def order(self, test_config, key, customer, sequence, before=None):
        return graph_op(
            test_config.table("orders"), sequence,
            after={"order_id": key, "customer_id": customer, "status": "open"},
            before=before,
        )

    def test_foreign_key_target_is_created_as_stub(self, test_config):
        self.store.apply_batch([self.order(test_config, "O1", "C1", 2)])
        assert self.store.neighbors("orders:O1") == [("customers:C1", "PLACED_BY")]
        # stubs are not records until their own row arrives
        assert self.store.get_record("customers:C1") is None

        self.store.apply_batch([self.customer(test_config, "C1", "Ada", 1)])
        assert self.store.get_record("customers:C1").fields["name"] == "Ada"
        assert self.store.neighbors("customers:C1") == [("orders:O1", "PLACED_BY")]

    def test_repointed_foreign_key_moves_the_edge(self, test_config):
        self.store.apply_batch([self.order(test_config, "O1", "C1", 1)])
        moved = self.order(test_config, "O1", "C2", 2, before={"order_id": "O1", "customer_id": "C1"})
        self.store.apply_batch([moved])
        assert self.store.neighbors("orders:O1") == [("customers:C2", "PLACED_BY")]

    def test_stale_event_does_not_move_edges(self, test_config):
        self.store.apply_batch([self.order(test_config, "O1", "C2", 5)])
        assert self.store.apply_batch([self.order(test_config, "O1", "C1", 3)]) == 0
        assert self.store.neighbors("orders:O1") == [("customers:C2", "PLACED_BY")]

    def test_join_rows_are_edges_with_their_own_watermark(self, test_config):
        lines = test_config.table("order_lines")
        line = graph_op(lines, 3, after={"order_id": "O1", "product_id": "P1", "quantity": 1})
        self.store.apply_batch([line])

        assert ("products:P1", "CONTAINS") in self.store.neighbors("orders:O1")
        assert self.store.load_watermarks(["order_lines:O1|P1"]) == {"order_lines:O1|P1": 3}
        assert self.store.get_record("order_lines:O1|P1").fields["quantity"] == 1

        removed = graph_op(lines, 4, key=["O1", "P1"])
        self.store.apply_batch([removed])
        assert self.store.neighbors("orders:O1") == []
        assert self.store.get_record("order_lines:O1|P1").deleted

    def test_node_delete_keeps_tombstone(self, test_config):
        self.store.apply_batch([self.customer(test_config, "C1", "Ada", 1)])
        deleted = graph_op(test_config.table("customers"), 2, before={"customer_id": "C1"})
        self.store.apply_batch([deleted])
        assert self.store.get_record("customers:C1").deleted
        assert self.store.apply_batch([self.customer(test_config, "C1", "Ada", 1)]) == 0

    def test_traverse_ranks_by_hops(self, test_config):
        self.store.apply_batch([
            self.customer(test_config, "C1", "Ada Lovelace", 1),
            self.order(test_config, "O1", "C1", 2),
            self.customer(test_config, "C2", "Grace Hopper", 3),
        ])
        hits = self.store.traverse(["lovelace"], hop_limit=2, k=10)
        assert hits == [("customers:C1", 0), ("orders:O1", 1)]
        assert self.store.traverse(["lovelace"], hop_limit=0, k=10) == [("customers:C1", 0)]

    def test_traverse_skips_stubs_and_applies_predicate(self, test_config):
        self.store.apply_batch([self.order(test_config, "O1", "C1", 1)])
        assert self.store.traverse(["open"], hop_limit=2, k=10) == [("orders:O1", 0)]
        assert self.store.traverse(["open"], hop_limit=2, k=10, predicate=lambda f: f["status"] == "closed") == []

    def test_failed_batch_leaves_graph_untouched(self, test_config, monkeypatch):
        self.store.apply_batch([self.customer(test_config, "C1", "Ada", 1)])

        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(self.store, "_upsert_edge", explode)
        with pytest.raises(RuntimeError):
            self.store.apply_batch([self.order(test_config, "O1", "C1", 2)])
        assert self.store.get_record("orders:O1") is None
        assert self.store.count() == 1

    def test_failed_batch_restores_moved_edges(self, test_config, monkeypatch):
        self.store.apply_batch([self.order(test_config, "O1", "C1", 1)])

        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(self.store, "_upsert_edge", explode)
        moved = self.order(test_config, "O1", "C2", 2, before={"order_id": "O1", "customer_id": "C1"})
        with pytest.raises(RuntimeError):
            self.store.apply_batch([moved])

        assert self.store.neighbors("orders:O1") == [("customers:C1", "PLACED_BY")]
        assert self.store.load_watermarks(["orders:O1"]) == {"orders:O1": 1}
        assert not self.store.graph.has_node("customers:C2")

    def test_text_of_row(self):
        assert row_text({"a": "x", "b": 3, "c": None}, ["a", "b", "c"]) == "x 3"
