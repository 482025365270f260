"""
NetworkX graph sink (local, in-process backend)

Nodes are keyed by record id and carry their watermark as a node attribute.
Every edge records the source row that owns it (``owner``): a foreign-key
edge is owned by the referencing row, a join-table edge by the join row.
Applying an event for a row first drops the edges it owns and then re-adds
the ones its mutations describe, so the edge set always matches the row's
latest image.

Foreign-key targets that have not been synced yet are created as stub nodes
(find-or-create) and filled in when their own row arrives.

The graph lives in process memory and is lost on restart; deployments that
need a durable graph use ``Neo4jGraphStore``. A batch is applied in place
under the store lock with an undo log of the nodes and edges it touched.
"""
import threading
from collections import deque
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set, Tuple

import networkx as nx

from ..events.models import GraphMutation, GraphMutationKind, SinkKind, SinkRecord
from ..utils.logger import setup_logger
from ..utils.text import tokenize
from .base import NO_WATERMARK, RecordFilter, SinkOperation, SinkStore, should_apply

logger = setup_logger(__name__)

NODE_KINDS = (GraphMutationKind.NODE_UPSERT, GraphMutationKind.NODE_DELETE)


def _tokens_of(properties: Dict[str, Any]) -> Set[str]:
    text = " ".join(str(v) for v in properties.values() if isinstance(v, (str, int, float)) and not isinstance(v, bool))
    return set(tokenize(text))


class _UndoLog:
    """Pre-images of the nodes, edges and join rows a batch touched"""

    def __init__(self, graph: nx.MultiDiGraph, rows: Dict[str, Dict[str, Any]]):
        self.graph = graph
        self.rows = rows
        self._nodes: Dict[str, Optional[Dict[str, Any]]] = {}
        self._edges: Dict[Tuple[str, str, Any], Optional[Dict[str, Any]]] = {}
        self._rows: Dict[str, Optional[Dict[str, Any]]] = {}

    def node(self, node_id: str) -> None:
        if node_id not in self._nodes:
            self._nodes[node_id] = dict(self.graph.nodes[node_id]) if self.graph.has_node(node_id) else None

    def edge(self, source: str, target: str, key: Any) -> None:
        if (source, target, key) not in self._edges:
            data = self.graph.get_edge_data(source, target, key=key)
            self._edges[(source, target, key)] = dict(data) if data is not None else None

    def row(self, record_id: str) -> None:
        if record_id not in self._rows:
            row = self.rows.get(record_id)
            self._rows[record_id] = dict(row) if row is not None else None

    def rollback(self) -> None:
        # edges first: restored edges only reference nodes that existed before the batch
        for (source, target, key), data in self._edges.items():
            if self.graph.has_edge(source, target, key):
                self.graph.remove_edge(source, target, key=key)
            if data is not None:
                self.graph.add_edge(source, target, key=key, **data)
        for node_id, data in self._nodes.items():
            if data is None:
                if self.graph.has_node(node_id):
                    self.graph.remove_node(node_id)
            else:
                attributes = self.graph.nodes[node_id]
                attributes.clear()
                attributes.update(data)
        for record_id, row in self._rows.items():
            if row is None:
                self.rows.pop(record_id, None)
            else:
                self.rows[record_id] = row


class NetworkXGraphStore(SinkStore):
    """
    Graph sink on a networkx MultiDiGraph

    Usage:
        store = NetworkXGraphStore()
        store.apply_batch(operations)
        store.traverse(["laptop"], hop_limit=2, k=10)
    """

    kind = SinkKind.GRAPH

    def __init__(self):
        self.graph = nx.MultiDiGraph()
        # join-table rows: record_id -> watermark, tombstone flag, fields, endpoints
        self._edge_rows: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()
        logger.info("Initialized NetworkX graph sink (in-memory)")

    # ------------------------------------------------------------------
    # watermarks
    # ------------------------------------------------------------------

    def _watermark(self, record_id: str) -> Optional[int]:
        if record_id in self._edge_rows:
            return self._edge_rows[record_id]["commit_sequence"]
        if self.graph.has_node(record_id):
            sequence = self.graph.nodes[record_id].get("commit_sequence", NO_WATERMARK)
            return None if sequence == NO_WATERMARK else sequence
        return None

    def load_watermarks(self, record_ids: Iterable[str]) -> Dict[str, int]:
        with self._lock:
            watermarks = {}
            for record_id in record_ids:
                sequence = self._watermark(record_id)
                if sequence is not None:
                    watermarks[record_id] = sequence
            return watermarks

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def apply_batch(self, operations: List[SinkOperation]) -> int:
        """Apply in place; a failure part-way restores everything the batch touched"""
        applied = 0
        with self._lock:
            undo = _UndoLog(self.graph, self._edge_rows)
            try:
                for operation in operations:
                    if self._apply(operation, undo):
                        applied += 1
            except Exception:
                undo.rollback()
                raise
        return applied

    def _apply(self, operation: SinkOperation, undo: _UndoLog) -> bool:
        graph, rows = self.graph, self._edge_rows
        record_id = operation.record_id
        mutations = operation.enriched.mutations
        is_entity = any(m.kind in NODE_KINDS for m in mutations)

        if is_entity:
            sequence = graph.nodes[record_id].get("commit_sequence", NO_WATERMARK) if graph.has_node(record_id) else None
            watermark = None if sequence in (None, NO_WATERMARK) else sequence
        else:
            watermark = rows[record_id]["commit_sequence"] if record_id in rows else None
        if not should_apply(operation.commit_sequence, watermark, operation.snapshot):
            return False

        self._drop_owned_edges(record_id, undo)
        for mutation in mutations:
            if mutation.kind == GraphMutationKind.NODE_UPSERT:
                self._upsert_node(mutation, operation, undo)
            elif mutation.kind == GraphMutationKind.NODE_DELETE:
                self._tombstone_node(mutation, operation, undo)
            elif mutation.kind == GraphMutationKind.EDGE_UPSERT:
                self._upsert_edge(mutation, record_id, undo)
            elif mutation.kind == GraphMutationKind.EDGE_DELETE:
                self._delete_edge(mutation, undo)

        if not is_entity:
            edge = next((m for m in mutations if m.kind == GraphMutationKind.EDGE_UPSERT), None)
            undo.row(record_id)
            rows[record_id] = {
                "commit_sequence": operation.commit_sequence,
                "source_table": operation.source_table,
                "deleted": operation.is_delete,
                "fields": {} if operation.is_delete else dict(operation.enriched.fields),
                "endpoints": (edge.from_id, edge.to_id) if edge is not None else None,
            }
        return True

    def _ensure_node(self, node_id: str, label: Optional[str], undo: _UndoLog) -> None:
        if not self.graph.has_node(node_id):
            undo.node(node_id)
            self.graph.add_node(
                node_id,
                label=label or node_id.split(":", 1)[0],
                properties={},
                tokens=set(),
                commit_sequence=NO_WATERMARK,
                deleted=False,
                stub=True,
                source_table=node_id.split(":", 1)[0],
            )

    def _upsert_node(self, mutation: GraphMutation, operation: SinkOperation, undo: _UndoLog) -> None:
        undo.node(mutation.node_id)
        self._ensure_node(mutation.node_id, mutation.label, undo)
        self.graph.nodes[mutation.node_id].update(
            label=mutation.label,
            properties=dict(mutation.properties),
            tokens=_tokens_of(mutation.properties),
            commit_sequence=operation.commit_sequence,
            deleted=False,
            stub=False,
            source_table=operation.source_table,
        )

    def _tombstone_node(self, mutation: GraphMutation, operation: SinkOperation, undo: _UndoLog) -> None:
        undo.node(mutation.node_id)
        self._ensure_node(mutation.node_id, mutation.label, undo)
        self.graph.nodes[mutation.node_id].update(
            properties={},
            tokens=set(),
            commit_sequence=operation.commit_sequence,
            deleted=True,
            stub=False,
            source_table=operation.source_table,
        )

    def _upsert_edge(self, mutation: GraphMutation, owner: str, undo: _UndoLog) -> None:
        self._ensure_node(mutation.from_id, mutation.from_label, undo)
        self._ensure_node(mutation.to_id, mutation.to_label, undo)
        key = (mutation.label, owner)
        undo.edge(mutation.from_id, mutation.to_id, key)
        self.graph.add_edge(
            mutation.from_id,
            mutation.to_id,
            key=key,
            type=mutation.label,
            owner=owner,
            properties=dict(mutation.properties),
        )

    def _delete_edge(self, mutation: GraphMutation, undo: _UndoLog) -> None:
        if mutation.from_id is None or mutation.to_id is None:
            return
        if not self.graph.has_node(mutation.from_id):
            return
        doomed = [
            key for _, target, key, data in self.graph.out_edges(mutation.from_id, keys=True, data=True)
            if target == mutation.to_id and data.get("type") == mutation.label
        ]
        for key in doomed:
            undo.edge(mutation.from_id, mutation.to_id, key)
            self.graph.remove_edge(mutation.from_id, mutation.to_id, key=key)

    def _drop_owned_edges(self, owner: str, undo: _UndoLog) -> None:
        sources = [owner] if self.graph.has_node(owner) else []
        row = self._edge_rows.get(owner)
        if row and row.get("endpoints"):
            sources.append(row["endpoints"][0])
        for source in sources:
            if not self.graph.has_node(source):
                continue
            doomed = [
                (source, target, key)
                for _, target, key, data in self.graph.out_edges(source, keys=True, data=True)
                if data.get("owner") == owner
            ]
            for edge in doomed:
                undo.edge(*edge)
                self.graph.remove_edge(*edge)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_record(self, record_id: str) -> Optional[SinkRecord]:
        with self._lock:
            row = self._edge_rows.get(record_id)
            if row is not None:
                return SinkRecord(
                    record_id=record_id,
                    source_table=row["source_table"],
                    commit_sequence=row["commit_sequence"],
                    fields=dict(row["fields"]),
                    deleted=row["deleted"],
                )
            if not self.graph.has_node(record_id):
                return None
            data = self.graph.nodes[record_id]
            if data.get("stub"):
                return None
            return SinkRecord(
                record_id=record_id,
                source_table=data["source_table"],
                commit_sequence=data["commit_sequence"],
                fields=dict(data["properties"]),
                deleted=data["deleted"],
            )

    def iter_records(self, source_table: str) -> Iterator[SinkRecord]:
        with self._lock:
            records = [
                SinkRecord(
                    record_id=node_id,
                    source_table=source_table,
                    commit_sequence=data["commit_sequence"],
                    fields=dict(data["properties"]),
                )
                for node_id, data in self.graph.nodes(data=True)
                if data.get("source_table") == source_table and not data.get("stub") and not data.get("deleted")
            ]
            records.extend(
                SinkRecord(
                    record_id=record_id,
                    source_table=source_table,
                    commit_sequence=row["commit_sequence"],
                    fields=dict(row["fields"]),
                )
                for record_id, row in self._edge_rows.items()
                if row["source_table"] == source_table and not row["deleted"]
            )
        return iter(records)

    def _visible(self, node_id: str) -> bool:
        data = self.graph.nodes[node_id]
        return not data.get("stub") and not data.get("deleted")

    def neighbors(self, node_id: str) -> List[Tuple[str, str]]:
        """(neighbor id, edge type) pairs in both directions"""
        with self._lock:
            if not self.graph.has_node(node_id):
                return []
            out = [(v, d["type"]) for _, v, d in self.graph.out_edges(node_id, data=True)]
            inc = [(u, d["type"]) for u, _, d in self.graph.in_edges(node_id, data=True)]
            return sorted(set(out + inc))

    def traverse(
        self,
        terms: List[str],
        hop_limit: int = 2,
        k: int = 10,
        predicate: Optional[RecordFilter] = None,
        consistency: Optional[str] = None
    ) -> List[Tuple[str, int]]:
        """
        Pattern traversal seeded by term matches

        Seeds are visible nodes whose properties contain any of ``terms``;
        a breadth-first walk over edges in both directions reaches nodes up
        to ``hop_limit`` hops away. Results rank by hop distance, then by
        how many terms the node itself matches, then by record id.
        ``predicate`` filters nodes before truncation.

        Returns:
            (record_id, hops) pairs
        """
        wanted = set(t.lower() for t in terms)
        if not wanted:
            return []
        with self._lock:
            graph = self.graph
            seeds = sorted(
                node_id for node_id, data in graph.nodes(data=True)
                if self._visible(node_id) and data["tokens"] & wanted
            )
            distances: Dict[str, int] = {}
            queue = deque((seed, 0) for seed in seeds)
            for seed in seeds:
                distances[seed] = 0
            while queue:
                node_id, hops = queue.popleft()
                if hops >= hop_limit:
                    continue
                for neighbor in sorted(set(graph.successors(node_id)) | set(graph.predecessors(node_id))):
                    if neighbor not in distances:
                        distances[neighbor] = hops + 1
                        queue.append((neighbor, hops + 1))

            hits = []
            for node_id, hops in distances.items():
                if not self._visible(node_id):
                    continue
                data = graph.nodes[node_id]
                if predicate is not None and not predicate(data["properties"]):
                    continue
                hits.append((node_id, hops, len(data["tokens"] & wanted)))
        hits.sort(key=lambda h: (h[1], -h[2], h[0]))
        return [(node_id, hops) for node_id, hops, _ in hits[:k]]

    def ping(self) -> bool:
        return True

    def count(self) -> int:
        with self._lock:
            nodes = sum(1 for n in self.graph.nodes if self._visible(n))
            return nodes + sum(1 for r in self._edge_rows.values() if not r["deleted"])

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "nodes": self.graph.number_of_nodes(),
                "edges": self.graph.number_of_edges(),
                "visible_records": self.count(),
                "stub_nodes": sum(1 for _, d in self.graph.nodes(data=True) if d.get("stub")),
            }
