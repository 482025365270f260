"""
Neo4j graph sink

Same model as the NetworkX sink, expressed in Cypher:
- every synced row is a ``(:Record {record_id})`` node with its label added,
  ``commit_sequence`` and ``deleted`` on the node
- join-table rows are ``(:EdgeRow {record_id})`` nodes that hold the
  watermark of the relationship they own
- relationships carry ``owner`` (the owning row's record id)

One batch is one write transaction (``execute_write``); the watermark
condition is evaluated inside it.
"""
import json
import re
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from neo4j import GraphDatabase
from neo4j.exceptions import ConstraintError, Neo4jError, ServiceUnavailable, SessionExpired, TransientError

from ..core.exceptions import ConfigurationError, KeyConflictError, PermanentRecordError, TransientStoreError
from ..events.models import GraphMutationKind, SinkKind, SinkRecord
from ..utils.logger import setup_logger
from .base import NO_WATERMARK, RecordFilter, SinkOperation, SinkStore, should_apply
from .graph_store import NODE_KINDS

logger = setup_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _identifier(value: str) -> str:
    """Labels and relationship types cannot be parameters; only plain identifiers are allowed"""
    if not _IDENTIFIER.match(value or ""):
        raise ConfigurationError(f"Invalid graph label or relationship type: {value!r}")
    return value


def _sanitize_properties(properties: Dict[str, Any]) -> Dict[str, Any]:
    """Keep values Neo4j can store as properties (scalars and scalar lists)"""
    sanitized = {}
    for key, value in properties.items():
        if value is None or isinstance(value, (str, int, float, bool)):
            sanitized[key] = value
        elif isinstance(value, list) and all(isinstance(v, (str, int, float, bool)) for v in value):
            sanitized[key] = value
        else:
            sanitized[key] = json.dumps(value, sort_keys=True, default=str)
    return sanitized


class Neo4jGraphStore(SinkStore):
    """Graph sink backed by a Neo4j database"""

    kind = SinkKind.GRAPH

    def __init__(self, uri: str, user: str, password: str, database: Optional[str] = None):
        self.driver = GraphDatabase.driver(uri, auth=(user, password))
        self.database = database
        logger.info(f"Connected to Neo4j at {uri}")

    def _session(self):
        if self.database:
            return self.driver.session(database=self.database)
        return self.driver.session()

    def _translate(self, error: Exception, action: str) -> Exception:
        if isinstance(error, ConstraintError):
            return KeyConflictError(f"Neo4j constraint violation during {action}: {error}")
        if isinstance(error, (ServiceUnavailable, SessionExpired, TransientError)):
            return TransientStoreError(f"Neo4j unavailable during {action}: {error}")
        return PermanentRecordError(f"Neo4j rejected {action}: {error}")

    def ensure_schema(self) -> None:
        with self._session() as session:
            session.run("CREATE CONSTRAINT record_id IF NOT EXISTS FOR (n:Record) REQUIRE n.record_id IS UNIQUE")
            session.run("CREATE CONSTRAINT edge_row_id IF NOT EXISTS FOR (n:EdgeRow) REQUIRE n.record_id IS UNIQUE")

    # ------------------------------------------------------------------
    # watermarks
    # ------------------------------------------------------------------

    def load_watermarks(self, record_ids: Iterable[str]) -> Dict[str, int]:
        ids = list(record_ids)
        if not ids:
            return {}
        query = """
        MATCH (n) WHERE (n:Record OR n:EdgeRow) AND n.record_id IN $ids
          AND n.commit_sequence > $none
        RETURN n.record_id AS record_id, n.commit_sequence AS sequence
        """
        try:
            with self._session() as session:
                result = session.run(query, ids=ids, none=NO_WATERMARK)
                return {r["record_id"]: r["sequence"] for r in result}
        except (ServiceUnavailable, SessionExpired, TransientError, Neo4jError) as e:
            raise self._translate(e, "load_watermarks") from e

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    def apply_batch(self, operations: List[SinkOperation]) -> int:
        try:
            with self._session() as session:
                return session.execute_write(self._apply_all, operations)
        except (ServiceUnavailable, SessionExpired, TransientError, Neo4jError) as e:
            raise self._translate(e, "apply_batch") from e

    def _apply_all(self, tx, operations: List[SinkOperation]) -> int:
        applied = 0
        for operation in operations:
            if self._apply(tx, operation):
                applied += 1
        return applied

    def _apply(self, tx, operation: SinkOperation) -> bool:
        record_id = operation.record_id
        mutations = operation.enriched.mutations
        is_entity = any(m.kind in NODE_KINDS for m in mutations)
        holder = "Record" if is_entity else "EdgeRow"

        row = tx.run(
            f"MATCH (n:{holder} {{record_id: $id}}) RETURN n.commit_sequence AS sequence",
            id=record_id
        ).single()
        sequence = row["sequence"] if row is not None else None
        watermark = None if sequence in (None, NO_WATERMARK) else sequence
        if not should_apply(operation.commit_sequence, watermark, operation.snapshot):
            return False

        tx.run("MATCH ()-[r {owner: $id}]->() DELETE r", id=record_id)

        for mutation in mutations:
            if mutation.kind == GraphMutationKind.NODE_UPSERT:
                label = _identifier(mutation.label)
                properties = _sanitize_properties(mutation.properties)
                tx.run(
                    f"""
                    MERGE (n:Record {{record_id: $id}})
                    SET n:{label}, n += $props,
                        n.fields_json = $fields_json, n.search_text = $search_text,
                        n.commit_sequence = $seq, n.deleted = false, n.stub = false,
                        n.source_table = $table
                    """,
                    id=record_id,
                    props=properties,
                    fields_json=json.dumps(mutation.properties, sort_keys=True),
                    search_text=" ".join(str(v) for v in mutation.properties.values() if v is not None).lower(),
                    seq=operation.commit_sequence,
                    table=operation.source_table,
                )
            elif mutation.kind == GraphMutationKind.NODE_DELETE:
                tx.run(
                    """
                    MERGE (n:Record {record_id: $id})
                    SET n.deleted = true, n.stub = false, n.fields_json = '{}', n.search_text = '',
                        n.commit_sequence = $seq, n.source_table = $table
                    """,
                    id=record_id,
                    seq=operation.commit_sequence,
                    table=operation.source_table,
                )
            elif mutation.kind == GraphMutationKind.EDGE_UPSERT:
                rel_type = _identifier(mutation.label)
                tx.run(
                    f"""
                    MERGE (a:Record {{record_id: $from_id}})
                    ON CREATE SET a.commit_sequence = $none, a.stub = true, a.deleted = false,
                                  a.source_table = $from_table
                    MERGE (b:Record {{record_id: $to_id}})
                    ON CREATE SET b.commit_sequence = $none, b.stub = true, b.deleted = false,
                                  b.source_table = $to_table
                    MERGE (a)-[r:{rel_type} {{owner: $owner}}]->(b)
                    SET r += $props
                    """,
                    from_id=mutation.from_id,
                    to_id=mutation.to_id,
                    from_table=mutation.from_id.split(":", 1)[0],
                    to_table=mutation.to_id.split(":", 1)[0],
                    owner=record_id,
                    none=NO_WATERMARK,
                    props=_sanitize_properties(mutation.properties),
                )
            elif mutation.kind == GraphMutationKind.EDGE_DELETE and mutation.from_id and mutation.to_id:
                rel_type = _identifier(mutation.label)
                tx.run(
                    f"MATCH (:Record {{record_id: $from_id}})-[r:{rel_type}]->(:Record {{record_id: $to_id}}) DELETE r",
                    from_id=mutation.from_id,
                    to_id=mutation.to_id,
                )

        if not is_entity:
            tx.run(
                """
                MERGE (e:EdgeRow {record_id: $id})
                SET e.commit_sequence = $seq, e.deleted = $deleted,
                    e.fields_json = $fields_json, e.source_table = $table
                """,
                id=record_id,
                seq=operation.commit_sequence,
                deleted=operation.is_delete,
                fields_json="{}" if operation.is_delete else json.dumps(operation.enriched.fields, sort_keys=True),
                table=operation.source_table,
            )
        return True

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    def get_record(self, record_id: str) -> Optional[SinkRecord]:
        query = """
        MATCH (n) WHERE (n:Record OR n:EdgeRow) AND n.record_id = $id AND coalesce(n.stub, false) = false
        RETURN n.record_id AS id, n.source_table AS table, n.commit_sequence AS seq,
               n.fields_json AS fields, n.deleted AS deleted
        """
        with self._session() as session:
            row = session.run(query, id=record_id).single()
        if row is None:
            return None
        return SinkRecord(
            record_id=row["id"],
            source_table=row["table"],
            commit_sequence=row["seq"],
            fields=json.loads(row["fields"] or "{}"),
            deleted=bool(row["deleted"]),
        )

    def iter_records(self, source_table: str) -> Iterator[SinkRecord]:
        query = """
        MATCH (n) WHERE (n:Record OR n:EdgeRow) AND n.source_table = $table
          AND coalesce(n.stub, false) = false AND n.deleted = false
        RETURN n.record_id AS id, n.commit_sequence AS seq, n.fields_json AS fields
        """
        try:
            with self._session() as session:
                rows = list(session.run(query, table=source_table))
        except (ServiceUnavailable, SessionExpired, TransientError, Neo4jError) as e:
            raise self._translate(e, "iter_records") from e
        return iter([
            SinkRecord(
                record_id=row["id"],
                source_table=source_table,
                commit_sequence=row["seq"],
                fields=json.loads(row["fields"] or "{}"),
            )
            for row in rows
        ])

    def traverse(
        self,
        terms: List[str],
        hop_limit: int = 2,
        k: int = 10,
        predicate: Optional[RecordFilter] = None,
        consistency: Optional[str] = None
    ) -> List[Tuple[str, int]]:
        """Seeded variable-length traversal; see NetworkXGraphStore.traverse"""
        wanted = [t.lower() for t in terms]
        if not wanted:
            return []
        hops = max(0, int(hop_limit))
        query = f"""
        MATCH (s:Record)
        WHERE s.deleted = false AND coalesce(s.stub, false) = false
          AND any(t IN $terms WHERE s.search_text CONTAINS t)
        MATCH p = (s)-[*0..{hops}]-(m:Record)
        WHERE m.deleted = false AND coalesce(m.stub, false) = false
        WITH m, min(length(p)) AS hops
        RETURN m.record_id AS id, hops, m.fields_json AS fields,
               size([t IN $terms WHERE m.search_text CONTAINS t]) AS matched
        ORDER BY hops ASC, matched DESC, id ASC
        """
        try:
            with self._session() as session:
                rows = list(session.run(query, terms=wanted))
        except (ServiceUnavailable, SessionExpired, TransientError, Neo4jError) as e:
            raise self._translate(e, "traverse") from e
        hits = []
        for row in rows:
            if predicate is not None and not predicate(json.loads(row["fields"] or "{}")):
                continue
            hits.append((row["id"], row["hops"]))
            if len(hits) >= k:
                break
        return hits

    def ping(self) -> bool:
        try:
            self.driver.verify_connectivity()
            return True
        except Exception as e:
            logger.warning(f"[Neo4jGraphStore] Ping failed: {e}")
            return False

    def count(self) -> int:
        with self._session() as session:
            row = session.run(
                "MATCH (n) WHERE (n:Record OR n:EdgeRow) AND coalesce(n.stub, false) = false "
                "AND n.deleted = false RETURN count(n) AS c"
            ).single()
        return row["c"] if row else 0

    def close(self) -> None:
        self.driver.close()
