"""
Change Event Models

The units that flow through the fabric:
- ChangeEvent: one committed row mutation at the source
- EnrichedEvent: a ChangeEvent plus the payload derived for one sink
- DeadLetter: anything that could not be processed, with the reason
- SinkRecord: the materialized projection inside a target store
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator


RECORD_ID_SEPARATOR = ":"
KEY_PART_SEPARATOR = "|"


class Operation(str, Enum):
    """Row mutation kinds"""
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class SinkKind(str, Enum):
    """Downstream projections"""
    VECTOR = "vector"
    GRAPH = "graph"
    KEYWORD = "keyword"


class GraphMutationKind(str, Enum):
    """Graph store mutations derived from a row"""
    NODE_UPSERT = "NodeUpsert"
    NODE_DELETE = "NodeDelete"
    EDGE_UPSERT = "EdgeUpsert"
    EDGE_DELETE = "EdgeDelete"


def format_record_id(source_table: str, source_key: Tuple[Any, ...]) -> str:
    """
    Build the document key used by every sink

    Example:
        format_record_id("products", ("P1",)) -> "products:P1"
        format_record_id("order_lines", (7, 2)) -> "order_lines:7|2"
    """
    key = KEY_PART_SEPARATOR.join(str(part) for part in source_key)
    return f"{source_table}{RECORD_ID_SEPARATOR}{key}"


def parse_record_id(record_id: str) -> Tuple[str, Tuple[str, ...]]:
    """Split a record id back into table name and (stringified) key parts"""
    table, _, key = record_id.partition(RECORD_ID_SEPARATOR)
    return table, tuple(key.split(KEY_PART_SEPARATOR))


class ChangeEvent(BaseModel):
    """
    One committed mutation at the source of truth

    ``before`` is absent on insert, ``after`` is absent on delete.
    ``commit_sequence`` is the source-assigned ordering token; consumers skip
    any event whose sequence is not greater than the last one applied for the
    same key. ``snapshot`` marks events re-read from current source state
    (initial snapshot, resync or repair) rather than from the commit log.
    """
    source_table: str = Field(min_length=1)
    source_key: Tuple[Any, ...]
    operation: Operation
    before: Optional[Dict[str, Any]] = None
    after: Optional[Dict[str, Any]] = None
    commit_sequence: int = Field(ge=0)
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    snapshot: bool = False

    @field_validator('source_key', mode='before')
    @classmethod
    def _coerce_key(cls, value: Any) -> Tuple[Any, ...]:
        if isinstance(value, (list, tuple)):
            return tuple(value)
        return (value,)

    @model_validator(mode='after')
    def _check_images(self) -> "ChangeEvent":
        if not self.source_key:
            raise ValueError("source_key must not be empty")
        if self.operation == Operation.INSERT:
            if self.after is None:
                raise ValueError("insert events require an after image")
            if self.before is not None:
                raise ValueError("insert events must not carry a before image")
        elif self.operation == Operation.UPDATE:
            if self.after is None:
                raise ValueError("update events require an after image")
        elif self.operation == Operation.DELETE:
            if self.after is not None:
                raise ValueError("delete events must not carry an after image")
        return self

    @property
    def record_id(self) -> str:
        return format_record_id(self.source_table, self.source_key)

    @property
    def is_delete(self) -> bool:
        return self.operation == Operation.DELETE

    @property
    def image(self) -> Dict[str, Any]:
        """The latest known row image (after, or before for deletes)"""
        return self.after if self.after is not None else (self.before or {})


class GraphMutation(BaseModel):
    """A single node or edge change for the graph sink"""
    kind: GraphMutationKind
    label: str  # node label or edge type
    node_id: Optional[str] = None
    from_id: Optional[str] = None
    from_label: Optional[str] = None
    to_id: Optional[str] = None
    to_label: Optional[str] = None
    properties: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_edge(self) -> bool:
        return self.kind in (GraphMutationKind.EDGE_UPSERT, GraphMutationKind.EDGE_DELETE)


class EnrichedEvent(BaseModel):
    """
    A ChangeEvent plus the payload derived for one sink

    - vector sink: ``vector`` (dimension D) and ``fields`` as metadata
    - graph sink: ``mutations`` (node/edge upserts and deletes)
    - keyword sink: ``text`` and ``fields``
    Deletes carry no payload.
    """
    sink: SinkKind
    event: ChangeEvent
    fields: Dict[str, Any] = Field(default_factory=dict)
    vector: Optional[List[float]] = None
    text: Optional[str] = None
    mutations: List[GraphMutation] = Field(default_factory=list)

    @property
    def record_id(self) -> str:
        return self.event.record_id

    @property
    def commit_sequence(self) -> int:
        return self.event.commit_sequence

    @property
    def is_delete(self) -> bool:
        return self.event.is_delete


class DeadLetter(BaseModel):
    """An event that could not be processed, tagged with the failure reason"""
    dead_letter_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    stage: str  # "transform", "sink:vector", ...
    reason: str
    error_kind: str
    attempts: int = 1
    record_id: Optional[str] = None
    commit_sequence: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    failed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass
class SinkRecord:
    """
    Materialized projection of one source row inside a store

    ``commit_sequence`` is the per-key watermark and lives in the record
    itself. Deleted records stay behind as tombstones so a late redelivery
    of an older insert cannot resurrect them.
    """
    record_id: str
    source_table: str
    commit_sequence: int
    fields: Dict[str, Any] = field(default_factory=dict)
    deleted: bool = False
    vector: Optional[List[float]] = None
    text: Optional[str] = None

    @property
    def visible(self) -> bool:
        return not self.deleted
