"""
Federated query request/response models

Field names serialize in camelCase (``queryText``, ``documentKey`` ...) so
the HTTP surface matches the logical query API; Python code uses the
snake_case attribute names.
"""
import uuid
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..events.models import SinkKind


class Consistency(str, Enum):
    """Read consistency hint forwarded to every sub-query"""
    STRONG = "Strong"
    BOUNDED = "Bounded"
    SESSION = "Session"
    EVENTUAL = "Eventual"


class QueryStatus(str, Enum):
    OK = "Ok"
    DEGRADED = "Degraded"


class QueryState(str, Enum):
    """Lifecycle of one federated query"""
    PARSED = "Parsed"
    DISPATCHED = "Dispatched"
    COLLECTING = "Collecting"
    MERGED = "Merged"
    RETURNED = "Returned"
    TIMED_OUT = "TimedOut"


class SourceState(str, Enum):
    """How one sub-query ended"""
    OK = "ok"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CIRCUIT_OPEN = "circuit_open"


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FederatedQuery(_CamelModel):
    query_text: str = ""
    structured_filters: Dict[str, Any] = Field(default_factory=dict)
    top_k: int = Field(10, ge=1, le=1000)
    consistency: Consistency = Consistency.EVENTUAL
    deadline_ms: Optional[int] = Field(None, gt=0)
    top_n: Optional[int] = Field(None, ge=1)
    hop_limit: Optional[int] = Field(None, ge=0, le=10)
    sources: Optional[List[SinkKind]] = None


class FederatedResult(_CamelModel):
    document_key: str
    score: float
    contributing_sources: List[str]
    ranks: Dict[str, int] = Field(default_factory=dict)


class SourceOutcome(_CamelModel):
    source: str
    state: SourceState
    returned: int = 0
    took_ms: float = 0.0
    error: Optional[str] = None


class FederatedResponse(_CamelModel):
    query_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    results: List[FederatedResult] = Field(default_factory=list)
    status: QueryStatus = QueryStatus.OK
    state: QueryState = QueryState.RETURNED
    transitions: List[QueryState] = Field(default_factory=list)
    took_ms: float = 0.0
    sources: List[SourceOutcome] = Field(default_factory=list)

    @property
    def document_keys(self) -> List[str]:
        return [r.document_key for r in self.results]
