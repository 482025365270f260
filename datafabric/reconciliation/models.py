"""
Reconciliation report model
"""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field


class ReconciliationStatus(str, Enum):
    IN_SYNC = "InSync"
    DRIFTED = "Drifted"
    UNKNOWN = "Unknown"


class ReconciliationReport(BaseModel):
    """
    Per-partition audit result for one sink and source table

    Immutable once created; reports form an append-only audit trail.
    """
    model_config = ConfigDict(frozen=True)

    report_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sink: str
    source_table: str
    partition: int
    status: ReconciliationStatus
    source_hash: Optional[str] = None
    sink_hash: Optional[str] = None
    mismatched_keys: Tuple[str, ...] = ()
    source_count: int = 0
    sink_count: int = 0
    repairs_published: int = 0
    error: Optional[str] = None
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def drifted(self) -> bool:
        return self.status == ReconciliationStatus.DRIFTED

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
