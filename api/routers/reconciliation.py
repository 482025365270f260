"""
Reconciliation Endpoints
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from datafabric.events.models import SinkKind
from datafabric.pipeline.orchestrator import DataFabric
from datafabric.reconciliation.models import ReconciliationStatus
from datafabric.utils.logger import setup_logger
from ..dependencies import get_fabric
from ..exceptions import create_success_response

logger = setup_logger(__name__)
router = APIRouter(prefix="/api/reconciliation", tags=["reconciliation"])


# ============================================
# REQUEST/RESPONSE MODELS
# ============================================

class ReconciliationRunRequest(BaseModel):
    """Optional scope of an on-demand reconciliation run"""
    sinks: Optional[List[SinkKind]] = Field(None, description="Sinks to audit (all by default)")
    tables: Optional[List[str]] = Field(None, description="Source tables to audit (all by default)")


class RepairRequest(BaseModel):
    """Targeted re-sync of specific records"""
    table: str = Field(..., min_length=1)
    record_ids: List[str] = Field(..., min_length=1)


# ============================================
# ENDPOINTS
# ============================================

@router.post("/run")
async def run_reconciliation(
    request: Optional[ReconciliationRunRequest] = None,
    fabric: DataFabric = Depends(get_fabric)
) -> Dict[str, Any]:
    scope = request or ReconciliationRunRequest()
    reports = await fabric.reconcile(sinks=scope.sinks, table_names=scope.tables)
    drifted = [r for r in reports if r.drifted]
    return create_success_response(
        data=[r.to_dict() for r in reports],
        meta={"reports": len(reports), "drifted": len(drifted)}
    )


@router.get("/reports")
async def list_reports(
    limit: int = Query(100, ge=1, le=1000),
    status: Optional[ReconciliationStatus] = None,
    sink: Optional[SinkKind] = None,
    fabric: DataFabric = Depends(get_fabric)
) -> Dict[str, Any]:
    reports = fabric.monitor.report_store.list(
        limit=limit,
        status=status,
        sink=sink.value if sink else None
    )
    return create_success_response(data=[r.to_dict() for r in reports])


@router.post("/repair")
async def repair_records(
    request: RepairRequest,
    fabric: DataFabric = Depends(get_fabric)
) -> Dict[str, Any]:
    published = await fabric.monitor.repair_keys(request.table, request.record_ids)
    logger.info(f"Manual repair of {published} records in {request.table}")
    return create_success_response(data={"published": published})
