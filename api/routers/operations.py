"""
Operator Endpoints: alerts, dead letters, resync and breaker reset
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from datafabric.pipeline.orchestrator import DataFabric
from datafabric.utils.logger import setup_logger
from ..dependencies import get_fabric
from ..exceptions import create_success_response

logger = setup_logger(__name__)
router = APIRouter(prefix="/api", tags=["operations"])


class ResyncRequest(BaseModel):
    """Tables to re-snapshot; omit for a full resync"""
    tables: Optional[List[str]] = None


@router.get("/alerts")
async def list_alerts(fabric: DataFabric = Depends(get_fabric)) -> Dict[str, Any]:
    alerts = [a.to_dict() for a in fabric.alerts.list()]
    return create_success_response(data=alerts, meta={"count": len(alerts)})


@router.get("/dead-letters")
async def list_dead_letters(
    limit: int = Query(100, ge=1, le=500),
    stage: Optional[str] = None,
    fabric: DataFabric = Depends(get_fabric)
) -> Dict[str, Any]:
    letters = list(reversed(fabric.dead_letters.recent()))
    if stage:
        letters = [letter for letter in letters if letter.stage == stage]
    return create_success_response(
        data=[letter.model_dump(mode="json") for letter in letters[:limit]],
        meta={"counts": fabric.dead_letters.counts()}
    )


@router.post("/resync")
async def resync(
    request: Optional[ResyncRequest] = None,
    fabric: DataFabric = Depends(get_fabric)
) -> Dict[str, Any]:
    tables = request.tables if request else None
    published = await fabric.resync(tables)
    return create_success_response(data=published, message="Snapshot events published")


@router.post("/breakers/reset")
async def reset_breakers(fabric: DataFabric = Depends(get_fabric)) -> Dict[str, Any]:
    """Close every federation circuit breaker"""
    fabric.federation.breakers.reset_all()
    logger.info("circuit_breakers_reset")
    return create_success_response(data=fabric.federation.breakers.states(), message="Circuit breakers closed")
