"""
Health and Status Endpoints
"""
import time
from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from datafabric.pipeline.orchestrator import DataFabric
from datafabric.utils.logger import setup_logger
from ..dependencies import get_fabric

logger = setup_logger(__name__)
router = APIRouter(tags=["health"])

# Track API start time for uptime calculation
API_START_TIME = time.time()


@router.get("/health")
async def health_check(fabric: DataFabric = Depends(get_fabric)) -> JSONResponse:
    """
    Component health of the whole fabric

    Returns 200 while at least one store answers, 503 when none does.
    """
    report: Dict[str, Any] = await fabric.health()
    report["timestamp"] = datetime.now(timezone.utc).isoformat()
    report["uptime_seconds"] = int(time.time() - API_START_TIME)
    if report["status"] != "healthy":
        logger.warning(f"Health check: {report['status']}")
    status_code = 503 if report["status"] == "unhealthy" else 200
    return JSONResponse(status_code=status_code, content=jsonable_encoder(report))


@router.get("/health/live")
async def liveness() -> Dict[str, str]:
    return {"status": "alive"}
