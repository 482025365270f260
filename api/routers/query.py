"""
Query Federation Endpoint
"""
from fastapi import APIRouter, Depends

from datafabric.federation.models import FederatedQuery, FederatedResponse
from datafabric.pipeline.orchestrator import DataFabric
from datafabric.utils.logger import setup_logger
from ..dependencies import get_fabric

logger = setup_logger(__name__)
router = APIRouter(prefix="/api", tags=["query"])


@router.post("/query", response_model=FederatedResponse, response_model_by_alias=True)
async def federated_query(
    query: FederatedQuery,
    fabric: DataFabric = Depends(get_fabric)
) -> FederatedResponse:
    """
    Hybrid query across the keyword, vector and graph indexes

    Request and response fields are camelCase (``queryText``,
    ``structuredFilters``, ``topK``, ``consistency``, ``deadlineMs``).
    A query with no dispatchable sub-query is rejected with 400; a slow or
    failing store only degrades the response.
    """
    return await fabric.query(query)
