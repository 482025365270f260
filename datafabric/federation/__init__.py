"""
Query federation: parallel sub-queries fused with Reciprocal Rank Fusion
"""
from .filters import OPERATORS, compile_filters, parse_filters
from .models import (
    Consistency,
    FederatedQuery,
    FederatedResponse,
    FederatedResult,
    QueryState,
    QueryStatus,
    SourceOutcome,
    SourceState,
)
from .retrievers import GraphRetriever, KeywordRetriever, Retriever, VectorRetriever
from .rrf import RRF_K, FusedDocument, reciprocal_rank_fusion
from .service import QueryFederationService

__all__ = [
    "OPERATORS",
    "compile_filters",
    "parse_filters",
    "Consistency",
    "FederatedQuery",
    "FederatedResponse",
    "FederatedResult",
    "QueryState",
    "QueryStatus",
    "SourceOutcome",
    "SourceState",
    "GraphRetriever",
    "KeywordRetriever",
    "Retriever",
    "VectorRetriever",
    "RRF_K",
    "FusedDocument",
    "reciprocal_rank_fusion",
    "QueryFederationService",
]
