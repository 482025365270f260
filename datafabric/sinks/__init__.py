"""
Sink stores and sink writers
"""
from typing import Optional

from ..core.exceptions import ConfigurationError
from ..events.models import SinkKind
from ..utils.config import Config, ConfigDefaults
from .base import NO_WATERMARK, RecordFilter, SinkOperation, SinkStore, should_apply
from .batching import BatchAccumulator, plan_batch
from .backpressure import AdaptiveFetchController
from .vector_store import InMemoryVectorStore, rank_by_cosine
from .graph_store import NetworkXGraphStore
from .keyword_store import KeywordStore
from .writer import SinkWriter, WriterStats


def create_sink_store(kind: SinkKind, config: Config, session_factory=None) -> SinkStore:
    """Build the configured store for one sink"""
    sinks = config.sinks
    if kind == SinkKind.VECTOR:
        if sinks.vector.backend == ConfigDefaults.VECTOR_BACKEND_MEMORY:
            return InMemoryVectorStore(sinks.vector.dimension)
        if sinks.vector.backend == ConfigDefaults.VECTOR_BACKEND_SQL:
            from ..database.database import get_session_factory, init_db
            from .sql_vector_store import SqlVectorStore
            if session_factory is None:
                url = sinks.vector.database_url or config.source.database_url
                init_db(url)
                session_factory = get_session_factory(url)
            return SqlVectorStore(session_factory, sinks.vector.dimension)
        raise ConfigurationError(f"Unsupported vector backend: {sinks.vector.backend}")
    if kind == SinkKind.GRAPH:
        if sinks.graph.backend == ConfigDefaults.GRAPH_BACKEND_NETWORKX:
            return NetworkXGraphStore()
        if sinks.graph.backend == ConfigDefaults.GRAPH_BACKEND_NEO4J:
            from .neo4j_store import Neo4jGraphStore
            return Neo4jGraphStore(
                uri=sinks.graph.neo4j_uri,
                user=sinks.graph.neo4j_user,
                password=sinks.graph.neo4j_password,
            )
        raise ConfigurationError(f"Unsupported graph backend: {sinks.graph.backend}")
    if kind == SinkKind.KEYWORD:
        return KeywordStore()
    raise ConfigurationError(f"Unknown sink: {kind}")


__all__ = [
    "NO_WATERMARK",
    "RecordFilter",
    "SinkOperation",
    "SinkStore",
    "should_apply",
    "BatchAccumulator",
    "plan_batch",
    "AdaptiveFetchController",
    "InMemoryVectorStore",
    "rank_by_cosine",
    "NetworkXGraphStore",
    "KeywordStore",
    "SinkWriter",
    "WriterStats",
    "create_sink_store",
]
