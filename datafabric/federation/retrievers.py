"""
Sub-query retrievers

One retriever per target store. ``retrieve`` is a blocking call run in a
worker thread by the federation service; it returns document keys best
first, with the structured filter already applied inside the store.
"""
from abc import ABC, abstractmethod
from typing import List, Optional

from ..events.models import SinkKind
from ..sinks.base import RecordFilter
from ..transform.embedding import EmbeddingProvider
from ..utils.text import tokenize
from .models import FederatedQuery


class Retriever(ABC):
    """Abstract sub-query against one store"""

    source: SinkKind

    @property
    def name(self) -> str:
        return self.source.value

    @abstractmethod
    def accepts(self, query: FederatedQuery) -> bool:
        """Whether a sub-query can be derived from ``query``"""
        pass

    @abstractmethod
    def retrieve(self, query: FederatedQuery, predicate: Optional[RecordFilter] = None) -> List[str]:
        pass

    def ping(self) -> bool:
        return self.store.ping()


class KeywordRetriever(Retriever):
    """BM25 keyword filter"""

    source = SinkKind.KEYWORD

    def __init__(self, store):
        self.store = store

    def accepts(self, query: FederatedQuery) -> bool:
        return bool(tokenize(query.query_text))

    def retrieve(self, query, predicate=None) -> List[str]:
        hits = self.store.search(
            query.query_text,
            k=query.top_k,
            predicate=predicate,
            consistency=query.consistency.value,
        )
        return [record_id for record_id, _ in hits]


class VectorRetriever(Retriever):
    """Query text -> embedding -> nearest neighbours"""

    source = SinkKind.VECTOR

    def __init__(self, store, embedder: EmbeddingProvider):
        self.store = store
        self.embedder = embedder

    def accepts(self, query: FederatedQuery) -> bool:
        return bool(query.query_text.strip())

    def retrieve(self, query, predicate=None) -> List[str]:
        embedding = self.embedder.encode_query(query.query_text)
        hits = self.store.search(
            embedding,
            k=query.top_k,
            predicate=predicate,
            consistency=query.consistency.value,
        )
        return [record_id for record_id, _ in hits]


class GraphRetriever(Retriever):
    """Pattern traversal seeded by the query terms, bounded by a hop limit"""

    source = SinkKind.GRAPH

    def __init__(self, store, default_hop_limit: int = 2):
        self.store = store
        self.default_hop_limit = default_hop_limit

    def accepts(self, query: FederatedQuery) -> bool:
        return bool(tokenize(query.query_text))

    def retrieve(self, query, predicate=None) -> List[str]:
        hop_limit = query.hop_limit if query.hop_limit is not None else self.default_hop_limit
        hits = self.store.traverse(
            tokenize(query.query_text),
            hop_limit=hop_limit,
            k=query.top_k,
            predicate=predicate,
            consistency=query.consistency.value,
        )
        return [record_id for record_id, _ in hits]
