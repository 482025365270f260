"""
Transform / enrichment: projections, graph mapping, embeddings, artifact cache
"""
from .projection import normalize_row, project_fields, project_text
from .graph_mapping import map_event, node_label, is_join_table
from .embedding import (
    EmbeddingProvider,
    HashingEmbedder,
    SentenceTransformerEmbedder,
    create_embedding_provider,
)
from .cache import ArtifactCache
from .enrichment import TransformStage

__all__ = [
    "normalize_row",
    "project_fields",
    "project_text",
    "map_event",
    "node_label",
    "is_join_table",
    "EmbeddingProvider",
    "HashingEmbedder",
    "SentenceTransformerEmbedder",
    "create_embedding_provider",
    "ArtifactCache",
    "TransformStage",
]
