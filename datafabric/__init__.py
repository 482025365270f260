"""
datafabric - keeps a relational source of truth in sync with vector, graph
and keyword indexes, and answers hybrid queries across them with
Reciprocal Rank Fusion.
"""
from .pipeline.orchestrator import DataFabric
from .utils.config import Config, load_config

__version__ = "0.1.0"

__all__ = ["DataFabric", "Config", "load_config", "__version__"]
