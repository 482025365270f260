"""
API Routers - Modular organization of API endpoints
"""
from . import health, query, reconciliation, operations

__all__ = ["health", "query", "reconciliation", "operations"]
