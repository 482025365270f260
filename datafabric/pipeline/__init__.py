"""
Pipeline orchestration
"""
from .orchestrator import DataFabric

__all__ = ["DataFabric"]
