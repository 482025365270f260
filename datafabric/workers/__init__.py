"""
Partition workers
"""
from .partition_worker import PartitionWorker

__all__ = ["PartitionWorker"]
