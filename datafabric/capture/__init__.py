"""
Change capture: commit log sources, checkpoints, the capture reader and resync
"""
from .source import (
    CommitLogSource,
    SourceSnapshotReader,
    InMemorySourceDatabase,
    SqlCommitLogSource,
    SqlSnapshotReader,
    record_change,
)
from .checkpoints import CheckpointStore, InMemoryCheckpointStore, SqlCheckpointStore
from .reader import ChangeCaptureReader
from .resync import SnapshotResync, snapshot_upsert, snapshot_delete

__all__ = [
    "CommitLogSource",
    "SourceSnapshotReader",
    "InMemorySourceDatabase",
    "SqlCommitLogSource",
    "SqlSnapshotReader",
    "record_change",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SqlCheckpointStore",
    "ChangeCaptureReader",
    "SnapshotResync",
    "snapshot_upsert",
    "snapshot_delete",
]
