"""
Capture checkpoint stores

A checkpoint is the last commit sequence whose event was published and
acknowledged. Everything above it is re-read on restart.
"""
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict

from sqlalchemy.orm import sessionmaker

from ..database.database import session_scope
from ..database.models import CaptureCheckpoint


class CheckpointStore(ABC):
    """Abstract checkpoint persistence"""

    @abstractmethod
    def load(self, name: str) -> int:
        """Last acknowledged sequence for ``name`` (0 = from the beginning)"""
        pass

    @abstractmethod
    def save(self, name: str, sequence: int) -> None:
        pass


class InMemoryCheckpointStore(CheckpointStore):

    def __init__(self):
        self._checkpoints: Dict[str, int] = {}
        self._lock = threading.Lock()

    def load(self, name: str) -> int:
        with self._lock:
            return self._checkpoints.get(name, 0)

    def save(self, name: str, sequence: int) -> None:
        with self._lock:
            self._checkpoints[name] = sequence


class SqlCheckpointStore(CheckpointStore):
    """Checkpoints in the ``capture_checkpoints`` table"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def load(self, name: str) -> int:
        with session_scope(self.session_factory) as session:
            row = session.get(CaptureCheckpoint, name)
            return row.sequence if row is not None else 0

    def save(self, name: str, sequence: int) -> None:
        with session_scope(self.session_factory) as session:
            row = session.get(CaptureCheckpoint, name)
            if row is None:
                session.add(CaptureCheckpoint(name=name, sequence=sequence))
            else:
                row.sequence = sequence
                row.updated_at = datetime.now(timezone.utc)
