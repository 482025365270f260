"""
Dead-letter channel

Side destination for events that cannot be processed. Routing an event here
keeps its partition moving; operators inspect and replay from the channel.
"""
import threading
from collections import Counter
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from ..core.exceptions import ErrorKind, classify_exception
from ..database.database import session_scope
from ..database.models import DeadLetterRecord
from ..utils.logger import setup_logger
from .codec import encode_dead_letter, event_to_wire
from .event_log import EventLog
from .models import ChangeEvent, DeadLetter

logger = setup_logger(__name__)


class SqlDeadLetterStore:
    """Persists dead letters in the ``dead_letters`` table"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def save(self, letter: DeadLetter) -> None:
        with session_scope(self.session_factory) as session:
            session.add(DeadLetterRecord(
                id=letter.dead_letter_id,
                stage=letter.stage,
                reason=letter.reason,
                error_kind=letter.error_kind,
                attempts=letter.attempts,
                record_id=letter.record_id,
                commit_sequence=letter.commit_sequence,
                payload=letter.payload,
                failed_at=letter.failed_at,
            ))

    def list_unresolved(self, limit: int = 100) -> List[DeadLetter]:
        with session_scope(self.session_factory) as session:
            rows = (
                session.query(DeadLetterRecord)
                .filter(DeadLetterRecord.resolved.is_(False))
                .order_by(DeadLetterRecord.failed_at)
                .limit(limit)
                .all()
            )
            return [
                DeadLetter(
                    dead_letter_id=row.id,
                    stage=row.stage,
                    reason=row.reason,
                    error_kind=row.error_kind,
                    attempts=row.attempts,
                    record_id=row.record_id,
                    commit_sequence=row.commit_sequence,
                    payload=row.payload,
                    failed_at=row.failed_at,
                )
                for row in rows
            ]

    def mark_resolved(self, dead_letter_id: str) -> bool:
        with session_scope(self.session_factory) as session:
            row = session.get(DeadLetterRecord, dead_letter_id)
            if row is None:
                return False
            row.resolved = True
            return True


class DeadLetterChannel:
    """
    Publishes dead letters to the dead-letter topic

    Usage:
        channel = DeadLetterChannel(event_log, "fabric.dead-letter")
        await channel.send_event("transform", event, error, attempts=3)
    """

    def __init__(
        self,
        event_log: EventLog,
        topic: str,
        store: Optional[SqlDeadLetterStore] = None,
        keep_recent: int = 500
    ):
        self.event_log = event_log
        self.topic = topic
        self.store = store
        self.keep_recent = keep_recent
        self._recent: List[DeadLetter] = []
        self._counts: Counter = Counter()
        self._lock = threading.Lock()

    async def send(self, letter: DeadLetter) -> DeadLetter:
        key = letter.record_id or letter.stage
        await self.event_log.publish(self.topic, key, encode_dead_letter(letter))
        if self.store is not None:
            self.store.save(letter)
        with self._lock:
            self._counts[letter.stage] += 1
            self._recent.append(letter)
            if len(self._recent) > self.keep_recent:
                self._recent.pop(0)
        logger.warning(
            f"[DeadLetter] {letter.stage}: {letter.reason}",
            record_id=letter.record_id,
            commit_sequence=letter.commit_sequence,
            attempts=letter.attempts
        )
        return letter

    async def send_event(
        self,
        stage: str,
        event: ChangeEvent,
        error: BaseException,
        attempts: int = 1
    ) -> DeadLetter:
        """Dead-letter the original ChangeEvent tagged with the failure reason"""
        kind = classify_exception(error)
        return await self.send(DeadLetter(
            stage=stage,
            reason=str(error) or error.__class__.__name__,
            error_kind=kind.value,
            attempts=attempts,
            record_id=event.record_id,
            commit_sequence=event.commit_sequence,
            payload=event_to_wire(event),
        ))

    async def send_raw(
        self,
        stage: str,
        payload: Dict[str, Any],
        error: BaseException,
        record_id: Optional[str] = None
    ) -> DeadLetter:
        """Dead-letter a payload that could not even be decoded"""
        return await self.send(DeadLetter(
            stage=stage,
            reason=str(error) or error.__class__.__name__,
            error_kind=ErrorKind.PERMANENT_RECORD.value,
            record_id=record_id,
            payload=payload,
        ))

    def recent(self) -> List[DeadLetter]:
        with self._lock:
            return list(self._recent)

    def counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._counts)
