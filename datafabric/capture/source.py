"""
Source-of-truth adapters

Two read paths into the relational system of record:
- CommitLogSource: committed row mutations in commit order (the CDC path)
- SourceSnapshotReader: current row state plus the log head it reflects
  (used by resync and reconciliation)

The SQL implementation reads a transactional-outbox ``change_log`` table
that applications write in the same transaction as the data change.
The in-memory implementation backs local runs and tests.
"""
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import MetaData, Table, func, select
from sqlalchemy.orm import Session, sessionmaker

from ..core.exceptions import ConfigurationError
from ..database.database import session_scope
from ..database.models import ChangeLogEntry, ChangeLogRetention
from ..events.models import ChangeEvent, Operation, format_record_id
from ..utils.logger import setup_logger

logger = setup_logger(__name__)


class CommitLogSource(ABC):
    """Read-only view of the source's commit log"""

    @abstractmethod
    def read(self, after_sequence: int, limit: int) -> List[ChangeEvent]:
        """Committed events with sequence > ``after_sequence``, in commit order"""
        pass

    @abstractmethod
    def head(self) -> int:
        """Highest committed sequence (0 when the log is empty)"""
        pass

    @abstractmethod
    def earliest_retained(self) -> Optional[int]:
        """Lowest sequence still available, or None when nothing is retained"""
        pass


class SourceSnapshotReader(ABC):
    """Reads current row state from the source of truth"""

    @abstractmethod
    def read_rows(self, table: str, key_columns: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """record_id -> current row for every row of ``table``"""
        pass

    @abstractmethod
    def read_row(self, table: str, key_columns: Sequence[str], key: Tuple[Any, ...]) -> Optional[Dict[str, Any]]:
        """Current row for one key, or None if it does not exist"""
        pass

    @abstractmethod
    def head(self) -> int:
        """Commit sequence the snapshot is at least as new as"""
        pass


def key_of(row: Dict[str, Any], key_columns: Sequence[str]) -> Tuple[Any, ...]:
    try:
        return tuple(row[c] for c in key_columns)
    except KeyError as e:
        raise ConfigurationError(f"Key column {e} missing from row") from e


# ============================================
# IN-MEMORY SOURCE
# ============================================

class SourceTransaction:
    """Buffered mutations; nothing is visible to readers until commit"""

    def __init__(self, database: "InMemorySourceDatabase"):
        self.database = database
        self.pending: List[Tuple[str, Operation, Tuple[Any, ...], Optional[Dict[str, Any]]]] = []

    def insert(self, table: str, row: Dict[str, Any]) -> None:
        key = key_of(row, self.database.key_columns(table))
        self.pending.append((table, Operation.INSERT, key, dict(row)))

    def update(self, table: str, key: Tuple[Any, ...], changes: Dict[str, Any]) -> None:
        self.pending.append((table, Operation.UPDATE, tuple(key), dict(changes)))

    def delete(self, table: str, key: Tuple[Any, ...]) -> None:
        self.pending.append((table, Operation.DELETE, tuple(key), None))


class InMemorySourceDatabase(CommitLogSource, SourceSnapshotReader):
    """
    A tiny relational source with a commit log

    Usage:
        db = InMemorySourceDatabase({"products": ["id"]})
        db.insert("products", {"id": "P1", "price": 10})
        with db.transaction() as tx:
            tx.update("products", ("P1",), {"price": 12})
    """

    def __init__(self, tables: Dict[str, List[str]]):
        self._key_columns = {name: list(cols) for name, cols in tables.items()}
        self._rows: Dict[str, Dict[Tuple[Any, ...], Dict[str, Any]]] = {name: {} for name in tables}
        self._log: List[ChangeEvent] = []
        self._sequence = 0
        self._retained_from = 1
        self._lock = threading.RLock()

    def key_columns(self, table: str) -> List[str]:
        if table not in self._key_columns:
            raise ConfigurationError(f"Unknown source table: {table}")
        return self._key_columns[table]

    @contextmanager
    def transaction(self) -> Iterator[SourceTransaction]:
        tx = SourceTransaction(self)
        yield tx
        self._commit(tx)

    def _commit(self, tx: SourceTransaction) -> List[ChangeEvent]:
        committed = []
        with self._lock:
            staged = {name: dict(rows) for name, rows in self._rows.items()}
            events = []
            for table, operation, key, payload in tx.pending:
                rows = staged.setdefault(table, {})
                before = rows.get(key)
                if operation == Operation.INSERT:
                    if before is not None:
                        raise ValueError(f"Duplicate key {key} in {table}")
                    after = payload
                elif operation == Operation.UPDATE:
                    if before is None:
                        raise KeyError(f"No row {key} in {table}")
                    after = {**before, **payload}
                else:
                    if before is None:
                        raise KeyError(f"No row {key} in {table}")
                    after = None
                if after is None:
                    rows.pop(key, None)
                else:
                    rows[key] = after
                events.append((table, operation, key, before, after))

            now = datetime.now(timezone.utc)
            for table, operation, key, before, after in events:
                self._sequence += 1
                committed.append(ChangeEvent(
                    source_table=table,
                    source_key=key,
                    operation=operation,
                    before=None if operation == Operation.INSERT else dict(before),
                    after=None if after is None else dict(after),
                    commit_sequence=self._sequence,
                    occurred_at=now,
                ))
            self._rows = staged
            self._log.extend(committed)
        return committed

    def insert(self, table: str, row: Dict[str, Any]) -> ChangeEvent:
        with self.transaction() as tx:
            tx.insert(table, row)
        return self._log[-1]

    def update(self, table: str, key: Tuple[Any, ...], changes: Dict[str, Any]) -> ChangeEvent:
        with self.transaction() as tx:
            tx.update(table, key, changes)
        return self._log[-1]

    def delete(self, table: str, key: Tuple[Any, ...]) -> ChangeEvent:
        with self.transaction() as tx:
            tx.delete(table, key)
        return self._log[-1]

    def purge_before(self, sequence: int) -> int:
        """Drop log entries below ``sequence`` (log retention)"""
        with self._lock:
            before = len(self._log)
            self._log = [e for e in self._log if e.commit_sequence >= sequence]
            self._retained_from = max(self._retained_from, sequence)
            return before - len(self._log)

    # CommitLogSource

    def read(self, after_sequence: int, limit: int) -> List[ChangeEvent]:
        with self._lock:
            return [e for e in self._log if e.commit_sequence > after_sequence][:limit]

    def head(self) -> int:
        with self._lock:
            return self._sequence

    def earliest_retained(self) -> Optional[int]:
        with self._lock:
            if self._sequence == 0:
                return None
            return self._retained_from

    # SourceSnapshotReader

    def read_rows(self, table: str, key_columns: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            rows = self._rows.get(table, {})
            return {format_record_id(table, key): dict(row) for key, row in rows.items()}

    def read_row(self, table: str, key_columns: Sequence[str], key: Tuple[Any, ...]) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._rows.get(table, {}).get(tuple(key))
            return dict(row) if row is not None else None


# ============================================
# SQL SOURCE (transactional outbox)
# ============================================

def record_change(
    session: Session,
    source_table: str,
    source_key: Sequence[Any],
    operation: Operation,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None
) -> ChangeLogEntry:
    """
    Append a change_log row inside the caller's transaction

    Call this in the same session/transaction as the data change so the log
    entry becomes visible exactly when the change commits.
    """
    entry = ChangeLogEntry(
        source_table=source_table,
        source_key=list(source_key),
        operation=operation.value,
        before=before,
        after=after,
        committed_at=datetime.now(timezone.utc),
    )
    session.add(entry)
    return entry


def _retention(session: Session) -> Optional[ChangeLogRetention]:
    return session.get(ChangeLogRetention, 1)


def _log_head(session: Session) -> int:
    """Highest sequence ever committed, including purged ones"""
    head = session.execute(select(func.max(ChangeLogEntry.sequence))).scalar() or 0
    retention = _retention(session)
    if retention is not None:
        head = max(head, retention.purged_head)
    return head


class SqlCommitLogSource(CommitLogSource):
    """Reads committed rows of the ``change_log`` table in sequence order"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def read(self, after_sequence: int, limit: int) -> List[ChangeEvent]:
        with session_scope(self.session_factory) as session:
            rows = session.execute(
                select(ChangeLogEntry)
                .where(ChangeLogEntry.sequence > after_sequence)
                .order_by(ChangeLogEntry.sequence)
                .limit(limit)
            ).scalars().all()
            return [self._to_event(row) for row in rows]

    @staticmethod
    def _to_event(row: ChangeLogEntry) -> ChangeEvent:
        operation = Operation(row.operation)
        return ChangeEvent(
            source_table=row.source_table,
            source_key=tuple(row.source_key),
            operation=operation,
            before=None if operation == Operation.INSERT else row.before,
            after=None if operation == Operation.DELETE else row.after,
            commit_sequence=row.sequence,
            occurred_at=row.committed_at,
        )

    def head(self) -> int:
        with session_scope(self.session_factory) as session:
            return _log_head(session)

    def earliest_retained(self) -> Optional[int]:
        with session_scope(self.session_factory) as session:
            retention = _retention(session)
            if retention is not None:
                return retention.retained_from
            return session.execute(select(func.min(ChangeLogEntry.sequence))).scalar()

    def purge_before(self, sequence: int) -> int:
        """
        Drop log entries below ``sequence`` (log retention)

        The retention row is updated in the same transaction, so readers see
        the new low-water mark exactly when the rows disappear.
        """
        with session_scope(self.session_factory) as session:
            head = _log_head(session)
            deleted = (
                session.query(ChangeLogEntry)
                .filter(ChangeLogEntry.sequence < sequence)
                .delete(synchronize_session=False)
            )
            retention = _retention(session)
            if retention is None:
                retention = ChangeLogRetention(id=1, retained_from=0, purged_head=0)
                session.add(retention)
            # never past the next sequence to be committed
            retention.retained_from = max(retention.retained_from, min(sequence, head + 1))
            retention.purged_head = max(retention.purged_head, min(sequence - 1, head))
        logger.info(f"[SqlCommitLog] Purged {deleted} change_log rows below {sequence}")
        return deleted


class SqlSnapshotReader(SourceSnapshotReader):
    """Reads current table contents through SQLAlchemy reflection"""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._lock = threading.Lock()

    def _table(self, name: str) -> Table:
        with self._lock:
            table = self._tables.get(name)
            if table is None:
                table = Table(name, self._metadata, autoload_with=self.session_factory.kw["bind"])
                self._tables[name] = table
            return table

    def read_rows(self, table: str, key_columns: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        reflected = self._table(table)
        with session_scope(self.session_factory) as session:
            rows = session.execute(select(reflected)).mappings().all()
            return {
                format_record_id(table, key_of(dict(row), key_columns)): dict(row)
                for row in rows
            }

    def read_row(self, table: str, key_columns: Sequence[str], key: Tuple[Any, ...]) -> Optional[Dict[str, Any]]:
        reflected = self._table(table)
        query = select(reflected)
        for column, value in zip(key_columns, key):
            query = query.where(reflected.c[column] == value)
        with session_scope(self.session_factory) as session:
            row = session.execute(query).mappings().first()
            return dict(row) if row is not None else None

    def head(self) -> int:
        with session_scope(self.session_factory) as session:
            return _log_head(session)
