"""
Wire codec for change events

Logical wire schema:
    {sourceTable, sourceKey, operation, before, after, commitSequence, occurredAt}

Also decodes Debezium envelopes (``op`` = c/u/d/r) so a Debezium connector
can feed the fabric directly.
"""
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from ..core.exceptions import MalformedEventError
from .models import ChangeEvent, DeadLetter, EnrichedEvent, Operation

RawPayload = Union[bytes, str, Mapping[str, Any]]

DEBEZIUM_OPERATIONS = {
    "c": Operation.INSERT,
    "r": Operation.INSERT,  # snapshot read
    "u": Operation.UPDATE,
    "d": Operation.DELETE,
}


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, bytes):
        return value.hex()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def dumps(obj: Any) -> bytes:
    """Compact, key-sorted JSON"""
    return json.dumps(obj, default=_json_default, sort_keys=True, separators=(",", ":")).encode("utf-8")


def _load(raw: RawPayload) -> Dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise MalformedEventError(f"Payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise MalformedEventError("Payload must be a JSON object")
    return data


# ============================================
# CHANGE EVENTS
# ============================================

def event_to_wire(event: ChangeEvent) -> Dict[str, Any]:
    """ChangeEvent -> logical wire dict"""
    return {
        "sourceTable": event.source_table,
        "sourceKey": list(event.source_key),
        "operation": event.operation.value,
        "before": event.before,
        "after": event.after,
        "commitSequence": event.commit_sequence,
        "occurredAt": event.occurred_at.isoformat(),
        "snapshot": event.snapshot,
    }


def encode_event(event: ChangeEvent) -> bytes:
    return dumps(event_to_wire(event))


def decode_event(raw: RawPayload, key_columns: Optional[Mapping[str, List[str]]] = None) -> ChangeEvent:
    """
    Decode a change event from the logical wire schema or a Debezium envelope

    Args:
        raw: bytes, str or already-parsed dict
        key_columns: table -> key column names, required for Debezium payloads

    Raises:
        MalformedEventError: if the payload cannot be decoded
    """
    data = _load(raw)
    if is_debezium_envelope(data):
        return decode_debezium(data, key_columns or {})

    missing = [f for f in ("sourceTable", "sourceKey", "operation", "commitSequence") if f not in data]
    if missing:
        raise MalformedEventError(f"Change event missing fields: {', '.join(missing)}")

    try:
        return ChangeEvent(
            source_table=data["sourceTable"],
            source_key=data["sourceKey"],
            operation=Operation(data["operation"]),
            before=data.get("before"),
            after=data.get("after"),
            commit_sequence=data["commitSequence"],
            occurred_at=data.get("occurredAt") or datetime.now(timezone.utc),
            snapshot=bool(data.get("snapshot", False)),
        )
    except (ValidationError, ValueError) as e:
        raise MalformedEventError(f"Invalid change event: {e}") from e


# ============================================
# DEBEZIUM ENVELOPES
# ============================================

def is_debezium_envelope(data: Mapping[str, Any]) -> bool:
    body = data.get("payload", data)
    return isinstance(body, Mapping) and "op" in body and "source" in body


def _debezium_sequence(source: Mapping[str, Any]) -> int:
    """
    Extract a monotonically increasing commit sequence from ``source``

    Postgres exposes an integer ``lsn``; SQL Server exposes hex
    ``commit_lsn``/``change_lsn`` strings such as ``0000002b:000003a8:0001``.
    """
    lsn = source.get("lsn")
    if isinstance(lsn, int):
        return lsn
    for field_name in ("commit_lsn", "change_lsn"):
        value = source.get(field_name)
        if isinstance(value, str) and value:
            try:
                return int(value.replace(":", ""), 16)
            except ValueError as e:
                raise MalformedEventError(f"Unparseable {field_name}: {value}") from e
    raise MalformedEventError("Debezium event carries no commit sequence (lsn/commit_lsn)")


def decode_debezium(data: Mapping[str, Any], key_columns: Mapping[str, List[str]]) -> ChangeEvent:
    body = data.get("payload", data)
    op = body.get("op")
    if op not in DEBEZIUM_OPERATIONS:
        raise MalformedEventError(f"Unsupported Debezium operation: {op!r}")

    source = body.get("source") or {}
    table = source.get("table")
    if not table:
        raise MalformedEventError("Debezium event has no source.table")

    columns = key_columns.get(table)
    if not columns:
        raise MalformedEventError(f"No key columns configured for table {table!r}")

    before = body.get("before")
    after = body.get("after")
    image = after if after is not None else before
    if image is None:
        raise MalformedEventError("Debezium event has neither before nor after image")

    try:
        key = tuple(image[c] for c in columns)
    except KeyError as e:
        raise MalformedEventError(f"Key column {e} missing from row image of {table!r}") from e

    ts_ms = source.get("ts_ms") or body.get("ts_ms")
    occurred_at = (
        datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
        if ts_ms is not None else datetime.now(timezone.utc)
    )

    operation = DEBEZIUM_OPERATIONS[op]
    try:
        return ChangeEvent(
            source_table=table,
            source_key=key,
            operation=operation,
            before=None if operation == Operation.INSERT else before,
            after=None if operation == Operation.DELETE else after,
            commit_sequence=_debezium_sequence(source),
            occurred_at=occurred_at,
            snapshot=(op == "r"),
        )
    except ValidationError as e:
        raise MalformedEventError(f"Invalid Debezium event: {e}") from e


# ============================================
# ENRICHED EVENTS / DEAD LETTERS
# ============================================

def encode_enriched(event: EnrichedEvent) -> bytes:
    return event.model_dump_json().encode("utf-8")


def decode_enriched(raw: RawPayload) -> EnrichedEvent:
    try:
        if isinstance(raw, Mapping):
            return EnrichedEvent.model_validate(raw)
        return EnrichedEvent.model_validate_json(raw)
    except ValidationError as e:
        raise MalformedEventError(f"Invalid enriched event: {e}") from e


def encode_dead_letter(letter: DeadLetter) -> bytes:
    return letter.model_dump_json().encode("utf-8")


def decode_dead_letter(raw: RawPayload) -> DeadLetter:
    if isinstance(raw, Mapping):
        return DeadLetter.model_validate(raw)
    return DeadLetter.model_validate_json(raw)


def raw_payload_dict(raw: RawPayload) -> Dict[str, Any]:
    """Best-effort dict view of a payload for dead-lettering"""
    try:
        return _load(raw)
    except MalformedEventError:
        text = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
        return {"raw": text}
