"""
Change events, wire codec, event log clients and the dead-letter channel
"""
from .models import (
    Operation,
    SinkKind,
    GraphMutationKind,
    GraphMutation,
    ChangeEvent,
    EnrichedEvent,
    DeadLetter,
    SinkRecord,
    format_record_id,
    parse_record_id,
)
from .codec import (
    encode_event,
    decode_event,
    encode_enriched,
    decode_enriched,
    event_to_wire,
)
from .event_log import EventLog, InMemoryEventLog, LogRecord, partition_for, create_event_log
from .dead_letter import DeadLetterChannel, SqlDeadLetterStore

__all__ = [
    "Operation",
    "SinkKind",
    "GraphMutationKind",
    "GraphMutation",
    "ChangeEvent",
    "EnrichedEvent",
    "DeadLetter",
    "SinkRecord",
    "format_record_id",
    "parse_record_id",
    "encode_event",
    "decode_event",
    "encode_enriched",
    "decode_enriched",
    "event_to_wire",
    "EventLog",
    "InMemoryEventLog",
    "LogRecord",
    "partition_for",
    "create_event_log",
    "DeadLetterChannel",
    "SqlDeadLetterStore",
]
