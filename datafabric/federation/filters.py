"""
Structured filter language

A filter maps field names to either a literal (equality), a list
(membership) or an operator mapping:

    {"category": "books",
     "status": ["active", "pending"],
     "price": {"gte": 10, "lt": 100}}

Filters compile to a predicate over a record's projected fields and are
evaluated inside every retriever before top-k truncation. A record missing
the field, or holding a value of an incomparable type, does not match.
"""
import operator
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.exceptions import InvalidQuery
from ..sinks.base import RecordFilter

_COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "eq": operator.eq,
    "ne": operator.ne,
    "gt": operator.gt,
    "gte": operator.ge,
    "lt": operator.lt,
    "lte": operator.le,
}

OPERATORS = frozenset(list(_COMPARATORS) + ["in"])

_MISSING = object()


def _clause(field: str, op: str, expected: Any) -> Callable[[Dict[str, Any]], bool]:
    if op == "in":
        if not isinstance(expected, (list, tuple, set)):
            raise InvalidQuery(f"Filter '{field}': 'in' expects a list", {"field": field})
        choices = list(expected)

        def _in(fields: Dict[str, Any]) -> bool:
            return fields.get(field, _MISSING) in choices
        return _in

    compare = _COMPARATORS[op]

    def _compare(fields: Dict[str, Any]) -> bool:
        actual = fields.get(field, _MISSING)
        if actual is _MISSING:
            return False
        try:
            return bool(compare(actual, expected))
        except TypeError:
            return False
    return _compare


def parse_filters(filters: Optional[Dict[str, Any]]) -> List[Tuple[str, str, Any]]:
    """Normalize a filter mapping to (field, operator, value) clauses"""
    clauses: List[Tuple[str, str, Any]] = []
    for field, condition in (filters or {}).items():
        if not isinstance(field, str) or not field:
            raise InvalidQuery("Filter field names must be non-empty strings")
        if isinstance(condition, dict):
            if not condition:
                raise InvalidQuery(f"Filter '{field}' has no operators", {"field": field})
            for op, value in condition.items():
                if op not in OPERATORS:
                    raise InvalidQuery(
                        f"Filter '{field}': unsupported operator '{op}'",
                        {"field": field, "supported": sorted(OPERATORS)}
                    )
                clauses.append((field, op, value))
        elif isinstance(condition, list):
            clauses.append((field, "in", condition))
        else:
            clauses.append((field, "eq", condition))
    return clauses


def compile_filters(filters: Optional[Dict[str, Any]]) -> Optional[RecordFilter]:
    """
    Compile a filter mapping into a record predicate (None when empty)

    Raises:
        InvalidQuery: unknown operator or malformed clause
    """
    checks = [_clause(field, op, value) for field, op, value in parse_filters(filters)]
    if not checks:
        return None

    def predicate(fields: Dict[str, Any]) -> bool:
        return all(check(fields) for check in checks)
    return predicate
