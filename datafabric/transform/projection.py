"""
Row projection

The canonical field set a sink stores for a row. The transform stage and
the reconciliation monitor both project through here, so a sink record and
the source row it came from hash identically when in sync.
"""
import json
from typing import Any, Dict

from ..events.codec import dumps
from ..utils.config import TableConfig
from ..utils.text import row_text


def normalize_row(row: Dict[str, Any]) -> Dict[str, Any]:
    """JSON-normalize values (datetimes to ISO strings, decimals to floats)"""
    return json.loads(dumps(row))


def project_fields(row: Dict[str, Any], table: TableConfig) -> Dict[str, Any]:
    """Metadata columns of ``row`` (all columns when none are configured)"""
    if table.metadata_columns is None:
        selected = dict(row)
    else:
        selected = {c: row.get(c) for c in table.metadata_columns}
    return normalize_row(selected)


def project_text(row: Dict[str, Any], table: TableConfig) -> str:
    return row_text(row, table.text_columns)
