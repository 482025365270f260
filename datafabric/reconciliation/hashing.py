"""
Content hashing for reconciliation
"""
import hashlib
from typing import Any, Dict, Mapping

from ..events.codec import dumps


def content_hash(fields: Mapping[str, Any]) -> str:
    """Canonical sha256 of a record's projected fields (key-sorted JSON)"""
    return hashlib.sha256(dumps(dict(fields))).hexdigest()


def key_range_hash(hashes: Dict[str, str]) -> str:
    """Order-independent digest of a set of (record_id, content hash) pairs"""
    digest = hashlib.sha256()
    for record_id in sorted(hashes):
        digest.update(record_id.encode("utf-8"))
        digest.update(b"=")
        digest.update(hashes[record_id].encode("ascii"))
        digest.update(b"\n")
    return digest.hexdigest()
