"""
Text helpers shared by the embedders, the keyword index and graph seeding
"""
import re
from typing import Any, Dict, Iterable, List, Optional

STOPWORDS = {
    'the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for',
    'of', 'with', 'by', 'from', 'is', 'are', 'was', 'were', 'be', 'been',
    'have', 'has', 'had', 'do', 'does', 'did', 'will', 'would', 'should',
    'could', 'may', 'might', 'must', 'can', 'this', 'that', 'these', 'those'
}


def tokenize(text: str) -> List[str]:
    """
    Tokenize text for BM25 indexing, hashing embeddings and term matching.

    Simple tokenization:
    - Lowercase
    - Split on non-alphanumeric
    - Remove stopwords and single characters
    """
    tokens = re.findall(r'\b\w+\b', (text or "").lower())
    return [t for t in tokens if t not in STOPWORDS and len(t) > 1]


def row_text(row: Dict[str, Any], columns: Optional[Iterable[str]]) -> str:
    """Join the text columns of a row (all string columns when none are configured)"""
    if columns:
        values = [row.get(c) for c in columns]
    else:
        values = [v for v in row.values() if isinstance(v, str)]
    return " ".join(str(v) for v in values if v is not None and v != "")
