"""
Reciprocal Rank Fusion

score(d) = sum over lists i of 1 / (k + rank_i(d)), rank 1-based.
Documents absent from a list contribute nothing for it. The merged ranking
sorts by descending score, then by the lowest rank the document reached in
any list, then by document key, so equal inputs always give equal output
regardless of the order in which the lists arrived.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence

RRF_K = 60  # standard RRF constant


@dataclass
class FusedDocument:
    document_key: str
    score: float = 0.0
    ranks: Dict[str, int] = field(default_factory=dict)

    @property
    def min_rank(self) -> int:
        return min(self.ranks.values())

    @property
    def contributing_sources(self) -> List[str]:
        return sorted(self.ranks)


def reciprocal_rank_fusion(
    ranked_lists: Mapping[str, Sequence[str]],
    k: int = RRF_K,
    top_n: Optional[int] = None
) -> List[FusedDocument]:
    """
    Fuse ranked lists of document keys

    Args:
        ranked_lists: source name -> document keys, best first
        k: RRF constant
        top_n: truncate the merged ranking (None keeps everything)

    Example:
        >>> fused = reciprocal_rank_fusion({"vector": ["A", "B", "C"], "graph": ["B", "D"], "keyword": []})
        >>> [d.document_key for d in fused]
        ['B', 'A', 'D', 'C']
    """
    if k < 0:
        raise ValueError("RRF constant k must be non-negative")
    fused: Dict[str, FusedDocument] = {}
    # iterate sources in name order so float accumulation is order independent
    for source in sorted(ranked_lists):
        for rank, key in enumerate(ranked_lists[source], start=1):
            doc = fused.setdefault(key, FusedDocument(document_key=key))
            if source in doc.ranks:
                # a key repeated within one list keeps its best rank
                continue
            doc.ranks[source] = rank
            doc.score += 1.0 / (k + rank)

    merged = sorted(fused.values(), key=lambda d: (-d.score, d.min_rank, d.document_key))
    if top_n is not None:
        merged = merged[:top_n]
    return merged
