"""
Reciprocal Rank Fusion tests
"""
import pytest

from datafabric.federation.rrf import RRF_K, reciprocal_rank_fusion


def keys(fused):
    return [d.document_key for d in fused]


class TestReciprocalRankFusion:
    """Test score arithmetic and deterministic ordering"""

    def test_three_list_example(self):
        fused = reciprocal_rank_fusion({"vector": ["A", "B", "C"], "graph": ["B", "D"], "keyword": []})

        assert keys(fused) == ["B", "A", "D", "C"]
        scores = {d.document_key: d.score for d in fused}
        assert scores["B"] == pytest.approx(1 / 62 + 1 / 61)
        assert scores["A"] == pytest.approx(1 / 61)
        assert scores["D"] == pytest.approx(1 / 62)
        assert scores["C"] == pytest.approx(1 / 63)

    def test_contributing_sources_and_ranks(self):
        fused = reciprocal_rank_fusion({"vector": ["A", "B"], "graph": ["B"]})
        b = fused[0]
        assert b.document_key == "B"
        assert b.contributing_sources == ["graph", "vector"]
        assert b.ranks == {"vector": 2, "graph": 1}

    def test_list_arrival_order_does_not_matter(self):
        lists = {"vector": ["A", "B", "C"], "graph": ["C", "A"], "keyword": ["B", "D"]}
        reordered = {"keyword": ["B", "D"], "vector": ["A", "B", "C"], "graph": ["C", "A"]}
        first = reciprocal_rank_fusion(lists)
        second = reciprocal_rank_fusion(reordered)
        assert keys(first) == keys(second)
        assert [d.score for d in first] == [d.score for d in second]

    def test_ties_break_on_best_rank_then_key(self):
        # equal scores and equal best rank: key order decides
        assert keys(reciprocal_rank_fusion({"x": ["B", "A"], "y": ["A", "B"]})) == ["A", "B"]
        # all score 1.0 with k=0; A never reached rank 1, so it comes last
        fused = reciprocal_rank_fusion({"x": ["Z", "A"], "y": ["Q", "A"]}, k=0)
        assert [d.score for d in fused] == [1.0, 1.0, 1.0]
        assert keys(fused) == ["Q", "Z", "A"]

    def test_equal_inputs_equal_outputs(self):
        lists = {"vector": ["A", "B"], "keyword": ["B", "A"]}
        assert keys(reciprocal_rank_fusion(lists)) == keys(reciprocal_rank_fusion(dict(lists)))

    def test_repeated_key_keeps_best_rank(self):
        fused = reciprocal_rank_fusion({"vector": ["A", "B", "A"]})
        a = next(d for d in fused if d.document_key == "A")
        assert a.ranks == {"vector": 1}
        assert a.score == pytest.approx(1 / 61)

    def test_top_n_truncates(self):
        fused = reciprocal_rank_fusion({"vector": ["A", "B", "C", "D"]}, top_n=2)
        assert keys(fused) == ["A", "B"]

    def test_empty_input(self):
        assert reciprocal_rank_fusion({}) == []
        assert reciprocal_rank_fusion({"vector": [], "graph": []}) == []

    def test_negative_k_rejected(self):
        with pytest.raises(ValueError):
            reciprocal_rank_fusion({"vector": ["A"]}, k=-1)

    def test_default_constant(self):
        assert RRF_K == 60
        assert reciprocal_rank_fusion({"v": ["A"]})[0].score == pytest.approx(1 / 61)

    def test_improving_a_rank_never_lowers_the_score(self):
        worse = reciprocal_rank_fusion({"vector": ["A", "B", "C"], "graph": ["C", "B"]})
        better = reciprocal_rank_fusion({"vector": ["A", "B", "C"], "graph": ["B", "C"]})
        score = lambda fused, key: next(d.score for d in fused if d.document_key == key)
        assert score(better, "B") >= score(worse, "B")

    def test_k_zero(self):
        fused = reciprocal_rank_fusion({"vector": ["A", "B"]}, k=0)
        assert [d.score for d in fused] == [1.0, 0.5]
