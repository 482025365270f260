"""
Structured filter tests
"""
import pytest

from datafabric.core.exceptions import InvalidQuery
from datafabric.federation.filters import compile_filters, parse_filters


PRODUCT = {"name": "Wireless Headphones", "category": "audio", "price": 199.0, "stock": None}


class TestParseFilters:
    """Test normalization to clauses"""

    def test_literal_list_and_operators(self):
        clauses = parse_filters({"category": "audio", "status": ["a", "b"], "price": {"gte": 10, "lt": 100}})
        assert clauses == [
            ("category", "eq", "audio"),
            ("status", "in", ["a", "b"]),
            ("price", "gte", 10),
            ("price", "lt", 100),
        ]

    def test_unknown_operator(self):
        with pytest.raises(InvalidQuery, match="unsupported operator"):
            parse_filters({"price": {"between": [1, 2]}})

    def test_empty_operator_mapping(self):
        with pytest.raises(InvalidQuery):
            parse_filters({"price": {}})

    def test_empty_field_name(self):
        with pytest.raises(InvalidQuery):
            parse_filters({"": 1})


class TestCompileFilters:
    """Test predicates over projected fields"""

    def test_no_filters_means_no_predicate(self):
        assert compile_filters(None) is None
        assert compile_filters({}) is None

    def test_equality(self):
        assert compile_filters({"category": "audio"})(PRODUCT)
        assert not compile_filters({"category": "books"})(PRODUCT)

    def test_membership(self):
        assert compile_filters({"category": ["audio", "books"]})(PRODUCT)
        assert compile_filters({"category": {"in": ["audio"]}})(PRODUCT)
        assert not compile_filters({"category": {"in": ["books"]}})(PRODUCT)

    def test_in_requires_a_list(self):
        with pytest.raises(InvalidQuery):
            compile_filters({"category": {"in": "audio"}})

    def test_ranges_are_conjunctive(self):
        assert compile_filters({"price": {"gte": 100, "lte": 199}})(PRODUCT)
        assert not compile_filters({"price": {"gt": 100, "lt": 150}})(PRODUCT)
        assert compile_filters({"price": {"ne": 10}})(PRODUCT)

    def test_missing_field_does_not_match(self):
        assert not compile_filters({"color": "black"})(PRODUCT)
        assert not compile_filters({"color": {"ne": "black"}})(PRODUCT)

    def test_incomparable_types_do_not_match(self):
        assert not compile_filters({"price": {"gt": "cheap"}})(PRODUCT)
        assert not compile_filters({"stock": {"gte": 1}})(PRODUCT)

    def test_all_clauses_must_hold(self):
        predicate = compile_filters({"category": "audio", "price": {"lt": 100}})
        assert not predicate(PRODUCT)
        assert predicate({**PRODUCT, "price": 89.0})
