"""Tests for treatment flattening, matching and price filtering."""

from __future__ import annotations

import pytest

from clinic_assistant.engine.resolver import (
    display_name,
    extract_price_limit,
    filter_under_price,
    find_specific,
    flatten,
    is_specific_cost_query,
    normalize,
    parse_doctor_ids,
    priced,
    search,
    strip_filler,
    treatments_for_doctor,
)
from clinic_assistant.models import TreatmentNode


def _node(node_id: int, name: str, price: str = "", children=None) -> TreatmentNode:
    return TreatmentNode(id=node_id, t_name=name, name=name, price=price, children=children or [])


def _count(nodes) -> int:
    return sum(1 + _count(n.children) for n in nodes)


# ── flatten ──────────────────────────────────────────────────────────


class TestFlatten:
    def test_count_matches_recursive_count(self, treatments):
        assert len(flatten(treatments)) == _count(treatments) == 7

    def test_pre_order(self, treatments):
        assert [n.id for n in flatten(treatments)] == [1, 11, 12, 2, 21, 22, 3]

    def test_empty_forest(self):
        assert flatten([]) == []

    def test_deep_chain_does_not_recurse(self):
        root = _node(0, "root")
        current = root
        for i in range(1, 5000):
            child = _node(i, f"n{i}")
            current.children = [child]
            current = child
        assert len(flatten([root], max_depth=10_000)) == 5000

    def test_depth_guard_truncates(self):
        leaf = _node(3, "leaf")
        mid = _node(2, "mid", children=[leaf])
        root = _node(1, "root", children=[mid])
        assert [n.id for n in flatten([root], max_depth=1)] == [1, 2]

    def test_cycle_is_visited_once(self):
        a = _node(1, "a")
        b = _node(2, "b", children=[a])
        a.children = [b]
        assert [n.id for n in flatten([a])] == [1, 2]

    def test_shared_subtree_emitted_once(self):
        shared = _node(9, "shared")
        roots = [_node(1, "x", children=[shared]), _node(2, "y", children=[shared])]
        assert [n.id for n in flatten(roots)] == [1, 9, 2]


# ── normalize ────────────────────────────────────────────────────────


class TestNormalize:
    def test_collapses_punctuation_and_spaces(self):
        assert normalize("  Laser   HAIR!! ") == "laser hair"

    @pytest.mark.parametrize("text", ["  Laser   HAIR!! ", "Botox®  (T)", "", "already normal"])
    def test_idempotent(self, text):
        assert normalize(normalize(text)) == normalize(text)

    def test_none_is_empty(self):
        assert normalize(None) == ""

    def test_strip_filler(self):
        assert strip_filler("What is the cost of Botox?") == "botox"


# ── doctor ids ───────────────────────────────────────────────────────


class TestParseDoctorIds:
    def test_json_string(self):
        assert parse_doctor_ids("[1,2,3]") == [1, 2, 3]

    def test_native_list(self):
        assert parse_doctor_ids([1, 2, 3]) == [1, 2, 3]

    def test_malformed_string(self):
        assert parse_doctor_ids("not-json") == []

    def test_non_list_json(self):
        assert parse_doctor_ids('{"a": 1}') == []

    def test_skips_bad_entries(self):
        assert parse_doctor_ids(["4", "x", None, True, 5]) == [4, 5]

    def test_node_normalizes_at_ingestion(self):
        node = TreatmentNode.model_validate({"id": 1, "doctors": "[7, 8]"})
        assert node.doctor_ids == [7, 8]


# ── matching ─────────────────────────────────────────────────────────


class TestFindSpecific:
    def test_exact_match(self, treatments):
        node = find_specific("chemical peel", flatten(treatments))
        assert node.id == 12

    def test_alias_resolves_facelift(self, treatments):
        node = find_specific("cost of facelift", flatten(treatments))
        assert node.display_name == "Anti Wrinkle Injection"
        assert node.price_value == 3000

    def test_alias_lhr(self, treatments):
        node = find_specific("price of lhr", flatten(treatments))
        assert node.id == 3

    def test_substring_match(self, treatments):
        node = find_specific("chemical peel please", flatten(treatments))
        assert node.id == 12

    def test_no_match(self, treatments):
        assert find_specific("tattoo removal", flatten(treatments)) is None

    def test_only_filler_returns_none(self, treatments):
        assert find_specific("what is the cost", flatten(treatments)) is None


class TestSearch:
    def test_ranks_by_matching_terms(self, treatments):
        hits = search("laser hair", flatten(treatments))
        assert hits[0].id == 3

    def test_stopwords_only(self, treatments):
        assert search("how much does it cost", flatten(treatments)) == []

    def test_any_term_matches(self, treatments):
        ids = {n.id for n in search("acne or peel", flatten(treatments))}
        assert ids == {11, 12}


class TestHelpers:
    def test_priced(self, treatments):
        assert {n.id for n in priced(flatten(treatments))} == {11, 12, 21, 3}

    def test_treatments_for_doctor(self, treatments):
        assert [n.id for n in treatments_for_doctor(101, flatten(treatments))] == [11, 12, 3]

    def test_display_name_friendly(self, treatments):
        node = find_specific("anti wrinkle injection", flatten(treatments))
        assert display_name(node) == "Botox Treatment"


# ── prices ───────────────────────────────────────────────────────────


class TestPrices:
    @pytest.mark.parametrize(
        "message,expected",
        [
            ("treatments under 5000", 5000),
            ("anything below ₹2000?", 2000),
            ("less than rs. 1500", 1500),
            ("up to 800 please", 800),
            ("what is the cost of botox", None),
        ],
    )
    def test_extract_price_limit(self, message, expected):
        assert extract_price_limit(message) == expected

    def test_filter_under_price_is_strict(self):
        nodes = [_node(1, "a", "999"), _node(2, "b", "1000"), _node(3, "c", ""), _node(4, "d", "abc")]
        assert [n.id for n in filter_under_price(nodes, 1000)] == [1]

    def test_price_value_strips_currency(self):
        assert _node(1, "a", "₹1,500").price_value == 1500

    def test_is_specific_cost_query(self):
        assert is_specific_cost_query("What is the cost of HIFU?")
        assert not is_specific_cost_query("show me cheap treatments")
