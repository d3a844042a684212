"""Tests for datagraph.graph.builder — tabular rows → entity graph.

Tests cover:
  - Entity column selection (flagged roles, exclusions, cardinality)
  - Node/relationship construction and co-occurrence weights
  - Semantic labels and relationship types from business meaning
  - Degenerate input (empty, malformed rows, missing values, node cap)
"""

from __future__ import annotations

import math

import pytest

from datagraph.graph.builder import (
    DEFAULT_RELATIONSHIP_TYPE,
    GraphBuilder,
    label_for_column,
    relationship_hint,
    relationship_type_for,
)
from datagraph.graph.models import ColumnDescriptor


def _col(name: str, type: str = "text", role: str = "", meaning: str = "") -> ColumnDescriptor:
    return ColumnDescriptor(name=name, type=type, role=role, business_meaning=meaning)


@pytest.fixture
def order_rows() -> list[dict]:
    return [
        {"customer": "A", "order": "1"},
        {"customer": "A", "order": "2"},
        {"customer": "B", "order": "1"},
    ]


@pytest.fixture
def order_columns() -> list[ColumnDescriptor]:
    return [_col("customer", role="identifier"), _col("order", role="identifier")]


# ---------------------------------------------------------------------------
# Construction
# ---------------------------------------------------------------------------


class TestGraphBuilder:
    def test_customer_order_graph(self, order_rows, order_columns):
        store = GraphBuilder().build(order_rows, order_columns, "orders")

        names = {n.name for n in store.nodes()}
        assert names == {"A", "B", "1", "2"}
        assert store.relationship_count == 3

        pairs = {
            (store.get_node(r.start_node_id).name, store.get_node(r.end_node_id).name): r.weight
            for r in store.relationships()
        }
        assert pairs == {("A", "1"): 1.0, ("A", "2"): 1.0, ("B", "1"): 1.0}

    def test_customer_order_density(self, order_rows, order_columns):
        store = GraphBuilder().build(order_rows, order_columns, "orders")
        assert store.compute_metrics().density == pytest.approx(0.5)

    def test_referential_integrity(self, order_rows, order_columns):
        store = GraphBuilder().build(order_rows, order_columns, "orders")
        for rel in store.relationships():
            assert rel.start_node_id in store
            assert rel.end_node_id in store

    def test_node_ids_and_properties(self, order_rows, order_columns):
        store = GraphBuilder().build(order_rows, order_columns, "orders")
        node = store.get_node("orders:customer:A")
        assert node is not None
        assert node.labels == {"customer"}
        assert node.properties["column"] == "customer"
        assert node.properties["dataset_id"] == "orders"
        assert node.properties["occurrences"] == 2

    def test_repeated_pairs_strengthen_weight(self, order_columns):
        rows = [{"customer": "A", "order": "1"}] * 3
        store, stats = GraphBuilder().build_with_stats(rows, order_columns, "orders")
        assert store.relationship_count == 1
        rel = store.relationships()[0]
        assert rel.weight == 3.0
        assert rel.properties["co_occurrences"] == 3
        assert stats.relationships_strengthened == 2

    def test_three_columns_form_triangle(self):
        rows = [{"customer": "A", "product": "X", "region": "North"}]
        columns = [_col(c, role="dimension") for c in ("customer", "product", "region")]
        store = GraphBuilder().build(rows, columns, "sales")
        assert store.node_count == 3
        assert store.relationship_count == 3

    def test_same_value_in_two_columns_is_two_nodes(self):
        rows = [{"buyer": "Acme", "seller": "Acme"}]
        columns = [_col("buyer", role="entity"), _col("seller", role="entity")]
        store = GraphBuilder().build(rows, columns, "trade")
        assert store.node_count == 2
        assert store.relationship_count == 1

    def test_ids_do_not_collide_across_labels(self):
        rows = [{"a:b": "c", "a": "b:c"}]
        columns = [_col("a:b", role="entity"), _col("a", role="entity")]
        store = GraphBuilder().build(rows, columns, "d")
        assert store.node_count == 2
        assert {n.name for n in store.nodes()} == {"c", "b:c"}
        assert store.relationship_count == 1

    def test_relationship_ids_are_unique_per_edge(self):
        rows = [{"x": "p->d:y:q", "y": "r"}, {"x": "p", "y": "q->d:y:r"}]
        columns = [_col("x", role="entity"), _col("y", role="entity")]
        store = GraphBuilder().build(rows, columns, "d")
        assert store.relationship_count == 2
        assert len({r.id for r in store.relationships()}) == 2

    def test_stats(self, order_rows, order_columns):
        _, stats = GraphBuilder().build_with_stats(order_rows, order_columns, "orders")
        assert stats.rows_processed == 3
        assert stats.entity_columns == ["customer", "order"]
        assert stats.nodes_created == 4
        assert stats.relationships_created == 3
        assert stats.label_counts == {"customer": 2, "order": 2}
        assert stats.relationship_type_counts == {DEFAULT_RELATIONSHIP_TYPE: 3}

    def test_dict_column_descriptors(self, order_rows):
        columns = [
            {"name": "customer", "semantic_role": "identifier", "businessMeaning": "Customer ID"},
            {"name": "order", "is_identifier": True},
        ]
        store = GraphBuilder().build(order_rows, columns, "orders")
        assert [n.name for n in store.get_nodes_by_label("Customer")] == ["A", "B"]
        assert len(store.get_nodes_by_label("order")) == 2


# ---------------------------------------------------------------------------
# Column selection
# ---------------------------------------------------------------------------


class TestEntityColumnSelection:
    @pytest.fixture
    def rows(self) -> list[dict]:
        return [
            {"region": "North" if i % 2 else "South", "note": f"free text {i}",
             "amount": i * 10.0, "day": f"2024-01-0{i + 1}", "code": f"C{i}"}
            for i in range(6)
        ]

    def test_low_cardinality_text_selected(self, rows):
        selected = GraphBuilder().select_entity_columns(rows, [_col("region")])
        assert [c.name for c in selected] == ["region"]

    def test_high_cardinality_text_rejected(self, rows):
        assert GraphBuilder().select_entity_columns(rows, [_col("note")]) == []

    def test_measure_and_temporal_excluded(self, rows):
        columns = [
            _col("amount", type="numeric", role="measure"),
            _col("day", type="text", role="temporal"),
        ]
        assert GraphBuilder().select_entity_columns(rows, columns) == []

    def test_flagged_column_ignores_cardinality(self, rows):
        selected = GraphBuilder().select_entity_columns(rows, [_col("code", role="identifier")])
        assert [c.name for c in selected] == ["code"]

    def test_numeric_unflagged_rejected(self, rows):
        assert GraphBuilder().select_entity_columns(rows, [_col("amount", type="numeric")]) == []

    def test_single_value_column_rejected(self):
        rows = [{"country": "FR"}] * 4
        assert GraphBuilder().select_entity_columns(rows, [_col("country")]) == []

    def test_values_per_column_cap(self):
        rows = [{"tag": f"t{i % 10}"} for i in range(100)]
        builder = GraphBuilder(max_values_per_column=5)
        assert builder.select_entity_columns(rows, [_col("tag")]) == []
        assert GraphBuilder().select_entity_columns(rows, [_col("tag")]) != []


# ---------------------------------------------------------------------------
# Semantic hints
# ---------------------------------------------------------------------------


class TestSemanticHints:
    def test_label_from_business_meaning(self):
        assert label_for_column(_col("cust_id", meaning="Customer identifier")) == "Customer"
        assert label_for_column(_col("sku", meaning="product SKU")) == "Product"
        assert label_for_column(_col("city", meaning="City of delivery")) == "Location"

    def test_label_falls_back_to_column_name(self):
        assert label_for_column(_col("widget")) == "widget"
        assert label_for_column(_col("widget", meaning="something else")) == "widget"

    def test_relationship_type_hints(self):
        assert relationship_type_for("Customer", "Transaction") == "PLACED"
        assert relationship_type_for("Transaction", "Customer") == "PLACED"
        assert relationship_type_for("Product", "Location") == "LOCATED_IN"
        assert relationship_type_for("Location", "Product") == "LOCATED_IN"
        assert relationship_type_for("foo", "bar") == DEFAULT_RELATIONSHIP_TYPE

    def test_typed_relationships_in_built_graph(self, order_rows):
        columns = [
            _col("customer", role="identifier", meaning="customer id"),
            _col("order", role="identifier", meaning="order number"),
        ]
        store = GraphBuilder().build(order_rows, columns, "orders")
        assert {r.type for r in store.relationships()} == {"PLACED"}
        assert len(store.get_nodes_by_label("Transaction")) == 2

    def test_edges_run_the_way_hints_read(self):
        rows = [
            {"order": "1", "customer": "A", "city": "Paris"},
            {"order": "2", "customer": "B", "city": "Lyon"},
        ]
        columns = [
            _col("order", role="identifier", meaning="order number"),
            _col("customer", role="identifier", meaning="customer id"),
            _col("city", role="dimension", meaning="city"),
        ]
        store = GraphBuilder().build(rows, columns, "orders")
        for rel in store.relationships():
            start = store.get_node(rel.start_node_id)
            end = store.get_node(rel.end_node_id)
            if rel.type == "PLACED":
                assert (start.labels, end.labels) == ({"Customer"}, {"Transaction"})
            else:
                assert rel.type == "LOCATED_IN"
                assert end.labels == {"Location"}
        placed = [r for r in store.relationships() if r.type == "PLACED"]
        assert len(placed) == 2
        assert placed[0].properties["source_columns"] == ["customer", "order"]

    def test_relationship_hint_reports_reversal(self):
        assert relationship_hint("Customer", "Transaction") == ("PLACED", False)
        assert relationship_hint("Transaction", "Customer") == ("PLACED", True)
        assert relationship_hint("Location", "Product") == ("LOCATED_IN", True)
        assert relationship_hint("foo", "bar") == (DEFAULT_RELATIONSHIP_TYPE, False)


# ---------------------------------------------------------------------------
# Degenerate input
# ---------------------------------------------------------------------------


class TestDegenerateInput:
    def test_empty_rows(self, order_columns):
        store = GraphBuilder().build([], order_columns, "empty")
        assert store.node_count == 0
        assert store.relationship_count == 0

    def test_none_inputs(self):
        store = GraphBuilder().build(None, None, "empty")
        assert store.node_count == 0

    def test_no_entity_columns(self):
        rows = [{"amount": 1.0}, {"amount": 2.0}]
        columns = [_col("amount", type="numeric", role="measure")]
        store = GraphBuilder().build(rows, columns, "numbers")
        assert store.node_count == 0

    def test_malformed_rows_skipped(self, order_columns):
        rows = [{"customer": "A", "order": "1"}, "not a row", None, 42]
        store, stats = GraphBuilder().build_with_stats(rows, order_columns, "orders")
        assert stats.rows_skipped == 3
        assert stats.rows_processed == 1
        assert store.node_count == 2

    def test_missing_values_skipped(self, order_columns):
        rows = [
            {"customer": "A", "order": None},
            {"customer": "  ", "order": "1"},
            {"customer": math.nan, "order": "2"},
            {"order": "3"},
        ]
        store = GraphBuilder().build(rows, order_columns, "orders")
        assert {n.name for n in store.nodes()} == {"A", "1", "2", "3"}
        assert store.relationship_count == 0

    def test_values_are_normalised(self, order_columns):
        rows = [{"customer": " A ", "order": 1}, {"customer": "A", "order": "1"}]
        store = GraphBuilder().build(rows, order_columns, "orders")
        assert store.node_count == 2
        assert store.relationships()[0].weight == 2.0

    def test_max_nodes_cap(self):
        rows = [{"customer": f"c{i}", "order": f"o{i}"} for i in range(20)]
        columns = [_col("customer", role="identifier"), _col("order", role="identifier")]
        store, stats = GraphBuilder(max_nodes=10).build_with_stats(rows, columns, "big")
        assert store.node_count == 10
        assert stats.skipped_values == 30
        for rel in store.relationships():
            assert rel.start_node_id in store
            assert rel.end_node_id in store
