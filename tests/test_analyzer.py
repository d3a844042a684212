"""Tests for datagraph.analysis.analyzer — the end-to-end analysis pipeline.

Tests cover:
  - Full runs over tabular input (stage results, ordering of insights)
  - Degenerate graphs (single node, no entity columns)
  - Stage failure isolation
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from datagraph.analysis.analyzer import GraphAnalyzer, Stage, StageStatus
from datagraph.analysis.insights import InsightType
from datagraph.graph.builder import GraphBuilder
from datagraph.graph.models import ColumnDescriptor, Node
from datagraph.graph.store import GraphStore


@pytest.fixture
def order_rows() -> list[dict]:
    return [
        {"customer": "A", "order": "1", "amount": 10.0},
        {"customer": "A", "order": "2", "amount": 25.0},
        {"customer": "B", "order": "1", "amount": 5.0},
    ]


@pytest.fixture
def order_columns() -> list[ColumnDescriptor]:
    return [
        ColumnDescriptor("customer", role="identifier", business_meaning="customer id"),
        ColumnDescriptor("order", role="identifier", business_meaning="order number"),
        ColumnDescriptor("amount", type="numeric", role="measure"),
    ]


@pytest.fixture
def sales_rows() -> list[dict]:
    """Two disjoint customer/product/region triangles."""
    return [
        {"customer": "Acme", "product": "Widget", "region": "North"},
        {"customer": "Globex", "product": "Gadget", "region": "South"},
    ]


@pytest.fixture
def sales_columns() -> list[dict]:
    return [
        {"name": "customer", "role": "dimension"},
        {"name": "product", "role": "dimension"},
        {"name": "region", "role": "dimension"},
    ]


class TestGraphAnalyzer:
    def test_insights_sorted_by_confidence(self, order_rows, order_columns):
        insights = GraphAnalyzer().analyze(order_rows, order_columns, "orders")
        assert insights
        confidences = [i.confidence for i in insights]
        assert confidences == sorted(confidences, reverse=True)
        assert not any(i.is_error for i in insights)

    def test_every_stage_runs(self, order_rows, order_columns):
        run = GraphAnalyzer().run(order_rows, order_columns, "orders")
        assert [sr.stage for sr in run.stage_results] == list(Stage)
        assert all(sr.status == StageStatus.COMPLETED for sr in run.stage_results)
        assert run.failed_stages == []
        assert run.build_stats.entity_columns == ["customer", "order"]

    def test_insights_reference_graph(self, order_rows, order_columns):
        analyzer = GraphAnalyzer()
        insights = analyzer.analyze(order_rows, order_columns, "orders")
        for insight in insights:
            assert insight.dataset_id == "orders"
            for nid in insight.node_ids:
                assert nid in analyzer.store
            for rid in insight.relationship_ids:
                assert analyzer.store.get_relationship(rid) is not None

    def test_store_attributes_attached(self, order_rows, order_columns):
        analyzer = GraphAnalyzer()
        analyzer.analyze(order_rows, order_columns, "orders")
        dims = analyzer.store.embedding_dimensions
        for node in analyzer.store.nodes():
            assert len(node.embedding) == dims
            assert node.centrality is not None

    def test_stage_outputs(self, sales_rows, sales_columns):
        run = GraphAnalyzer().run(sales_rows, sales_columns, "sales")
        assert run.output(Stage.COMMUNITY).count == 2
        assert run.output(Stage.METRICS).clustering == pytest.approx(1.0)
        titles = {i.title for i in run.insights}
        assert "Data Communities Detected" in titles
        assert "High Clustering Detected" in titles

    def test_each_run_owns_its_store(self, order_rows, order_columns, sales_rows, sales_columns):
        analyzer = GraphAnalyzer()
        first = analyzer.run(order_rows, order_columns, "orders")
        second = analyzer.run(sales_rows, sales_columns, "sales")
        assert first.store is not second.store
        assert analyzer.store is second.store
        assert first.store.node_count == 4

    def test_clear_graph(self, order_rows, order_columns):
        analyzer = GraphAnalyzer()
        analyzer.analyze(order_rows, order_columns, "orders")
        analyzer.clear_graph()
        assert analyzer.store.node_count == 0

    def test_summary(self, order_rows, order_columns):
        summary = GraphAnalyzer().run(order_rows, order_columns, "orders").summary()
        assert summary["node_count"] == 4
        assert summary["relationship_count"] == 3
        assert summary["stages"]["build"] == "completed"
        assert summary["failed_stages"] == []


class TestDegenerateGraphs:
    def test_single_node_yields_no_insights(self):
        rows = [{"customer": "A"}]
        columns = [ColumnDescriptor("customer", role="identifier")]
        run = GraphAnalyzer().run(rows, columns, "solo")
        assert run.store.node_count == 1
        assert run.failed_stages == []
        assert run.insights == []

    def test_single_node_store(self):
        store = GraphStore()
        store.add_node(Node(id="only"))
        assert GraphAnalyzer().analyze_store(store, "solo") == []

    def test_no_entity_columns(self):
        rows = [{"amount": 1.0}, {"amount": 2.0}]
        columns = [ColumnDescriptor("amount", type="numeric", role="measure")]
        run = GraphAnalyzer().run(rows, columns, "numbers")
        assert run.store.node_count == 0
        assert run.insights == []
        assert run.failed_stages == []

    def test_empty_input(self):
        assert GraphAnalyzer().analyze([], [], "empty") == []

    def test_punctuated_values_do_not_break_build(self):
        rows = [{"a:b": "c", "a": "b:c"}]
        columns = [ColumnDescriptor("a:b", role="entity"), ColumnDescriptor("a", role="entity")]
        run = GraphAnalyzer().run(rows, columns, "d")
        assert run.failed_stages == []
        assert run.store.node_count == 2


class TestStageFailures:
    def test_centrality_failure_is_isolated(self, sales_rows, sales_columns):
        with patch.object(GraphStore, "compute_centrality", side_effect=RuntimeError("malformed store")):
            run = GraphAnalyzer().run(sales_rows, sales_columns, "sales")

        errors = [i for i in run.insights if i.is_error]
        assert len(errors) == 1
        assert errors[0].title == "Analysis Error"
        assert errors[0].type == InsightType.ANOMALY
        assert errors[0].confidence == 1.0
        assert errors[0].details.stage == "centrality"
        assert run.failed_stages == [Stage.CENTRALITY]

        types = {i.type for i in run.insights}
        titles = {i.title for i in run.insights}
        assert InsightType.EMBEDDING in types
        assert "High Clustering Detected" in titles

    def test_error_insight_sorts_first(self, sales_rows, sales_columns):
        with patch.object(GraphStore, "detect_communities", side_effect=ValueError("bad")):
            insights = GraphAnalyzer().analyze(sales_rows, sales_columns, "sales")
        assert insights[0].is_error

    def test_classification_skips_without_centrality(self, sales_rows, sales_columns):
        with patch.object(GraphStore, "compute_centrality", side_effect=RuntimeError("boom")):
            run = GraphAnalyzer().run(sales_rows, sales_columns, "sales")
        classify = next(sr for sr in run.stage_results if sr.stage == Stage.CLASSIFY)
        assert classify.status == StageStatus.COMPLETED
        assert classify.output == []

    def test_build_failure_leaves_empty_store(self, order_rows, order_columns):
        builder = MagicMock(spec=GraphBuilder)
        builder.build_with_stats.side_effect = KeyError("name")
        run = GraphAnalyzer(builder=builder).run(order_rows, order_columns, "orders")

        assert run.failed_stages == [Stage.BUILD]
        assert run.store.node_count == 0
        assert [i.title for i in run.insights] == ["Analysis Error"]

    def test_failure_is_logged(self, sales_rows, sales_columns, caplog):
        with patch.object(GraphStore, "detect_anomalies", side_effect=RuntimeError("boom")):
            GraphAnalyzer().analyze(sales_rows, sales_columns, "sales")
        assert "Stage 'anomaly' failed" in caplog.text
