"""Graph analysis pipeline.

Runs the full analysis over one dataset as a linear sequence of
guarded stages::

    build → embed → centrality → community → anomaly → metrics
          → classify → link_predict → (synthesize)

Architecture:
  - GraphAnalyzer: owns the stage list and folds over it
  - AnalysisRun: record of one execution (store, per-stage results)
  - StageResult: status, raw output, insights and error of one stage

A stage that raises is logged and replaced by a single "Analysis Error"
insight; the remaining stages still run. Later stages read what earlier
ones attached to the store and skip whatever is missing. Synthesis is
the stable confidence sort over all stage insights.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Iterable, Mapping

from datagraph.analysis import insights as synth
from datagraph.analysis.insights import Insight, sort_insights
from datagraph.analysis.ml import classify_nodes, predict_links, similar_pairs
from datagraph.graph.builder import BuildStats, GraphBuilder
from datagraph.graph.models import ColumnDescriptor
from datagraph.graph.store import GraphStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Execution state
# ---------------------------------------------------------------------------


class Stage(str, Enum):
    BUILD = "build"
    EMBED = "embed"
    CENTRALITY = "centrality"
    COMMUNITY = "community"
    ANOMALY = "anomaly"
    METRICS = "metrics"
    CLASSIFY = "classify"
    LINK_PREDICT = "link_predict"


class StageStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class StageResult:
    """Result of executing a single analysis stage."""
    stage: Stage
    status: StageStatus
    insights: list[Insight] = field(default_factory=list)
    output: Any = None
    error: str = ""
    duration_seconds: float = 0.0


@dataclass
class AnalysisRun:
    """Tracks one pipeline execution over one dataset."""
    dataset_id: str
    run_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    store: GraphStore = field(default_factory=GraphStore)
    build_stats: BuildStats | None = None
    stage_results: list[StageResult] = field(default_factory=list)
    started_at: str = ""
    completed_at: str = ""

    @property
    def insights(self) -> list[Insight]:
        """All stage insights, highest confidence first, ties in stage order."""
        return sort_insights([i for sr in self.stage_results for i in sr.insights])

    @property
    def failed_stages(self) -> list[Stage]:
        return [sr.stage for sr in self.stage_results if sr.status == StageStatus.FAILED]

    def output(self, stage: Stage) -> Any:
        """Raw output of a completed stage, or None."""
        for sr in self.stage_results:
            if sr.stage == stage and sr.status == StageStatus.COMPLETED:
                return sr.output
        return None

    def summary(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "dataset_id": self.dataset_id,
            "node_count": self.store.node_count,
            "relationship_count": self.store.relationship_count,
            "stages": {sr.stage.value: sr.status.value for sr in self.stage_results},
            "failed_stages": [s.value for s in self.failed_stages],
            "insight_count": sum(len(sr.insights) for sr in self.stage_results),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


StageFn = Callable[[AnalysisRun], tuple[Any, list[Insight]]]


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------


class GraphAnalyzer:
    """Build an entity graph from tabular data and mine it for insights.

    Usage::

        analyzer = GraphAnalyzer()
        insights = analyzer.analyze(rows, columns, dataset_id="orders-2024")

    Each call builds and owns a fresh :class:`GraphStore`; the most
    recent one stays reachable through :attr:`store`.
    """

    def __init__(self, builder: GraphBuilder | None = None) -> None:
        self._builder = builder or GraphBuilder()
        self._store = GraphStore()
        self._stages: tuple[tuple[Stage, StageFn], ...] = (
            (Stage.EMBED, self._embed),
            (Stage.CENTRALITY, self._centrality),
            (Stage.COMMUNITY, self._community),
            (Stage.ANOMALY, self._anomaly),
            (Stage.METRICS, self._metrics),
            (Stage.CLASSIFY, self._classify),
            (Stage.LINK_PREDICT, self._link_predict),
        )

    @property
    def store(self) -> GraphStore:
        return self._store

    def clear_graph(self) -> None:
        self._store = GraphStore()

    # -- Entry points --------------------------------------------------------

    def analyze(
        self,
        rows: Iterable[Mapping[str, Any]],
        columns: Iterable[ColumnDescriptor | Mapping[str, Any]],
        dataset_id: str,
    ) -> list[Insight]:
        return self.run(rows, columns, dataset_id).insights

    def run(
        self,
        rows: Iterable[Mapping[str, Any]],
        columns: Iterable[ColumnDescriptor | Mapping[str, Any]],
        dataset_id: str,
    ) -> AnalysisRun:
        """Build the graph, then run every analysis stage."""
        run = self._start(dataset_id)

        def build(run: AnalysisRun) -> tuple[Any, list[Insight]]:
            run.store, run.build_stats = self._builder.build_with_stats(rows, columns, dataset_id)
            return run.build_stats, []

        run.stage_results.append(self._execute_stage(Stage.BUILD, build, run))
        return self._finish(run)

    def analyze_store(self, store: GraphStore, dataset_id: str = "") -> list[Insight]:
        return self.run_store(store, dataset_id).insights

    def run_store(self, store: GraphStore, dataset_id: str = "") -> AnalysisRun:
        """Run the analysis stages over an already populated store."""
        run = self._start(dataset_id)
        run.store = store
        return self._finish(run)

    def _start(self, dataset_id: str) -> AnalysisRun:
        return AnalysisRun(
            dataset_id=dataset_id,
            started_at=datetime.now(timezone.utc).isoformat(),
        )

    def _finish(self, run: AnalysisRun) -> AnalysisRun:
        self._store = run.store
        for stage, fn in self._stages:
            run.stage_results.append(self._execute_stage(stage, fn, run))
        run.completed_at = datetime.now(timezone.utc).isoformat()

        logger.info(
            "Analysis of '%s' (run %s): %d nodes, %d relationships, %d insights, "
            "%d failed stages",
            run.dataset_id, run.run_id, run.store.node_count,
            run.store.relationship_count, len(run.insights), len(run.failed_stages),
        )
        return run

    def _execute_stage(self, stage: Stage, fn: StageFn, run: AnalysisRun) -> StageResult:
        start_time = time.monotonic()
        try:
            output, stage_insights = fn(run)
        except Exception as exc:
            logger.exception("Stage '%s' failed for dataset '%s'", stage.value, run.dataset_id)
            return StageResult(
                stage=stage,
                status=StageStatus.FAILED,
                insights=[synth.error_insight(stage.value, exc, run.dataset_id)],
                error=str(exc),
                duration_seconds=time.monotonic() - start_time,
            )

        return StageResult(
            stage=stage,
            status=StageStatus.COMPLETED,
            insights=stage_insights,
            output=output,
            duration_seconds=time.monotonic() - start_time,
        )

    # -- Stages --------------------------------------------------------------

    def _embed(self, run: AnalysisRun) -> tuple[Any, list[Insight]]:
        run.store.generate_embeddings()
        nodes = run.store.nodes()
        embedded = sum(1 for n in nodes if n.embedding)
        pairs = similar_pairs(nodes)
        return pairs, synth.similarity_insights(pairs, embedded, run.dataset_id)

    def _centrality(self, run: AnalysisRun) -> tuple[Any, list[Insight]]:
        centrality = run.store.compute_centrality()
        return centrality, synth.centrality_insights(
            run.store.nodes(), run.store.relationship_count, run.dataset_id,
        )

    def _community(self, run: AnalysisRun) -> tuple[Any, list[Insight]]:
        communities = run.store.detect_communities()
        return communities, synth.community_insights(communities, run.dataset_id)

    def _anomaly(self, run: AnalysisRun) -> tuple[Any, list[Insight]]:
        anomalies = run.store.detect_anomalies()
        return anomalies, synth.anomaly_insights(anomalies, run.dataset_id)

    def _metrics(self, run: AnalysisRun) -> tuple[Any, list[Insight]]:
        metrics = run.store.compute_metrics()
        return metrics, synth.metric_insights(metrics, run.dataset_id)

    def _classify(self, run: AnalysisRun) -> tuple[Any, list[Insight]]:
        classifications = classify_nodes(run.store.nodes())
        return classifications, synth.classification_insights(classifications, run.dataset_id)

    def _link_predict(self, run: AnalysisRun) -> tuple[Any, list[Insight]]:
        predictions = predict_links(run.store)
        return predictions, synth.link_prediction_insights(predictions, run.dataset_id)
