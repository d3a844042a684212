"""Insight records and the pure functions that synthesise them.

An :class:`Insight` is a closed tagged variant: ``type`` is one of the
:class:`InsightType` members and ``details`` carries a payload whose
class must be one of those registered for that tag in
``DETAILS_BY_TYPE``. Consumers dispatch on ``type`` and read the
matching payload.

Every ``*_insights`` function maps one raw analysis result to zero or
more insights and has no side effects.
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Sequence, Union

from datagraph.graph.models import AnomalyResult, CommunityResult, GraphMetrics, Node


class InsightType(str, Enum):
    ANOMALY = "anomaly"
    COMMUNITY = "community"
    PREDICTION = "prediction"
    PATTERN = "pattern"
    EMBEDDING = "embedding"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ---------------------------------------------------------------------------
# Variant payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SimilarPair:
    first_id: str
    second_id: str
    similarity: float


@dataclass(frozen=True)
class NodeClassification:
    node_id: str
    predicted_class: str
    confidence: float
    features: tuple[float, ...] = ()


@dataclass(frozen=True)
class LinkPrediction:
    source_id: str
    target_id: str
    probability: float
    common_neighbors: int = 0
    similarity: float = 0.0
    shared_labels: int = 0


@dataclass(frozen=True)
class SimilarityDetails:
    pairs: tuple[SimilarPair, ...] = ()
    embedded_nodes: int = 0


@dataclass(frozen=True)
class PatternDetails:
    kind: str                                   # key_entities, high_clustering, sparse_graph
    ranked_node_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class CommunityDetails:
    communities: tuple[tuple[str, ...], ...] = ()
    modularity: float = 0.0


@dataclass(frozen=True)
class AnomalyDetails:
    scores: tuple[tuple[str, float], ...] = ()  # (id, score) for flagged ids
    threshold: float = 0.0


@dataclass(frozen=True)
class StageFailure:
    stage: str
    error: str
    error_type: str = ""


@dataclass(frozen=True)
class ClassificationDetails:
    classifications: tuple[NodeClassification, ...] = ()


@dataclass(frozen=True)
class LinkPredictionDetails:
    predictions: tuple[LinkPrediction, ...] = ()


InsightDetails = Union[
    SimilarityDetails,
    PatternDetails,
    CommunityDetails,
    AnomalyDetails,
    StageFailure,
    ClassificationDetails,
    LinkPredictionDetails,
]

DETAILS_BY_TYPE: dict[InsightType, tuple[type, ...]] = {
    InsightType.EMBEDDING: (SimilarityDetails,),
    InsightType.PATTERN: (PatternDetails,),
    InsightType.COMMUNITY: (CommunityDetails,),
    InsightType.ANOMALY: (AnomalyDetails, StageFailure),
    InsightType.PREDICTION: (ClassificationDetails, LinkPredictionDetails),
}


# ---------------------------------------------------------------------------
# Insight
# ---------------------------------------------------------------------------


def _new_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class Insight:
    """A human-readable finding derived from one analysis stage."""
    id: str
    type: InsightType
    title: str
    description: str
    confidence: float
    severity: Severity
    node_ids: tuple[str, ...] = ()
    relationship_ids: tuple[str, ...] = ()
    metrics: Mapping[str, float] = field(default_factory=dict)
    recommendations: tuple[str, ...] = ()
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    dataset_id: str = ""
    details: InsightDetails | None = None

    def __post_init__(self) -> None:
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"Insight confidence out of range: {self.confidence}")
        if self.details is not None and not isinstance(
            self.details, DETAILS_BY_TYPE[self.type]
        ):
            raise ValueError(
                f"{type(self.details).__name__} is not a valid payload "
                f"for {self.type.value} insights"
            )
        object.__setattr__(self, "metrics", MappingProxyType(dict(self.metrics)))

    @property
    def is_error(self) -> bool:
        return isinstance(self.details, StageFailure)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON consumers."""
        return {
            "id": self.id,
            "type": self.type.value,
            "title": self.title,
            "description": self.description,
            "confidence": self.confidence,
            "severity": self.severity.value,
            "node_ids": list(self.node_ids),
            "relationship_ids": list(self.relationship_ids),
            "metrics": dict(self.metrics),
            "recommendations": list(self.recommendations),
            "timestamp": self.timestamp.isoformat(),
            "dataset_id": self.dataset_id,
            "details": asdict(self.details) if self.details is not None else None,
        }


def sort_insights(insights: Sequence[Insight]) -> list[Insight]:
    """Non-increasing confidence; equal confidences keep their input order."""
    return sorted(insights, key=lambda i: i.confidence, reverse=True)


# ---------------------------------------------------------------------------
# Synthesis
# ---------------------------------------------------------------------------


def similarity_insights(
    pairs: Sequence[SimilarPair],
    embedded_nodes: int,
    dataset_id: str = "",
) -> list[Insight]:
    if embedded_nodes < 2:
        return []
    average = sum(p.similarity for p in pairs) / len(pairs) if pairs else 0.0
    node_ids = tuple(dict.fromkeys(
        nid for p in pairs for nid in (p.first_id, p.second_id)
    ))
    return [Insight(
        id=_new_id("embedding-similarity"),
        type=InsightType.EMBEDDING,
        title="Node Similarity Analysis",
        description=(
            f"Identified {len(pairs)} highly similar entity pairs "
            f"among {embedded_nodes} embedded entities"
        ),
        confidence=0.85,
        severity=Severity.MEDIUM,
        node_ids=node_ids,
        metrics={"averageSimilarity": average, "totalPairs": float(len(pairs))},
        recommendations=(
            "Review similar entities for potential data deduplication",
            "Consider grouping similar entities for analysis",
            "Investigate why certain entities have high similarity",
        ),
        dataset_id=dataset_id,
        details=SimilarityDetails(pairs=tuple(pairs), embedded_nodes=embedded_nodes),
    )]


def centrality_insights(
    nodes: Sequence[Node],
    relationship_count: int,
    dataset_id: str = "",
    top_n: int = 5,
) -> list[Insight]:
    """Top nodes by PageRank. A graph without relationships has no key entities."""
    if relationship_count == 0:
        return []
    ranked = sorted(
        (n for n in nodes if n.centrality is not None),
        key=lambda n: n.centrality.pagerank,
        reverse=True,
    )[:top_n]
    if not ranked:
        return []

    names = ", ".join(n.name for n in ranked)
    return [Insight(
        id=_new_id("centrality"),
        type=InsightType.PATTERN,
        title="Key Entities Identified",
        description=(
            f"Found {len(ranked)} highly central entities that may be critical "
            f"to your data relationships: {names}"
        ),
        confidence=0.9,
        severity=Severity.HIGH,
        node_ids=tuple(n.id for n in ranked),
        metrics={
            "averagePageRank": sum(n.centrality.pagerank for n in ranked) / len(ranked),
            "topPageRank": ranked[0].centrality.pagerank,
        },
        recommendations=(
            "Focus analysis on these central entities",
            "Consider these entities as key business drivers",
            "Monitor changes in these critical nodes",
        ),
        dataset_id=dataset_id,
        details=PatternDetails(kind="key_entities", ranked_node_ids=tuple(n.id for n in ranked)),
    )]


def community_confidence(modularity: float) -> float:
    return max(0.5, min(0.95, 0.6 + 0.6 * modularity))


def community_insights(result: CommunityResult, dataset_id: str = "") -> list[Insight]:
    if result.count <= 1:
        return []
    sizes = [len(c) for c in result.communities]
    return [Insight(
        id=_new_id("community"),
        type=InsightType.COMMUNITY,
        title="Data Communities Detected",
        description=(
            f"Discovered {result.count} distinct clusters in your data "
            f"with modularity score of {result.modularity:.3f}"
        ),
        confidence=community_confidence(result.modularity),
        severity=Severity.HIGH if result.modularity > 0.5 else Severity.MEDIUM,
        metrics={
            "numCommunities": float(result.count),
            "modularity": result.modularity,
            "largestCommunity": float(max(sizes)),
            "averageCommunitySize": sum(sizes) / len(sizes),
        },
        recommendations=(
            "Analyze each community separately for targeted insights",
            "Consider community structure in your data modeling",
            "Investigate cross-community relationships",
        ),
        dataset_id=dataset_id,
        details=CommunityDetails(
            communities=tuple(tuple(c) for c in result.communities),
            modularity=result.modularity,
        ),
    )]


def anomaly_insights(result: AnomalyResult, dataset_id: str = "") -> list[Insight]:
    if result.is_empty:
        return []
    flagged = [*result.anomalous_nodes, *result.anomalous_relationships]
    return [Insight(
        id=_new_id("anomaly"),
        type=InsightType.ANOMALY,
        title="Anomalies Detected",
        description=(
            f"Found {len(result.anomalous_nodes)} anomalous entities and "
            f"{len(result.anomalous_relationships)} unusual relationships"
        ),
        confidence=0.8,
        severity=Severity.HIGH,
        node_ids=tuple(result.anomalous_nodes),
        relationship_ids=tuple(result.anomalous_relationships),
        metrics={
            "anomalousNodes": float(len(result.anomalous_nodes)),
            "anomalousRelationships": float(len(result.anomalous_relationships)),
            "maxAnomalyScore": max(result.scores[i] for i in flagged),
        },
        recommendations=(
            "Investigate anomalous entities for data quality issues",
            "Consider outliers for special business cases",
            "Review unusual patterns for insights or errors",
        ),
        dataset_id=dataset_id,
        details=AnomalyDetails(
            scores=tuple((i, result.scores[i]) for i in flagged),
            threshold=result.threshold,
        ),
    )]


def metric_insights(metrics: GraphMetrics, dataset_id: str = "") -> list[Insight]:
    """High clustering and sparsity findings; none below two nodes."""
    if metrics.node_count < 2:
        return []

    insights: list[Insight] = []
    if metrics.clustering > 0.6:
        insights.append(Insight(
            id=_new_id("clustering"),
            type=InsightType.PATTERN,
            title="High Clustering Detected",
            description=(
                f"Your data shows high clustering ({metrics.clustering * 100:.1f}%), "
                f"indicating strong local connectivity"
            ),
            confidence=0.85,
            severity=Severity.MEDIUM,
            metrics={
                "clustering": metrics.clustering,
                "density": metrics.density,
                "averagePathLength": metrics.average_path_length,
            },
            recommendations=(
                "Leverage local clusters for targeted analysis",
                "Consider community-based approaches",
                "Investigate cluster boundaries for insights",
            ),
            dataset_id=dataset_id,
            details=PatternDetails(kind="high_clustering"),
        ))

    if metrics.density < 0.1:
        insights.append(Insight(
            id=_new_id("sparsity"),
            type=InsightType.PATTERN,
            title="Sparse Graph Structure",
            description=(
                f"Your data graph is sparse ({metrics.density * 100:.2f}% density), "
                f"suggesting specialized relationships"
            ),
            confidence=0.8,
            severity=Severity.LOW,
            metrics={"density": metrics.density, "diameter": float(metrics.diameter)},
            recommendations=(
                "Focus on connected components for analysis",
                "Consider adding derived relationships",
                "Look for hub nodes connecting sparse regions",
            ),
            dataset_id=dataset_id,
            details=PatternDetails(kind="sparse_graph"),
        ))
    return insights


def classification_insights(
    classifications: Sequence[NodeClassification],
    dataset_id: str = "",
) -> list[Insight]:
    if not classifications:
        return []
    confident = [c for c in classifications if c.confidence > 0.8]
    class_counts: dict[str, int] = {}
    for c in classifications:
        class_counts[c.predicted_class] = class_counts.get(c.predicted_class, 0) + 1
    breakdown = ", ".join(f"{count} {name}" for name, count in sorted(class_counts.items()))

    return [Insight(
        id=_new_id("classification"),
        type=InsightType.PREDICTION,
        title="Entity Classification Results",
        description=(
            f"Classified {len(classifications)} entities ({breakdown}) with "
            f"{len(confident)} high-confidence predictions"
        ),
        confidence=0.85,
        severity=Severity.MEDIUM,
        node_ids=tuple(c.node_id for c in confident),
        metrics={
            "totalClassified": float(len(classifications)),
            "highConfidence": float(len(confident)),
            "averageConfidence": sum(c.confidence for c in classifications) / len(classifications),
            **{f"class.{name}": float(count) for name, count in class_counts.items()},
        },
        recommendations=(
            "Review high-confidence classifications for insights",
            "Use classifications for data organization",
            "Validate predictions with domain knowledge",
        ),
        dataset_id=dataset_id,
        details=ClassificationDetails(classifications=tuple(classifications)),
    )]


def link_prediction_insights(
    predictions: Sequence[LinkPrediction],
    dataset_id: str = "",
) -> list[Insight]:
    if not predictions:
        return []
    strong = [p for p in predictions if p.probability > 0.7]
    return [Insight(
        id=_new_id("link-prediction"),
        type=InsightType.PREDICTION,
        title="Missing Relationship Predictions",
        description=(
            f"Predicted {len(predictions)} potential relationships with "
            f"{len(strong)} high-probability connections"
        ),
        confidence=0.75,
        severity=Severity.MEDIUM,
        node_ids=tuple(dict.fromkeys(
            nid for p in predictions for nid in (p.source_id, p.target_id)
        )),
        metrics={
            "totalPredictions": float(len(predictions)),
            "highProbability": float(len(strong)),
            "averageProbability": sum(p.probability for p in predictions) / len(predictions),
        },
        recommendations=(
            "Investigate high-probability missing links",
            "Consider if predicted relationships make business sense",
            "Use predictions to enrich your data model",
        ),
        dataset_id=dataset_id,
        details=LinkPredictionDetails(predictions=tuple(predictions)),
    )]


def error_insight(stage: str, exc: BaseException, dataset_id: str = "") -> Insight:
    """Synthetic record standing in for a failed analysis stage."""
    return Insight(
        id=_new_id("error"),
        type=InsightType.ANOMALY,
        title="Analysis Error",
        description=f"Error during {stage} analysis: {exc or type(exc).__name__}",
        confidence=1.0,
        severity=Severity.HIGH,
        dataset_id=dataset_id,
        details=StageFailure(stage=stage, error=str(exc), error_type=type(exc).__name__),
    )
