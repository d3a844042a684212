"""In-memory entity graph with structural algorithms.

Nodes and relationships are kept in flat id-keyed maps with a label
index. NetworkX views are derived from those maps whenever an algorithm
needs them, so the maps stay the single source of truth:

  - ``to_networkx()``: directed multigraph, one edge per relationship
  - ``_undirected_view()``: simple undirected graph, parallel and
    reverse relationships merged with summed weights

All algorithms are re-runnable and return neutral results on graphs
with zero or one node.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from typing import Any

import networkx as nx
import numpy as np

from datagraph.config.settings import settings
from datagraph.graph.models import (
    AnomalyResult,
    Centrality,
    CommunityResult,
    GraphMetrics,
    Node,
    QueryResult,
    Relationship,
)

logger = logging.getLogger(__name__)


class GraphError(ValueError):
    """Raised for invalid operations on a graph store."""


class GraphIntegrityError(GraphError):
    """Raised when an id is reused or a relationship endpoint is missing."""


# Structural part of every embedding, in vector order
STRUCTURAL_FEATURES: tuple[str, ...] = (
    "degree",
    "weighted_degree",
    "in_degree",
    "out_degree",
    "clustering",
    "mean_neighbor_degree",
    "max_neighbor_degree",
)


# ---------------------------------------------------------------------------
# Query patterns
# ---------------------------------------------------------------------------

_LIMIT_RE = re.compile(r"\s+LIMIT\s+(\d+)\s*$", re.IGNORECASE)
_NAME = r"(?:`[^`]+`|\w+)"
_NODE_PATTERN_RE = re.compile(
    rf"^MATCH\s*\(\s*(?P<var>\w+)\s*(?::\s*(?P<label>{_NAME}))?\s*\)"
    r"\s*RETURN\s+(?P=var)$",
    re.IGNORECASE,
)
_REL_PATTERN_RE = re.compile(
    r"^MATCH\s*\(\s*(?P<start>\w*)\s*\)\s*-\s*"
    rf"\[\s*(?P<var>\w+)\s*(?::\s*(?P<type>{_NAME}))?\s*\]"
    r"\s*->\s*\(\s*(?P<end>\w*)\s*\)\s*RETURN\s+(?P<ret>[\w\s,]+)$",
    re.IGNORECASE,
)


def _unquote(name: str | None) -> str | None:
    if name and name.startswith("`"):
        return name[1:-1]
    return name


def _label_bucket(label: str, buckets: int) -> int:
    # Stable across processes, unlike hash()
    digest = hashlib.md5(label.encode("utf-8")).hexdigest()
    return int(digest, 16) % buckets


def _zscores(values: np.ndarray) -> np.ndarray:
    if values.size == 0:
        return values
    # All equal up to rounding
    if np.allclose(values, values[0], rtol=1e-9, atol=1e-12):
        return np.zeros_like(values)
    return (values - values.mean()) / values.std()


class GraphStore:
    """Owns one entity graph and runs structural analyses over it.

    Parameters
    ----------
    damping:
        PageRank damping factor.
    anomaly_threshold:
        Absolute z-score above which a node or relationship is anomalous.
    label_buckets:
        Width of the hashed neighbour-label histogram in each embedding.
    seed:
        Seed for the community detection heuristic.
    """

    def __init__(
        self,
        damping: float | None = None,
        anomaly_threshold: float | None = None,
        label_buckets: int | None = None,
        seed: int | None = None,
    ) -> None:
        self._nodes: dict[str, Node] = {}
        self._relationships: dict[str, Relationship] = {}
        self._nodes_by_label: dict[str, set[str]] = {}
        self._damping = settings.PAGERANK_DAMPING if damping is None else damping
        self._anomaly_threshold = (
            settings.ANOMALY_Z_THRESHOLD if anomaly_threshold is None else anomaly_threshold
        )
        self._label_buckets = label_buckets or settings.EMBEDDING_LABEL_BUCKETS
        self._seed = settings.RANDOM_SEED if seed is None else seed

    # -- Basic accessors -----------------------------------------------------

    @property
    def node_count(self) -> int:
        return len(self._nodes)

    @property
    def relationship_count(self) -> int:
        return len(self._relationships)

    @property
    def embedding_dimensions(self) -> int:
        return len(STRUCTURAL_FEATURES) + self._label_buckets

    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    def relationships(self) -> list[Relationship]:
        return list(self._relationships.values())

    def get_node(self, node_id: str) -> Node | None:
        return self._nodes.get(node_id)

    def get_relationship(self, relationship_id: str) -> Relationship | None:
        return self._relationships.get(relationship_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    # -- Mutation ------------------------------------------------------------

    def add_node(self, node: Node) -> None:
        if node.id in self._nodes:
            raise GraphIntegrityError(f"Duplicate node id: {node.id}")
        self._nodes[node.id] = node
        for label in node.labels:
            self._nodes_by_label.setdefault(label, set()).add(node.id)

    def add_relationship(self, relationship: Relationship) -> None:
        if relationship.id in self._relationships:
            raise GraphIntegrityError(f"Duplicate relationship id: {relationship.id}")
        for endpoint in (relationship.start_node_id, relationship.end_node_id):
            if endpoint not in self._nodes:
                raise GraphIntegrityError(
                    f"Relationship {relationship.id} references unknown node {endpoint}"
                )
        self._relationships[relationship.id] = relationship

    def clear(self) -> None:
        self._nodes.clear()
        self._relationships.clear()
        self._nodes_by_label.clear()

    # -- Traversal -----------------------------------------------------------

    def get_nodes_by_label(self, label: str) -> list[Node]:
        return [
            self._nodes[nid]
            for nid in self._nodes
            if nid in self._nodes_by_label.get(label, ())
        ]

    def get_connected_nodes(
        self,
        node_id: str,
        relationship_type: str | None = None,
    ) -> list[Node]:
        """Nodes sharing a relationship with ``node_id`` in either direction."""
        connected: dict[str, None] = {}
        for rel in self._relationships.values():
            if relationship_type and rel.type != relationship_type:
                continue
            if rel.start_node_id == node_id:
                connected[rel.end_node_id] = None
            elif rel.end_node_id == node_id:
                connected[rel.start_node_id] = None
        connected.pop(node_id, None)
        return [self._nodes[nid] for nid in connected]

    def are_adjacent(self, first_id: str, second_id: str) -> bool:
        """True if any relationship joins the two nodes, in either direction."""
        return any(
            {rel.start_node_id, rel.end_node_id} == {first_id, second_id}
            for rel in self._relationships.values()
        )

    def find_shortest_path(self, start_id: str, end_id: str) -> list[Node]:
        """Shortest undirected path between two nodes, or [] if none."""
        if start_id not in self._nodes or end_id not in self._nodes:
            return []
        try:
            path = nx.shortest_path(self._undirected_view(), start_id, end_id)
        except nx.NetworkXNoPath:
            return []
        return [self._nodes[nid] for nid in path]

    # -- NetworkX views ------------------------------------------------------

    def to_networkx(self) -> nx.MultiDiGraph:
        graph = nx.MultiDiGraph()
        for node in self._nodes.values():
            graph.add_node(node.id, labels=sorted(node.labels), name=node.name)
        for rel in self._relationships.values():
            graph.add_edge(
                rel.start_node_id,
                rel.end_node_id,
                key=rel.id,
                type=rel.type,
                weight=rel.weight,
            )
        return graph

    def _undirected_view(self) -> nx.Graph:
        graph = nx.Graph()
        graph.add_nodes_from(self._nodes)
        for rel in self._relationships.values():
            u, v = rel.start_node_id, rel.end_node_id
            if u == v:
                continue
            if graph.has_edge(u, v):
                graph[u][v]["weight"] += rel.weight
            else:
                graph.add_edge(u, v, weight=rel.weight)
        return graph

    def _incident_counts(self) -> dict[str, int]:
        counts = dict.fromkeys(self._nodes, 0)
        for rel in self._relationships.values():
            counts[rel.start_node_id] += 1
            if rel.end_node_id != rel.start_node_id:
                counts[rel.end_node_id] += 1
        return counts

    # -- Embeddings ----------------------------------------------------------

    def generate_embeddings(self) -> int:
        """Attach a structural embedding to every node.

        Each vector is the seven ``STRUCTURAL_FEATURES`` (log-scaled
        counts, each divided by its graph-wide maximum) followed by a
        hashed histogram of neighbour labels, then L2-normalised.
        Isolated nodes get the all-zero vector.

        Returns the embedding dimensionality.
        """
        dims = self.embedding_dimensions
        if not self._nodes:
            return dims

        directed = self.to_networkx()
        simple = self._undirected_view()
        node_ids = list(self._nodes)
        clustering = nx.clustering(simple)

        structural = np.zeros((len(node_ids), len(STRUCTURAL_FEATURES)))
        label_hist = np.zeros((len(node_ids), self._label_buckets))

        for i, node_id in enumerate(node_ids):
            neighbors = list(simple.neighbors(node_id))
            neighbor_degrees = [simple.degree(m) for m in neighbors]
            structural[i] = (
                math.log1p(directed.degree(node_id)),
                math.log1p(directed.degree(node_id, weight="weight")),
                math.log1p(directed.in_degree(node_id)),
                math.log1p(directed.out_degree(node_id)),
                clustering.get(node_id, 0.0),
                math.log1p(sum(neighbor_degrees) / len(neighbor_degrees)) if neighbors else 0.0,
                math.log1p(max(neighbor_degrees, default=0)),
            )
            for neighbor in neighbors:
                for label in self._nodes[neighbor].labels:
                    label_hist[i, _label_bucket(label, self._label_buckets)] += 1

        maxima = structural.max(axis=0)
        maxima[maxima == 0] = 1.0
        structural /= maxima

        totals = label_hist.sum(axis=1, keepdims=True)
        np.divide(label_hist, totals, out=label_hist, where=totals > 0)

        matrix = np.hstack([structural, label_hist])
        norms = np.linalg.norm(matrix, axis=1, keepdims=True)
        np.divide(matrix, norms, out=matrix, where=norms > 0)

        for i, node_id in enumerate(node_ids):
            self._nodes[node_id].embedding = matrix[i].tolist()

        logger.debug("Generated %d-dim embeddings for %d nodes", dims, len(node_ids))
        return dims

    # -- Centrality ----------------------------------------------------------

    def compute_centrality(
        self,
        damping: float | None = None,
        max_iter: int | None = None,
        tol: float | None = None,
    ) -> dict[str, Centrality]:
        """Attach PageRank, degree and (for manageable graphs) betweenness
        and closeness to every node.

        PageRank runs on the undirected weighted view: co-occurrence
        direction only reflects column order.
        """
        if not self._nodes:
            return {}

        simple = self._undirected_view()
        pagerank = nx.pagerank(
            simple,
            alpha=self._damping if damping is None else damping,
            max_iter=max_iter or settings.PAGERANK_MAX_ITER,
            tol=tol or settings.PAGERANK_TOL,
            weight="weight",
        )
        degrees = self._incident_counts()

        betweenness: dict[str, float] = {}
        closeness: dict[str, float] = {}
        if len(self._nodes) <= settings.EXACT_CENTRALITY_MAX_NODES:
            betweenness = nx.betweenness_centrality(simple)
            closeness = nx.closeness_centrality(simple)

        results: dict[str, Centrality] = {}
        for node_id, node in self._nodes.items():
            node.centrality = Centrality(
                pagerank=float(pagerank.get(node_id, 0.0)),
                degree=degrees[node_id],
                betweenness=betweenness.get(node_id),
                closeness=closeness.get(node_id),
            )
            results[node_id] = node.centrality
        return results

    # -- Community detection -------------------------------------------------

    def detect_communities(self, resolution: float | None = None) -> CommunityResult:
        """Partition nodes with Louvain modularity optimisation.

        Louvain never merges disconnected components, so every component
        contributes at least one community. Graphs without edges yield
        one singleton per node and modularity 0.
        """
        if not self._nodes:
            return CommunityResult()

        resolution = settings.COMMUNITY_RESOLUTION if resolution is None else resolution
        order = {nid: i for i, nid in enumerate(self._nodes)}
        simple = self._undirected_view()

        if simple.number_of_edges() == 0:
            groups = [[nid] for nid in self._nodes]
            modularity = 0.0
        else:
            found = nx.community.louvain_communities(
                simple, weight="weight", resolution=resolution, seed=self._seed,
            )
            groups = [sorted(c, key=order.__getitem__) for c in found]
            modularity = nx.community.modularity(
                simple, found, weight="weight", resolution=resolution,
            )

        groups.sort(key=lambda g: (-len(g), order[g[0]]))
        node_to_community = {
            nid: index for index, group in enumerate(groups) for nid in group
        }
        return CommunityResult(
            communities=groups,
            modularity=max(-1.0, min(1.0, float(modularity))),
            node_to_community=node_to_community,
        )

    # -- Anomaly detection ---------------------------------------------------

    def detect_anomalies(self, threshold: float | None = None) -> AnomalyResult:
        """Score nodes and relationships by z-score deviation.

        Node score is the larger of |z(degree)| and, when embeddings are
        present, |z(distance from the embedding centroid)|. Relationship
        score is |z(weight)|. Anything above ``threshold`` is anomalous.
        """
        threshold = self._anomaly_threshold if threshold is None else threshold
        result = AnomalyResult(threshold=threshold)
        if not self._nodes:
            return result

        node_ids = list(self._nodes)
        degrees = self._incident_counts()
        node_scores = np.abs(_zscores(np.array([degrees[n] for n in node_ids], dtype=float)))

        embedded = [
            i for i, nid in enumerate(node_ids) if self._nodes[nid].embedding
        ]
        dims = {len(self._nodes[node_ids[i]].embedding) for i in embedded}
        if len(embedded) > 1 and len(dims) == 1:
            matrix = np.array([self._nodes[node_ids[i]].embedding for i in embedded])
            distances = np.linalg.norm(matrix - matrix.mean(axis=0), axis=1)
            distance_scores = np.abs(_zscores(distances))
            node_scores[embedded] = np.maximum(node_scores[embedded], distance_scores)

        rel_ids = list(self._relationships)
        weights = np.array([self._relationships[r].weight for r in rel_ids], dtype=float)
        rel_scores = np.abs(_zscores(weights))

        for node_id, score in zip(node_ids, node_scores):
            result.scores[node_id] = float(score)
        for rel_id, score in zip(rel_ids, rel_scores):
            result.scores[rel_id] = float(score)

        result.anomalous_nodes = sorted(
            (nid for nid in node_ids if result.scores[nid] > threshold),
            key=lambda nid: -result.scores[nid],
        )
        result.anomalous_relationships = sorted(
            (rid for rid in rel_ids if result.scores[rid] > threshold),
            key=lambda rid: -result.scores[rid],
        )
        return result

    # -- Aggregate metrics ---------------------------------------------------

    def compute_metrics(self) -> GraphMetrics:
        """Density, clustering, path statistics and assortativity.

        Average path length and diameter cover the largest connected
        component only; across components they are not defined.
        """
        count = len(self._nodes)
        metrics = GraphMetrics(
            node_count=count,
            edge_count=len(self._relationships),
            component_count=count,
            largest_component_size=count,
        )
        if count < 2:
            return metrics

        simple = self._undirected_view()
        metrics.density = nx.density(simple)
        metrics.clustering = nx.average_clustering(simple)

        components = list(nx.connected_components(simple))
        largest = max(components, key=len)
        metrics.component_count = len(components)
        metrics.largest_component_size = len(largest)
        if len(largest) > 1:
            core = simple.subgraph(largest)
            metrics.average_path_length = nx.average_shortest_path_length(core)
            metrics.diameter = nx.diameter(core)

        metrics.assortativity = self._assortativity(simple)
        return metrics

    @staticmethod
    def _assortativity(simple: nx.Graph) -> float:
        if simple.number_of_edges() < 2:
            return 0.0
        with np.errstate(divide="ignore", invalid="ignore"):
            value = nx.degree_assortativity_coefficient(simple)
        if not math.isfinite(value):
            logger.debug("Degree assortativity undefined (uniform degrees)")
            return 0.0
        return max(-1.0, min(1.0, float(value)))

    # -- Query ---------------------------------------------------------------

    def query(self, pattern: str) -> QueryResult:
        """Minimal pattern retrieval.

        Supported::

            MATCH (n) RETURN n
            MATCH (n:Label) RETURN n
            MATCH ()-[r]->() RETURN r
            MATCH ()-[r:TYPE]->() RETURN r
            MATCH (a)-[r]->(b) RETURN a, r, b

        Each may end with ``LIMIT k``. Anything else returns an empty
        result.
        """
        text = pattern.strip()
        limit: int | None = None
        limit_match = _LIMIT_RE.search(text)
        if limit_match:
            limit = int(limit_match.group(1))
            text = text[: limit_match.start()].strip()

        node_match = _NODE_PATTERN_RE.match(text)
        if node_match:
            label = _unquote(node_match.group("label"))
            nodes = self.get_nodes_by_label(label) if label else self.nodes()
            return QueryResult(nodes=nodes[:limit])

        rel_match = _REL_PATTERN_RE.match(text)
        if rel_match:
            rel_type = _unquote(rel_match.group("type"))
            rels = [
                r for r in self._relationships.values()
                if not rel_type or r.type == rel_type
            ][:limit]
            returned = {part.strip() for part in rel_match.group("ret").split(",")}
            result = QueryResult()
            if rel_match.group("var") in returned:
                result.relationships = rels
            endpoints: dict[str, None] = {}
            for rel in rels:
                if rel_match.group("start") and rel_match.group("start") in returned:
                    endpoints[rel.start_node_id] = None
                if rel_match.group("end") and rel_match.group("end") in returned:
                    endpoints[rel.end_node_id] = None
            result.nodes = [self._nodes[nid] for nid in endpoints]
            return result

        logger.debug("Unsupported query pattern: %r", pattern)
        return QueryResult()

    # -- Summary -------------------------------------------------------------

    def summary(self) -> dict[str, Any]:
        """Return high-level graph statistics."""
        label_counts: dict[str, int] = {
            label: len(ids) for label, ids in sorted(self._nodes_by_label.items())
        }
        type_counts: dict[str, int] = {}
        for rel in self._relationships.values():
            type_counts[rel.type] = type_counts.get(rel.type, 0) + 1

        simple = self._undirected_view()
        return {
            "node_count": self.node_count,
            "relationship_count": self.relationship_count,
            "density": nx.density(simple) if self.node_count > 1 else 0.0,
            "connected_components": nx.number_connected_components(simple)
            if self.node_count else 0,
            "label_distribution": label_counts,
            "relationship_type_distribution": type_counts,
            "embedded_nodes": sum(1 for n in self._nodes.values() if n.embedding),
        }
