"""Embedding similarity, heuristic node classification and link prediction.

These are rule-based scorers over the structure and embeddings already
attached by :class:`~datagraph.graph.store.GraphStore`, not trained
models. The pairwise passes are O(n²) over nodes; they are evaluated in
row blocks with numpy/scipy so memory stays bounded and the ranking is
deterministic (score descending, then node insertion order).
"""

from __future__ import annotations

import heapq
import logging
from typing import Sequence

import numpy as np
from scipy import sparse

from datagraph.analysis.insights import LinkPrediction, NodeClassification, SimilarPair
from datagraph.config.settings import settings
from datagraph.graph.models import Node
from datagraph.graph.store import GraphStore

logger = logging.getLogger(__name__)

# Link probability weights
COMMON_NEIGHBOR_WEIGHT = 0.2
EMBEDDING_WEIGHT = 0.5
SHARED_LABEL_WEIGHT = 0.1

# Label → class for nodes that are not hubs
LABEL_CLASSES: dict[str, str] = {
    "Person": "person",
    "Organization": "organization",
}


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine of the angle between two vectors, in [-1, 1].

    Zero-length, zero-norm or mismatched vectors score 0.
    """
    if len(a) != len(b) or len(a) == 0:
        return 0.0
    va = np.asarray(a, dtype=float)
    vb = np.asarray(b, dtype=float)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.clip(va @ vb / norm, -1.0, 1.0))


def _unit_rows(nodes: Sequence[Node]) -> np.ndarray:
    """Row-normalised embedding matrix; rows are zero where the node has
    no embedding or one of a different dimensionality."""
    dims = next((len(n.embedding) for n in nodes if n.embedding), 0)
    matrix = np.zeros((len(nodes), dims))
    for i, node in enumerate(nodes):
        if node.embedding and len(node.embedding) == dims:
            matrix[i] = node.embedding
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    return np.divide(matrix, norms, out=np.zeros_like(matrix), where=norms > 0)


def _upper_mask(start: int, stop: int, n: int) -> np.ndarray:
    rows = np.arange(start, stop)[:, None]
    return np.arange(n)[None, :] > rows


# ---------------------------------------------------------------------------
# Similarity
# ---------------------------------------------------------------------------


def similar_pairs(
    nodes: Sequence[Node],
    threshold: float | None = None,
    limit: int = 10,
    block_size: int | None = None,
) -> list[SimilarPair]:
    """Most similar embedded node pairs with cosine above ``threshold``."""
    threshold = settings.SIMILARITY_THRESHOLD if threshold is None else threshold
    block_size = block_size or settings.PAIRWISE_BLOCK_SIZE
    embedded = [n for n in nodes if n.embedding]
    if len(embedded) < 2:
        return []

    unit = _unit_rows(embedded)
    n = len(embedded)
    best: list[tuple[float, int, int]] = []
    for start in range(0, n, block_size):
        stop = min(start + block_size, n)
        sims = np.clip(unit[start:stop] @ unit.T, -1.0, 1.0)
        hits = (sims > threshold) & _upper_mask(start, stop, n)
        rows, cols = np.nonzero(hits)
        candidates = [
            (float(sims[r, c]), start + int(r), int(c)) for r, c in zip(rows, cols)
        ]
        best = heapq.nsmallest(limit, best + candidates, key=lambda t: (-t[0], t[1], t[2]))

    return [
        SimilarPair(first_id=embedded[i].id, second_id=embedded[j].id, similarity=sim)
        for sim, i, j in best
    ]


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


def classify_node(node: Node) -> NodeClassification | None:
    """Rule-based class for a node with both embedding and centrality."""
    if not node.embedding or node.centrality is None:
        return None

    pagerank = node.centrality.pagerank
    degree = node.centrality.degree
    if pagerank > 0.1 and degree > 5:
        predicted, confidence = "hub", 0.9
    else:
        label_class = next(
            (LABEL_CLASSES[label] for label in LABEL_CLASSES if label in node.labels),
            None,
        )
        if label_class:
            predicted, confidence = label_class, 0.8
        elif degree == 1:
            predicted, confidence = "leaf", 0.7
        else:
            predicted, confidence = "entity", 0.6

    return NodeClassification(
        node_id=node.id,
        predicted_class=predicted,
        confidence=confidence,
        features=tuple(node.embedding),
    )


def classify_nodes(nodes: Sequence[Node]) -> list[NodeClassification]:
    """Classify every node that has the inputs; graphs under two nodes are skipped."""
    if len(nodes) < 2:
        return []
    results = [c for c in (classify_node(n) for n in nodes) if c is not None]
    skipped = len(nodes) - len(results)
    if skipped:
        logger.debug("Classification skipped %d nodes lacking embedding or centrality", skipped)
    return results


# ---------------------------------------------------------------------------
# Link prediction
# ---------------------------------------------------------------------------


def _adjacency(store: GraphStore, index: dict[str, int]) -> sparse.csr_array:
    rows: list[int] = []
    cols: list[int] = []
    for rel in store.relationships():
        u, v = index[rel.start_node_id], index[rel.end_node_id]
        if u != v:
            rows += (u, v)
            cols += (v, u)
    n = len(index)
    matrix = sparse.csr_array(
        (np.ones(len(rows)), (np.array(rows, dtype=np.int64), np.array(cols, dtype=np.int64))),
        shape=(n, n),
    )
    return (matrix > 0).astype(float)


def _label_incidence(nodes: Sequence[Node]) -> sparse.csr_array:
    vocabulary: dict[str, int] = {}
    rows: list[int] = []
    cols: list[int] = []
    for i, node in enumerate(nodes):
        for label in node.labels:
            rows.append(i)
            cols.append(vocabulary.setdefault(label, len(vocabulary)))
    return sparse.csr_array(
        (np.ones(len(rows)), (np.array(rows, dtype=np.int64), np.array(cols, dtype=np.int64))),
        shape=(len(nodes), max(len(vocabulary), 1)),
    )


def predict_links(
    store: GraphStore,
    threshold: float | None = None,
    limit: int | None = None,
    block_size: int | None = None,
) -> list[LinkPrediction]:
    """Score unconnected node pairs and return the most probable links.

    probability = clip(0.2·|common neighbours| + 0.5·cosine(embeddings)
    + 0.1·|shared labels|, 0, 1). Pairs joined by a relationship in
    either direction are never returned.
    """
    threshold = settings.LINK_PROBABILITY_THRESHOLD if threshold is None else threshold
    limit = settings.MAX_LINK_PREDICTIONS if limit is None else limit
    block_size = block_size or settings.PAIRWISE_BLOCK_SIZE

    nodes = store.nodes()
    n = len(nodes)
    if n < 2:
        return []

    index = {node.id: i for i, node in enumerate(nodes)}
    adjacency = _adjacency(store, index)
    common = (adjacency @ adjacency).tocsr()
    incidence = _label_incidence(nodes)
    shared = (incidence @ incidence.T).tocsr()
    unit = _unit_rows(nodes)

    best: list[tuple[float, int, int, int, float, int]] = []
    for start in range(0, n, block_size):
        stop = min(start + block_size, n)
        cosine = np.clip(unit[start:stop] @ unit.T, -1.0, 1.0)
        neighbors = common[start:stop].toarray()
        labels = shared[start:stop].toarray()
        probability = np.clip(
            COMMON_NEIGHBOR_WEIGHT * neighbors
            + EMBEDDING_WEIGHT * cosine
            + SHARED_LABEL_WEIGHT * labels,
            0.0,
            1.0,
        )
        eligible = (
            _upper_mask(start, stop, n)
            & (adjacency[start:stop].toarray() == 0)
            & (probability > threshold)
        )
        rows, cols = np.nonzero(eligible)
        candidates = [
            (
                float(probability[r, c]),
                start + int(r),
                int(c),
                int(neighbors[r, c]),
                float(cosine[r, c]),
                int(labels[r, c]),
            )
            for r, c in zip(rows, cols)
        ]
        best = heapq.nsmallest(limit, best + candidates, key=lambda t: (-t[0], t[1], t[2]))

    return [
        LinkPrediction(
            source_id=nodes[i].id,
            target_id=nodes[j].id,
            probability=prob,
            common_neighbors=cn,
            similarity=sim,
            shared_labels=sl,
        )
        for prob, i, j, cn, sim, sl in best
    ]
