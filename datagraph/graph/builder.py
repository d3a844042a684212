"""Tabular rows → entity co-occurrence graph.

Each entity-bearing column contributes one node per distinct value, and
every pair of entity values appearing in the same row is joined by a
relationship whose weight counts the rows they share. The builder first
accumulates nodes and edge weights in local tables, then materialises
them into a fresh :class:`GraphStore` in one pass, so stored nodes and
relationships are never touched again by construction code.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Iterable, Mapping
from urllib.parse import quote

from datagraph.config.settings import settings
from datagraph.graph.models import TEXTUAL_TYPES, ColumnDescriptor, Node, Relationship
from datagraph.graph.store import GraphStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Semantic hints
# ---------------------------------------------------------------------------

# Keyword in a column's business meaning → node label. First match wins.
SEMANTIC_LABELS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("customer", "client"), "Customer"),
    (("product", "sku", "item"), "Product"),
    (("order", "transaction", "invoice"), "Transaction"),
    (("person", "employee", "contact", "user"), "Person"),
    (("company", "organization", "organisation", "vendor", "supplier"), "Organization"),
    (("location", "city", "country", "region", "address"), "Location"),
    (("category", "type", "segment"), "Category"),
)

# (start label, end label) → relationship type. "*" matches any label.
RELATIONSHIP_HINTS: dict[tuple[str, str], str] = {
    ("Customer", "Transaction"): "PLACED",
    ("Customer", "Product"): "PURCHASED",
    ("Transaction", "Product"): "CONTAINS",
    ("Person", "Organization"): "MEMBER_OF",
    ("Organization", "Product"): "SUPPLIES",
    ("*", "Location"): "LOCATED_IN",
    ("*", "Category"): "BELONGS_TO",
}

DEFAULT_RELATIONSHIP_TYPE = "RELATED_TO"


def label_for_column(column: ColumnDescriptor) -> str:
    """Node label for a column: semantic label if the hint maps, else the name."""
    meaning = column.business_meaning.lower()
    if meaning:
        for keywords, label in SEMANTIC_LABELS:
            if any(keyword in meaning for keyword in keywords):
                return label
    return column.name


def relationship_hint(start_label: str, end_label: str) -> tuple[str, bool]:
    """Relationship type for a label pair, and whether the edge must be
    reversed so it runs the way the hint reads.

    Hints are directional on labels, not on column order.
    """
    for key in ((start_label, end_label), ("*", end_label)):
        if key in RELATIONSHIP_HINTS:
            return RELATIONSHIP_HINTS[key], False
    for key in ((end_label, start_label), ("*", start_label)):
        if key in RELATIONSHIP_HINTS:
            return RELATIONSHIP_HINTS[key], True
    return DEFAULT_RELATIONSHIP_TYPE, False


def relationship_type_for(start_label: str, end_label: str) -> str:
    return relationship_hint(start_label, end_label)[0]


def _id_part(text: str) -> str:
    # Percent-encoded: no ":" or ">" inside a part
    return quote(text, safe="")


def _is_missing(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, float) and math.isnan(value):
        return True
    return isinstance(value, str) and not value.strip()


def _normalise(value: Any) -> str:
    return value.strip() if isinstance(value, str) else str(value)


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


@dataclass
class BuildStats:
    """Statistics from a graph build."""

    rows_processed: int = 0
    rows_skipped: int = 0
    entity_columns: list[str] = field(default_factory=list)
    nodes_created: int = 0
    relationships_created: int = 0
    relationships_strengthened: int = 0
    skipped_values: int = 0
    label_counts: dict[str, int] = field(default_factory=dict)
    relationship_type_counts: dict[str, int] = field(default_factory=dict)


@dataclass
class _PendingNode:
    node_id: str
    label: str
    value: str
    column: str
    occurrences: int = 0


@dataclass
class _PendingEdge:
    start_id: str
    end_id: str
    rel_type: str
    columns: tuple[str, str]
    weight: int = 0


class GraphBuilder:
    """Convert tabular rows into an entity graph.

    Parameters
    ----------
    max_nodes:
        Safety cap on graph size. Values that would create further
        nodes are skipped.
    max_cardinality_ratio:
        Unflagged text columns qualify only when their distinct-value
        count is at most this fraction of the row count.
    max_values_per_column:
        Unflagged text columns with more distinct values than this are
        treated as free text, not entities.
    """

    def __init__(
        self,
        max_nodes: int | None = None,
        max_cardinality_ratio: float | None = None,
        max_values_per_column: int | None = None,
    ) -> None:
        self._max_nodes = max_nodes or settings.MAX_NODES
        self._max_ratio = (
            settings.ENTITY_MAX_CARDINALITY_RATIO
            if max_cardinality_ratio is None else max_cardinality_ratio
        )
        self._max_values = max_values_per_column or settings.ENTITY_MAX_VALUES_PER_COLUMN

    def build(
        self,
        rows: Iterable[Mapping[str, Any]] | None,
        columns: Iterable[ColumnDescriptor | Mapping[str, Any]] | None,
        dataset_id: str,
    ) -> GraphStore:
        store, _ = self.build_with_stats(rows, columns, dataset_id)
        return store

    def build_with_stats(
        self,
        rows: Iterable[Mapping[str, Any]] | None,
        columns: Iterable[ColumnDescriptor | Mapping[str, Any]] | None,
        dataset_id: str,
    ) -> tuple[GraphStore, BuildStats]:
        """Build a graph and report what was loaded.

        Non-mapping rows are skipped. Input without any entity-bearing
        column yields an empty store.
        """
        stats = BuildStats()
        valid_rows: list[Mapping[str, Any]] = []
        for row in rows or []:
            if isinstance(row, Mapping):
                valid_rows.append(row)
            else:
                stats.rows_skipped += 1
        if stats.rows_skipped:
            logger.warning("Skipped %d malformed rows in dataset %s", stats.rows_skipped, dataset_id)

        descriptors = [
            c if isinstance(c, ColumnDescriptor) else ColumnDescriptor.from_dict(c)
            for c in columns or []
        ]
        entity_columns = self.select_entity_columns(valid_rows, descriptors)
        stats.entity_columns = [c.name for c in entity_columns]

        store = GraphStore()
        if not entity_columns or not valid_rows:
            logger.info("Dataset %s yields no entities; graph is empty", dataset_id)
            stats.rows_processed = len(valid_rows)
            return store, stats

        labels = {c.name: label_for_column(c) for c in entity_columns}
        pending_nodes: dict[tuple[str, str], _PendingNode] = {}
        pending_edges: dict[tuple[str, str, str], _PendingEdge] = {}
        cap_logged = False

        # Pass 1: accumulate nodes and co-occurrence weights
        for row in valid_rows:
            stats.rows_processed += 1
            row_nodes: list[_PendingNode] = []
            for column in entity_columns:
                raw = row.get(column.name)
                if _is_missing(raw):
                    continue
                key = (labels[column.name], _normalise(raw))
                pending = pending_nodes.get(key)
                if pending is None:
                    if len(pending_nodes) >= self._max_nodes:
                        stats.skipped_values += 1
                        if not cap_logged:
                            logger.warning(
                                "Node cap reached (%d). Skipping new entity values.",
                                self._max_nodes,
                            )
                            cap_logged = True
                        continue
                    pending = _PendingNode(
                        node_id=f"{dataset_id}:{_id_part(key[0])}:{_id_part(key[1])}",
                        label=key[0],
                        value=key[1],
                        column=column.name,
                    )
                    pending_nodes[key] = pending
                pending.occurrences += 1
                if pending not in row_nodes:
                    row_nodes.append(pending)

            for first, second in combinations(row_nodes, 2):
                rel_type, reverse = relationship_hint(first.label, second.label)
                if reverse:
                    first, second = second, first
                edge_key = (first.node_id, second.node_id, rel_type)
                edge = pending_edges.get(edge_key)
                if edge is None:
                    edge = _PendingEdge(
                        start_id=first.node_id,
                        end_id=second.node_id,
                        rel_type=rel_type,
                        columns=(first.column, second.column),
                    )
                    pending_edges[edge_key] = edge
                else:
                    stats.relationships_strengthened += 1
                edge.weight += 1

        # Pass 2: materialise into the store
        for pending in pending_nodes.values():
            store.add_node(Node(
                id=pending.node_id,
                labels={pending.label},
                properties={
                    "name": pending.value,
                    "value": pending.value,
                    "column": pending.column,
                    "dataset_id": dataset_id,
                    "occurrences": pending.occurrences,
                },
            ))
            stats.nodes_created += 1
            stats.label_counts[pending.label] = stats.label_counts.get(pending.label, 0) + 1

        for edge in pending_edges.values():
            store.add_relationship(Relationship(
                id=f"{edge.start_id}->{edge.end_id}:{_id_part(edge.rel_type)}",
                start_node_id=edge.start_id,
                end_node_id=edge.end_id,
                type=edge.rel_type,
                properties={
                    "dataset_id": dataset_id,
                    "source_columns": list(edge.columns),
                    "co_occurrences": edge.weight,
                },
                weight=float(edge.weight),
            ))
            stats.relationships_created += 1
            stats.relationship_type_counts[edge.rel_type] = (
                stats.relationship_type_counts.get(edge.rel_type, 0) + 1
            )

        logger.info(
            "Graph built for %s: %d nodes, %d relationships from %d rows "
            "(entity columns: %s)",
            dataset_id, stats.nodes_created, stats.relationships_created,
            stats.rows_processed, ", ".join(stats.entity_columns),
        )
        return store, stats

    def select_entity_columns(
        self,
        rows: list[Mapping[str, Any]],
        columns: list[ColumnDescriptor],
    ) -> list[ColumnDescriptor]:
        """Pick the columns whose values become graph entities.

        Flagged identifier/dimension/entity columns always qualify and
        measure/temporal columns never do. Other textual columns qualify
        on moderate-to-low cardinality relative to the row count.
        """
        selected: list[ColumnDescriptor] = []
        for column in columns:
            if column.is_flagged_entity:
                selected.append(column)
                continue
            if column.is_excluded or column.type.lower() not in TEXTUAL_TYPES:
                continue

            distinct = {
                _normalise(row.get(column.name))
                for row in rows
                if not _is_missing(row.get(column.name))
            }
            if len(distinct) < 2 or len(distinct) > self._max_values:
                continue
            if len(distinct) > self._max_ratio * len(rows):
                continue
            selected.append(column)
        return selected
