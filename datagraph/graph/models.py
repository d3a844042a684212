"""Graph data model: column descriptors, nodes, relationships and the
value objects produced by the structural algorithms.

Nodes and relationships live in flat id-keyed maps inside
:class:`~datagraph.graph.store.GraphStore`. Everything else refers to
them by id string only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

# Roles that make a column entity-bearing regardless of cardinality
ENTITY_ROLES = frozenset({"identifier", "dimension", "entity"})

# Roles that never produce entities
NON_ENTITY_ROLES = frozenset({"measure", "temporal", "metric"})

# Inferred column types eligible for the cardinality heuristic
TEXTUAL_TYPES = frozenset({"text", "categorical", "string", "category"})


@dataclass
class ColumnDescriptor:
    """Typed description of one tabular column, supplied by ingestion."""
    name: str
    type: str = "text"
    role: str = ""                  # identifier, dimension, entity, measure, temporal
    business_meaning: str = ""      # free-text semantic hint, e.g. "customer id"

    @property
    def is_flagged_entity(self) -> bool:
        return self.role.lower() in ENTITY_ROLES

    @property
    def is_excluded(self) -> bool:
        return self.role.lower() in NON_ENTITY_ROLES

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ColumnDescriptor":
        """Build a descriptor from a plain mapping.

        Accepts ``semantic_role`` as an alias for ``role``, camelCase
        ``businessMeaning``, and boolean ``is_identifier`` /
        ``is_dimension`` flags.
        """
        role = data.get("role") or data.get("semantic_role") or ""
        if not role and data.get("is_identifier"):
            role = "identifier"
        elif not role and data.get("is_dimension"):
            role = "dimension"
        return cls(
            name=str(data["name"]),
            type=str(data.get("type") or "text").lower(),
            role=str(role).lower(),
            business_meaning=str(
                data.get("business_meaning") or data.get("businessMeaning") or ""
            ),
        )


@dataclass
class Centrality:
    """Per-node centrality record attached by the store."""
    pagerank: float
    degree: int
    betweenness: float | None = None
    closeness: float | None = None


@dataclass
class Node:
    id: str
    labels: set[str] = field(default_factory=set)
    properties: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] | None = None
    centrality: Centrality | None = None

    @property
    def name(self) -> str:
        return str(self.properties.get("name", self.id))


@dataclass
class Relationship:
    id: str
    start_node_id: str
    end_node_id: str
    type: str = "RELATED_TO"
    properties: dict[str, Any] = field(default_factory=dict)
    weight: float = 1.0


@dataclass
class CommunityResult:
    """Disjoint node-id groups, largest first, with partition modularity."""
    communities: list[list[str]] = field(default_factory=list)
    modularity: float = 0.0
    node_to_community: dict[str, int] = field(default_factory=dict)

    @property
    def count(self) -> int:
        return len(self.communities)


@dataclass
class AnomalyResult:
    anomalous_nodes: list[str] = field(default_factory=list)
    anomalous_relationships: list[str] = field(default_factory=list)
    scores: dict[str, float] = field(default_factory=dict)
    threshold: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.anomalous_nodes and not self.anomalous_relationships


@dataclass
class GraphMetrics:
    """Aggregate structure metrics.

    ``average_path_length`` and ``diameter`` are measured on the largest
    connected component only.
    """
    density: float = 0.0
    clustering: float = 0.0
    average_path_length: float = 0.0
    diameter: int = 0
    assortativity: float = 0.0
    node_count: int = 0
    edge_count: int = 0
    component_count: int = 0
    largest_component_size: int = 0


@dataclass
class QueryResult:
    nodes: list[Node] = field(default_factory=list)
    relationships: list[Relationship] = field(default_factory=list)
