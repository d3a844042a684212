"""Entity graph construction and storage.

Turns tabular rows into an entity co-occurrence graph and runs the
structural algorithms (embeddings, centrality, communities, anomalies,
aggregate metrics) over it.

Usage::

    from datagraph.graph import GraphBuilder

    builder = GraphBuilder()
    store = builder.build(rows, columns, dataset_id="orders")

    store.generate_embeddings()
    store.compute_centrality()
    communities = store.detect_communities()
    customers = store.query("MATCH (n:Customer) RETURN n LIMIT 10")
"""

from datagraph.graph.models import ColumnDescriptor, Node, Relationship
from datagraph.graph.store import GraphError, GraphIntegrityError, GraphStore
from datagraph.graph.builder import BuildStats, GraphBuilder

__all__ = [
    "ColumnDescriptor",
    "Node",
    "Relationship",
    "GraphStore",
    "GraphError",
    "GraphIntegrityError",
    "GraphBuilder",
    "BuildStats",
]
