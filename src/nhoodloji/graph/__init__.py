"""
graph - Neighbour graph and nearest-neighbour search

Modules
-------
- graph: KNNGraph container, KNN graph construction, adjacency wrapping
- knn: K-nearest neighbour queries over an embedding
"""

from .graph import (
    KNNGraph,
    build_knn_graph,
    graph_from_adjacency,
)
from .knn import KNNResult, find_knn

__all__ = [
    'KNNGraph',
    'build_knn_graph',
    'graph_from_adjacency',
    'KNNResult',
    'find_knn',
]
