"""
sampling.py - Random vertex sampling on a neighbour graph
"""
from __future__ import annotations

import numpy as np

from ..data.config import InvalidParameterError
from ..graph.graph import KNNGraph


def sample_vertices(
    graph: KNNGraph,
    prop: float,
    random_state: int | None = None,
) -> np.ndarray:
    """
    Draw floor(prop * n_cells) distinct vertices uniformly at random.

    Parameters
    ----------
    graph : KNNGraph
        Neighbour graph to sample from.
    prop : float
        Proportion of vertices to sample, 0 < prop < 1.
    random_state : int, optional
        Random seed for reproducibility.

    Returns
    -------
    np.ndarray
        Sampled vertex positions, in draw order.
    """
    if not isinstance(graph, KNNGraph) or not graph.is_valid():
        raise InvalidParameterError(
            "Not a valid graph - please run build_knn_graph() first"
        )
    if not 0 < prop < 1:
        raise InvalidParameterError(f"prop must be in (0, 1), got {prop}")

    n_sample = int(np.floor(prop * graph.vertex_count()))
    return graph.sample_vertices(n_sample, random_state=random_state)
