"""
graph.py - KNN graph construction from a reduced-dimensional embedding

Builds the cell-cell graph that neighbourhoods are defined on. The graph
is stored as a symmetric sparse adjacency plus matching edge distances.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nhoodloji.data.core import nhoodloji

from dataclasses import dataclass, field
import warnings

import numpy as np
import pandas as pd
from scipy import sparse

from ..data.config import (
    InvalidParameterError,
    InvalidInputTypeError,
    DimensionMismatchError,
)
from .knn import find_knn


@dataclass
class KNNGraph:
    """
    Container for a neighbour graph over cells.

    Attributes
    ----------
    adjacency : sparse.csr_matrix
        Binary symmetric adjacency matrix (n_cells x n_cells).
    distances : sparse.csr_matrix or None
        Edge distances (same sparsity as adjacency).
    cell_ids : pd.Index
        Cell IDs matching matrix rows/columns.
    method : str
        Construction method ('knn' or 'adjacency').
    params : dict
        Parameters used (e.g., {'k': 21, 'd': 30}).
    """
    adjacency: sparse.csr_matrix
    distances: sparse.csr_matrix | None = None
    cell_ids: pd.Index | None = None
    method: str = 'adjacency'
    params: dict = field(default_factory=dict)

    def __post_init__(self):
        if self.cell_ids is None:
            self.cell_ids = pd.Index(
                [str(i) for i in range(self.adjacency.shape[0])], name='cell'
            )

    # ---- graph accessor interface ----

    def vertex_count(self) -> int:
        return self.adjacency.shape[0]

    def neighbors(self, vertex: int) -> np.ndarray:
        """Positions of the vertices adjacent to ``vertex``."""
        if not 0 <= vertex < self.vertex_count():
            raise InvalidParameterError(
                f"Vertex {vertex} not in graph with {self.vertex_count()} vertices"
            )
        return self.adjacency[vertex].nonzero()[1]

    def sample_vertices(self, count: int, random_state: int | None = None) -> np.ndarray:
        """Draw ``count`` distinct vertices uniformly without replacement."""
        if not 0 <= count <= self.vertex_count():
            raise InvalidParameterError(
                f"Cannot sample {count} vertices from {self.vertex_count()}"
            )
        rng = np.random.default_rng(random_state)
        return rng.choice(self.vertex_count(), size=count, replace=False)

    def is_valid(self) -> bool:
        """True if the adjacency is a square sparse matrix aligned to cell_ids."""
        if not sparse.issparse(self.adjacency):
            return False
        n_rows, n_cols = self.adjacency.shape
        if n_rows != n_cols or n_rows == 0:
            return False
        if len(self.cell_ids) != n_rows:
            return False
        if self.distances is not None and self.distances.shape != self.adjacency.shape:
            return False
        return True

    # ---- summaries ----

    @property
    def n_cells(self) -> int:
        return self.vertex_count()

    @property
    def n_edges(self) -> int:
        """Undirected edge count."""
        return self.adjacency.nnz // 2

    def degree_series(self) -> pd.Series:
        """Degree (neighbour count) for every cell."""
        degrees = np.asarray(self.adjacency.sum(axis=1)).flatten().astype(int)
        return pd.Series(degrees, index=self.cell_ids, name='degree')

    def summary(self) -> dict:
        degrees = np.asarray(self.adjacency.sum(axis=1)).flatten()
        dists = self.distances.data if self.distances is not None else np.array([])
        return {
            'method': self.method,
            'params': self.params,
            'n_cells': self.n_cells,
            'n_edges': self.n_edges,
            'mean_degree': degrees.mean(),
            'min_degree': int(degrees.min()),
            'max_degree': int(degrees.max()),
            'mean_edge_distance': dists.mean() if len(dists) > 0 else 0,
        }

    def __repr__(self) -> str:
        s = self.summary()
        return (
            f"KNNGraph (method={s['method']}, "
            f"{s['n_cells']} cells, {s['n_edges']} edges, "
            f"mean degree={s['mean_degree']:.1f})"
        )


def graph_from_adjacency(
    adjacency,
    distances=None,
    cell_ids=None,
) -> KNNGraph:
    """
    Wrap an existing adjacency matrix (e.g. scanpy connectivities).

    Non-zero entries become edges; the result is symmetrised and any
    self-loops are removed.

    Parameters
    ----------
    adjacency : array-like or sparse matrix
        (n_cells x n_cells) adjacency or connectivity weights.
    distances : array-like or sparse matrix, optional
        Edge distances with the same shape.
    cell_ids : list or pd.Index, optional
        Cell identifiers. Row positions are used if None.

    Returns
    -------
    KNNGraph
    """
    adj = sparse.csr_matrix(adjacency)
    if adj.shape[0] != adj.shape[1]:
        raise DimensionMismatchError(f"Adjacency must be square, got {adj.shape}")

    adj = ((adj != 0) + (adj.T != 0)).astype(np.float32)
    adj.setdiag(0)
    adj.eliminate_zeros()

    dist = None
    if distances is not None:
        dist = sparse.csr_matrix(distances)
        if dist.shape != adj.shape:
            raise DimensionMismatchError(
                f"distances shape {dist.shape} does not match adjacency {adj.shape}"
            )
        dist = dist.maximum(dist.T).tocsr()

    if cell_ids is not None:
        cell_ids = pd.Index(cell_ids, name='cell')
        if len(cell_ids) != adj.shape[0]:
            raise DimensionMismatchError(
                f"{len(cell_ids)} cell_ids for {adj.shape[0]} vertices"
            )

    return KNNGraph(
        adjacency=adj.tocsr(),
        distances=dist,
        cell_ids=cell_ids,
        method='adjacency',
        params={},
    )


def build_knn_graph(
    x,
    k: int | None = None,
    d: int | None = None,
    reduced_dims: str | np.ndarray | pd.DataFrame | None = None,
    inplace: bool = True,
) -> KNNGraph:
    """
    Build K-nearest neighbors graph from a reduced-dimensional embedding.

    Each cell connects to its k closest neighbours in the first ``d``
    dimensions. The resulting graph is symmetrised (if A is neighbour of B,
    B is also neighbour of A).

    Parameters
    ----------
    x : nhoodloji or array-like
        nhoodloji object, or an (n_cells x n_dims) embedding matrix.
    k : int, optional
        Number of neighbours. Defaults to config.default_k (21).
    d : int, optional
        Number of embedding dimensions to use. Defaults to config.default_d.
    reduced_dims : str, optional
        Embedding key when x is a nhoodloji object.
    inplace : bool
        Store the graph (and k) on the nhoodloji object.

    Returns
    -------
    KNNGraph
    """
    from ..data.core import nhoodloji

    if isinstance(x, nhoodloji):
        config = x.config
        k = config.default_k if k is None else k
        d = config.default_d if d is None else d
        embedding = x.get_embedding(reduced_dims, d=d)
        cell_ids = x.cell_index
    elif isinstance(x, (np.ndarray, pd.DataFrame)):
        k = 21 if k is None else k
        embedding = np.asarray(x, dtype=float)
        if d is not None:
            if d > embedding.shape[1]:
                warnings.warn(
                    f"Specified d={d} is higher than the {embedding.shape[1]} available "
                    f"dimensions. Falling back to {embedding.shape[1]}",
                    stacklevel=2,
                )
            embedding = embedding[:, :d]
        cell_ids = x.index.astype(str) if isinstance(x, pd.DataFrame) else None
    else:
        raise InvalidInputTypeError(
            f"Data format: {type(x).__name__} not recognised. "
            "Should be nhoodloji or an embedding matrix"
        )

    n_cells = embedding.shape[0]
    knn = find_knn(embedding, k=k)
    k_used = knn.index.shape[1]

    # Build sparse distance matrix (asymmetric at this point)
    rows = np.repeat(np.arange(n_cells), k_used)
    cols = knn.index.flatten()
    dists = knn.distance.flatten()
    dist_sparse = sparse.csr_matrix((dists, (rows, cols)), shape=(n_cells, n_cells))

    # Symmetrise: union of A->B and B->A, keeping the larger distance
    dist_sym = dist_sparse.maximum(dist_sparse.T).tocsr()
    # Edges come from the index, not the distances, so duplicate points
    # (zero distance) still connect
    edges = sparse.csr_matrix(
        (np.ones(len(rows), dtype=np.float32), (rows, cols)), shape=(n_cells, n_cells)
    )
    adjacency = ((edges + edges.T) != 0).astype(np.float32).tocsr()

    graph = KNNGraph(
        adjacency=adjacency,
        distances=dist_sym,
        cell_ids=cell_ids,
        method='knn',
        params={'k': k_used, 'd': embedding.shape[1]},
    )

    print(f"  ✓ KNN graph: k={k_used}, {graph.n_edges} edges, "
          f"mean degree={np.asarray(adjacency.sum(1)).mean():.1f}")

    if isinstance(x, nhoodloji) and inplace:
        x.graph = graph
        x.k = k_used

    return graph
