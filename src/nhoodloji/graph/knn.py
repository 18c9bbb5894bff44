"""
knn.py - K-nearest neighbour search over an embedding

Thin wrapper around sklearn's NearestNeighbors that mirrors how
neighbourhood construction queries the embedding: a subset of query
points searched against the full point set, never returning the query
point itself.
"""
from __future__ import annotations

from dataclasses import dataclass
import warnings

import numpy as np
import pandas as pd
from sklearn.neighbors import NearestNeighbors

from ..data.config import InvalidParameterError, DimensionMismatchError


@dataclass
class KNNResult:
    """
    Result of a KNN query.

    Attributes
    ----------
    index : np.ndarray
        (n_queries x k) integer positions into the searched points,
        ordered by increasing distance.
    distance : np.ndarray or None
        (n_queries x k) distances matching ``index``.
    """
    index: np.ndarray
    distance: np.ndarray | None = None


def find_knn(
    points: np.ndarray | pd.DataFrame,
    k: int,
    subset: np.ndarray | list | None = None,
    get_distance: bool = True,
) -> KNNResult:
    """
    Find the k nearest neighbours of each query point.

    Parameters
    ----------
    points : np.ndarray or pd.DataFrame
        (n_points x n_dims) coordinates.
    k : int
        Number of neighbours to return per query.
    subset : array-like of int, optional
        Row positions to query. All rows if None.
    get_distance : bool
        Also return distances.

    Returns
    -------
    KNNResult
    """
    X = np.asarray(points, dtype=float)
    if X.ndim != 2:
        raise DimensionMismatchError(f"points must be 2D, got shape {X.shape}")
    n_points = X.shape[0]

    if k < 1:
        raise InvalidParameterError(f"k must be >= 1, got {k}")
    if k > n_points - 1:
        warnings.warn(
            f"k={k} is larger than the number of other points ({n_points - 1}). "
            f"Falling back to k={n_points - 1}",
            stacklevel=2,
        )
        k = n_points - 1
    if k < 1:
        raise DimensionMismatchError("Need at least 2 points for a neighbour search")

    if subset is None:
        query_ix = np.arange(n_points)
    else:
        query_ix = np.asarray(subset, dtype=int).ravel()
        if query_ix.size and (query_ix.min() < 0 or query_ix.max() >= n_points):
            raise InvalidParameterError("subset contains positions outside the point set")

    # k+1 because sklearn includes the query point itself
    nn = NearestNeighbors(n_neighbors=k + 1, metric='euclidean')
    nn.fit(X)
    dist_matrix, idx_matrix = nn.kneighbors(X[query_ix])

    # Drop the query point; with duplicate coordinates it may not be in
    # column 0, and if it is absent the furthest hit goes instead
    is_self = idx_matrix == query_ix[:, None]
    no_self = ~is_self.any(axis=1)
    is_self[no_self, -1] = True
    first_self = is_self.argmax(axis=1)
    drop = np.zeros_like(is_self)
    drop[np.arange(len(query_ix)), first_self] = True

    index = idx_matrix[~drop].reshape(len(query_ix), k)
    distance = dist_matrix[~drop].reshape(len(query_ix), k) if get_distance else None

    return KNNResult(index=index, distance=distance)
