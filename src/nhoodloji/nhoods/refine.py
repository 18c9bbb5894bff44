"""
refine.py - Refined sampling of neighbourhood anchors

Each randomly sampled vertex is moved to the cell closest to the median
position of its k nearest neighbours in the embedding. Samples that fall
in the same dense region collapse onto the same anchor, which keeps the
number of overlapping neighbourhoods (and the testing burden) down.
"""
from __future__ import annotations

import warnings

import numpy as np
import pandas as pd

from ..data.config import InvalidParameterError, NhoodlojiError
from ..graph.knn import find_knn


def _as_labelled_embedding(embedding) -> pd.DataFrame:
    """Embedding as a DataFrame with row identifiers."""
    if embedding is None:
        raise InvalidParameterError(
            "No reduced dimensions matrix provided - required for refined sampling"
        )
    if isinstance(embedding, pd.DataFrame):
        return embedding
    arr = np.asarray(embedding, dtype=float)
    if arr.ndim != 2:
        raise InvalidParameterError(
            f"Reduced dimensions must be a 2D matrix, got shape {arr.shape}"
        )
    warnings.warn(
        "Row names not set on reduced dimensions - setting to row indices",
        stacklevel=3,
    )
    return pd.DataFrame(arr, index=[str(i) for i in range(arr.shape[0])])


def refine_vertices(
    random_vertices: np.ndarray,
    embedding: np.ndarray | pd.DataFrame,
    k: int,
) -> np.ndarray:
    """
    Snap sampled vertices to the cell nearest their neighbourhood median.

    Parameters
    ----------
    random_vertices : np.ndarray
        Positions of the randomly sampled vertices.
    embedding : np.ndarray or pd.DataFrame
        (n_cells x d) reduced dimensions, rows aligned to graph vertices.
        A bare array has its row identifiers synthesised (with a warning).
    k : int
        Neighbours per sample; the same k the graph was built with.

    Returns
    -------
    np.ndarray
        One anchor position per sampled vertex (not deduplicated).
    """
    X = _as_labelled_embedding(embedding).to_numpy(dtype=float)
    random_vertices = np.asarray(random_vertices, dtype=int)
    m = len(random_vertices)
    if m == 0:
        return np.array([], dtype=int)

    # Median profile of each sample's k nearest neighbours
    vertex_knn = find_knn(X, k=k, subset=random_vertices, get_distance=False)
    nh_reduced_dims = np.median(X[vertex_knn.index], axis=1)  # (m, d)

    # Search the medians against medians + cells together; m + 1 candidates
    # guarantee at least one real cell per row since only m - 1 other medians exist
    all_reduced_dims = np.vstack([nh_reduced_dims, X])
    n_candidates = min(m + 1, all_reduced_dims.shape[0] - 1)
    nn_mat = find_knn(
        all_reduced_dims, k=n_candidates, subset=np.arange(m), get_distance=False
    ).index

    # First candidate outside the median block, scanning ranks in order
    selected = np.full(m, -1, dtype=int)
    for rank in range(n_candidates):
        pending = selected < 0
        if not pending.any():
            break
        hit = pending & (nn_mat[:, rank] >= m)
        selected[hit] = nn_mat[hit, rank]

    if (selected < 0).any():
        raise NhoodlojiError("Could not match every neighbourhood median to a cell")

    return selected - m
