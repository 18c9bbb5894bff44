"""
spatial_fdr.py - Graph-aware FDR correction for overlapping neighbourhoods

Neighbourhoods share cells, so their tests are not independent, and dense
regions of the graph are covered by many small neighbourhoods while sparse
regions get few large ones. Each neighbourhood is given a weight from its
local density or overlap, and the p-values are adjusted with a weighted
Benjamini-Hochberg step-up procedure.
"""
from __future__ import annotations

import warnings

import numpy as np
import pandas as pd
from scipy import sparse

from ..data.config import (
    VALID_FDR_WEIGHTING,
    InvalidParameterError,
    DimensionMismatchError,
    MissingPrecomputationError,
)
from ..graph.graph import KNNGraph
from ..graph.knn import find_knn


def weighted_bh(pvalues, weights) -> np.ndarray:
    """
    Weighted Benjamini-Hochberg adjustment.

    For the test at sorted rank i with cumulative weight W_i and total
    weight W, the adjusted value is p_i * W / W_i, followed by a running
    minimum from the largest p-value down and clipping at 1.

    Parameters
    ----------
    pvalues : array-like
        Raw p-values in [0, 1]; NaN entries are left as NaN.
    weights : array-like
        Non-negative weights, same length.

    Returns
    -------
    np.ndarray
        Adjusted values in the input order.
    """
    p = np.asarray(pvalues, dtype=float).ravel()
    w = np.asarray(weights, dtype=float).ravel()
    if p.shape != w.shape:
        raise DimensionMismatchError(
            f"{len(p)} p-values but {len(w)} weights"
        )

    out = np.full(p.shape, np.nan)
    keep = ~np.isnan(p)
    if not keep.any():
        return out

    pk, wk = p[keep], w[keep]
    if np.any((pk < 0) | (pk > 1)):
        raise InvalidParameterError("p-values must be in [0, 1] or NaN")
    if np.any(~np.isfinite(wk)) or np.any(wk < 0):
        raise InvalidParameterError("weights must be finite and non-negative")
    if wk.sum() <= 0:
        warnings.warn("All spatial FDR weights are zero - using equal weights", stacklevel=2)
        wk = np.ones_like(wk)

    o = np.argsort(pk, kind="mergesort")
    ps, ws = pk[o], wk[o]
    cum_w = np.cumsum(ws)
    with np.errstate(divide="ignore", invalid="ignore"):
        adj = np.where(cum_w > 0, ps * ws.sum() / cum_w, np.inf)
    adj = np.minimum.accumulate(adj[::-1])[::-1]
    adj = np.minimum(adj, 1.0)

    q = np.empty_like(adj)
    q[o] = adj
    out[keep] = q
    return out


def _kth_distances(k, indices, distances, reduced_dimensions, graph) -> np.ndarray:
    """Distance from each anchor to its k-th nearest neighbour."""
    if distances is not None:
        if isinstance(distances, pd.DataFrame):
            if 'kth_distance' not in distances.columns:
                raise MissingPrecomputationError(
                    "distances has no 'kth_distance' column - run calc_nhood_distance() first"
                )
            t_connect = distances['kth_distance'].to_numpy(dtype=float)
        elif isinstance(distances, dict):
            # anchor -> distances to its neighbours; the furthest is the k-th
            t_connect = np.array([np.max(distances[a]) for a in indices], dtype=float)
        else:
            t_connect = np.asarray(distances, dtype=float).ravel()
        if len(t_connect) != len(indices):
            raise DimensionMismatchError(
                f"{len(t_connect)} neighbourhood distances for {len(indices)} neighbourhoods"
            )
        return t_connect

    if reduced_dimensions is not None:
        knn = find_knn(reduced_dimensions, k=k, subset=indices, get_distance=True)
        return knn.distance.max(axis=1)

    if graph is not None and graph.distances is not None:
        # A symmetrised row holds every kNN edge of the anchor plus the
        # incoming ones, so the k-th smallest entry is the k-th neighbour
        rows = graph.distances[indices].tocsr()
        t_connect = np.empty(len(indices))
        for j in range(len(indices)):
            row = rows.data[rows.indptr[j]:rows.indptr[j + 1]]
            if len(row) < k:
                raise MissingPrecomputationError(
                    f"Anchor {indices[j]} has {len(row)} stored edge distances, fewer than k={k}. "
                    "Run calc_nhood_distance() or provide reduced dimensions."
                )
            t_connect[j] = np.sort(row)[k - 1]
        return t_connect

    raise MissingPrecomputationError(
        "No distances available for k-distance weighting. "
        "Run calc_nhood_distance() or provide reduced dimensions."
    )


def _nearest_anchor_distances(indices, reduced_dimensions) -> np.ndarray:
    """Embedding distance from each anchor to the closest other anchor."""
    if reduced_dimensions is None:
        raise MissingPrecomputationError(
            "neighbour-distance weighting needs reduced dimensions"
        )
    if len(indices) < 2:
        return np.ones(len(indices))
    anchor_coords = np.asarray(reduced_dimensions, dtype=float)[indices]
    return find_knn(anchor_coords, k=1, get_distance=True).distance[:, 0]


def _max_weights(nhoods, pvalues) -> np.ndarray:
    """
    Number of cells for which each neighbourhood is the most significant
    one containing them. Ties go to the lower column.
    """
    nh = sparse.coo_matrix(nhoods)
    mask = nh.data != 0
    rows, cols = nh.row[mask], nh.col[mask]
    p = np.where(np.isnan(pvalues), np.inf, pvalues)

    order = np.lexsort((cols, p[cols], rows))
    rows, cols = rows[order], cols[order]
    first = np.r_[True, rows[1:] != rows[:-1]] if len(rows) else np.array([], dtype=bool)
    best = cols[first]
    best = best[np.isfinite(p[best])]
    return np.bincount(best, minlength=len(pvalues)).astype(float)


def graph_spatial_fdr(
    nhoods,
    graph: KNNGraph | None,
    weighting: str = "k-distance",
    k: int | None = None,
    pvalues=None,
    indices=None,
    distances=None,
    reduced_dimensions=None,
) -> np.ndarray:
    """
    Spatial FDR correction for neighbourhood p-values.

    Parameters
    ----------
    nhoods : sparse matrix
        (n_cells x n_nhoods) incidence matrix.
    graph : KNNGraph
        Neighbour graph the neighbourhoods were built on.
    weighting : str
        - 'k-distance': w = 1 / distance to the anchor's k-th neighbour
        - 'neighbour-distance': w = distance from the anchor to the
          nearest other anchor, so isolated neighbourhoods count more
        - 'max': w = number of cells whose most significant
          neighbourhood is this one
        - 'none': no correction, all NaN
    k : int, optional
        The k used to build the graph (k-distance from an embedding).
    pvalues : array-like
        Raw p-values, one per neighbourhood, ordered like nhoods columns.
    indices : array-like
        Anchor cell position per neighbourhood.
    distances : pd.DataFrame, array-like or dict, optional
        Per-neighbourhood distance summaries (see calc_nhood_distance).
    reduced_dimensions : array-like, optional
        (n_cells x d) embedding.

    Returns
    -------
    np.ndarray
        Adjusted values aligned to ``pvalues``.
    """
    if weighting not in VALID_FDR_WEIGHTING:
        raise InvalidParameterError(
            f"Weighting option '{weighting}' not recognised. Choose from {VALID_FDR_WEIGHTING}"
        )

    pvalues = np.asarray(pvalues, dtype=float).ravel()
    n_nhoods = nhoods.shape[1]
    if n_nhoods != len(pvalues):
        raise DimensionMismatchError(
            f"Incidence matrix has {n_nhoods} neighbourhoods but {len(pvalues)} p-values were given"
        )

    if weighting == "none":
        return np.full(len(pvalues), np.nan)

    indices = np.asarray(indices, dtype=int).ravel()
    if len(indices) != len(pvalues):
        raise DimensionMismatchError(
            f"{len(indices)} neighbourhood indices for {len(pvalues)} p-values"
        )

    if weighting == "k-distance":
        if k is None and distances is None:
            raise InvalidParameterError("k is required for k-distance weighting")
        t_connect = _kth_distances(k, indices, distances, reduced_dimensions, graph)
        with np.errstate(divide="ignore"):
            w = 1.0 / t_connect
        w[np.isinf(w)] = 1.0
    elif weighting == "neighbour-distance":
        w = _nearest_anchor_distances(indices, reduced_dimensions)
    else:
        w = _max_weights(nhoods, pvalues)

    return weighted_bh(pvalues, w)
