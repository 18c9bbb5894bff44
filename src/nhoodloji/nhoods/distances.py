"""
distances.py - Per-neighbourhood distance summaries

Summaries used as local density proxies by the spatial FDR weighting.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nhoodloji.data.core import nhoodloji

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist

from ..graph.knn import find_knn


def calc_nhood_distance(
    sj: 'nhoodloji',
    d: int | None = None,
    reduced_dims: str | None = None,
    inplace: bool = True,
) -> pd.DataFrame:
    """
    Distance summaries for every neighbourhood.

    Parameters
    ----------
    sj : nhoodloji
        nhoodloji object with neighbourhoods.
    d : int, optional
        Number of embedding dimensions. Defaults to the d used in
        make_nhoods(), else config.default_d.
    reduced_dims : str, optional
        Embedding key. Defaults to the one used in make_nhoods().
    inplace : bool
        Store the result as sj.nhood_distances.

    Returns
    -------
    pd.DataFrame
        One row per neighbourhood with columns:
        - 'kth_distance': distance from the anchor to its k-th nearest cell
        - 'median_distance': median pairwise distance among members
    """
    sj._require_nhoods("compute neighbourhood distances")
    params = sj.nhood_params
    reduced_dims = reduced_dims or params.get('reduced_dims') or sj.config.reduced_dims_key
    d = d or params.get('d') or sj.config.default_d
    k = params.get('k') or sj.k or sj.config.default_k

    X = sj.get_embedding(reduced_dims, d=d)
    anchors = sj.nhood_index

    knn = find_knn(X, k=k, subset=anchors, get_distance=True)
    kth_distance = knn.distance.max(axis=1)

    nhoods = sj.nhoods.tocsc()
    median_distance = np.zeros(len(anchors))
    for j in range(len(anchors)):
        members = nhoods.indices[nhoods.indptr[j]:nhoods.indptr[j + 1]]
        if len(members) > 1:
            median_distance[j] = np.median(pdist(X[members]))

    result = pd.DataFrame(
        {'kth_distance': kth_distance, 'median_distance': median_distance},
        index=sj.nhood_names,
    )

    print(f"  ✓ Neighbourhood distances: {len(result)} nhoods, "
          f"median k-distance={np.median(kth_distance) if len(result) else 0:.3f}")

    if inplace:
        sj.nhood_distances = result

    return result
