"""
counts.py - Counting cells per neighbourhood per sample
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nhoodloji.data.core import nhoodloji

import numpy as np
import pandas as pd
from scipy import sparse

from ..data.config import DimensionMismatchError, InvalidParameterError


def count_cells(
    sj: 'nhoodloji',
    sample_col: str | None = None,
    meta_data: pd.DataFrame | None = None,
    inplace: bool = True,
) -> pd.DataFrame:
    """
    Count the cells from each sample in each neighbourhood.

    Parameters
    ----------
    sj : nhoodloji
        nhoodloji object with neighbourhoods.
    sample_col : str, optional
        Column holding sample labels. Defaults to config.sample_col.
    meta_data : pd.DataFrame, optional
        Cell metadata to read labels from; sj.cell_meta if None. Must be
        indexed by cell ID or have one row per cell in master order.
    inplace : bool
        Store the result as sj.nhood_counts.

    Returns
    -------
    pd.DataFrame
        (n_nhoods x n_samples) integer counts.
    """
    sj._require_nhoods("count cells")
    sample_col = sample_col or sj.config.sample_col
    meta = sj.cell_meta if meta_data is None else meta_data

    if sample_col not in meta.columns:
        raise InvalidParameterError(f"'{sample_col}' not found in cell metadata")

    if len(meta) != sj.n_cells:
        raise DimensionMismatchError(
            f"Metadata has {len(meta)} rows, expected {sj.n_cells} cells"
        )
    if meta.index.astype(str).isin(sj.cell_index).all():
        meta = meta.set_axis(meta.index.astype(str), axis=0).reindex(sj.cell_index)

    labels = meta[sample_col]
    if labels.isna().any():
        print(f"  ⚠ {labels.isna().sum()} cells without a sample label (not counted)")

    categories = pd.Categorical(labels)
    codes = categories.codes
    keep = codes >= 0
    n_samples = len(categories.categories)

    # One-hot encode: (n_cells x n_samples)
    onehot = sparse.csr_matrix(
        (np.ones(keep.sum()), (np.flatnonzero(keep), codes[keep])),
        shape=(sj.n_cells, n_samples),
    )

    # nhoods.T @ onehot -> neighbourhood x sample counts
    counts = sj.nhoods.T.dot(onehot).toarray().astype(int)
    result = pd.DataFrame(
        counts,
        index=sj.nhood_names,
        columns=pd.Index(categories.categories.astype(str), name=sample_col),
    )

    print(f"  ✓ Neighbourhood counts: {result.shape[0]} nhoods × {result.shape[1]} samples")

    if inplace:
        sj.nhood_counts = result

    return result


def nhood_size(sj: 'nhoodloji') -> pd.Series:
    """Number of cells in each neighbourhood."""
    sj._require_nhoods("compute neighbourhood sizes")
    sizes = np.asarray(sj.nhoods.sum(axis=0)).ravel().astype(int)
    return pd.Series(sizes, index=sj.nhood_names, name='nhood_size')
