"""
da.py - Differential abundance testing of neighbourhoods

Wraps normalisation, per-neighbourhood GLM fitting and multiple-testing
correction. Plain BH is reported alongside the spatial FDR, since the
default correction is inappropriate for neighbourhoods that share cells.
"""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nhoodloji.data.core import nhoodloji

from typing import Callable
import warnings

import numpy as np
import pandas as pd
import patsy
from statsmodels.stats.multitest import multipletests

from ..data.config import (
    VALID_FDR_WEIGHTING,
    InvalidParameterError,
    InvalidInputTypeError,
    DimensionMismatchError,
    MissingPrecomputationError,
)
from .glm import NORM_METHODS, calc_norm_factors, fit_nb_glm
from .spatial_fdr import graph_spatial_fdr


def _model_matrix(design, design_df: pd.DataFrame) -> pd.DataFrame:
    """Model matrix with rows labelled by sample."""
    if isinstance(design, str):
        model = patsy.dmatrix(design, design_df, return_type="dataframe")
        model.index = design_df.index
    elif isinstance(design, pd.DataFrame):
        model = design.copy()
        if len(model) != len(design_df):
            raise DimensionMismatchError(
                "Design matrix and model matrix are not the same dimensionality"
            )
        if not model.index.equals(design_df.index):
            if model.index.isin(design_df.index).any():
                warnings.warn("Design matrix and model matrix dimnames are not the same",
                              stacklevel=3)
                model.index = design_df.index
            else:
                raise DimensionMismatchError(
                    "Design matrix and model matrix rownames are not a subset"
                )
    else:
        raise InvalidParameterError(
            f"design must be a formula string or a DataFrame, got {type(design).__name__}"
        )
    model.index = model.index.astype(str)
    return model


def da_nhoods(
    sj: 'nhoodloji',
    design,
    design_df: pd.DataFrame,
    fdr_weighting: str | None = None,
    min_mean: float = 0,
    norm_method: str = "TMM",
    coef: str | int | None = None,
    fit: Callable[..., pd.DataFrame] | None = None,
    reduced_dims: str | None = None,
) -> pd.DataFrame:
    """
    Differential abundance testing across neighbourhoods.

    Parameters
    ----------
    sj : nhoodloji
        nhoodloji object with nhood_counts (run count_cells() first).
    design : str or pd.DataFrame
        A patsy formula (e.g. '~ condition') evaluated on design_df, or a
        ready model matrix with one row per sample.
    design_df : pd.DataFrame
        Sample metadata indexed by sample name.
    fdr_weighting : str, optional
        'k-distance', 'neighbour-distance', 'max' or 'none'.
        Defaults to config.fdr_weighting.
    min_mean : float
        Drop neighbourhoods whose mean count across samples is lower.
    norm_method : str
        'TMM', 'RLE' or 'logMS'.
    coef : str or int, optional
        Coefficient to test; the last design column by default.
    fit : callable, optional
        ``fit(counts, design, norm_factors=..., coef=...)`` returning a
        DataFrame with at least a 'PValue' column. Defaults to fit_nb_glm.
    reduced_dims : str, optional
        Embedding used for distance-based weighting.

    Returns
    -------
    pd.DataFrame
        One row per tested neighbourhood with columns logFC, logCPM, F,
        PValue, FDR, Nhood (neighbourhood position) and SpatialFDR.
    """
    from ..data.core import nhoodloji

    if not isinstance(sj, nhoodloji):
        raise InvalidInputTypeError("Unrecognised input type - must be a nhoodloji object")
    if sj.nhood_counts is None:
        raise MissingPrecomputationError(
            "Neighbourhood counts missing - please run count_cells() first"
        )
    if norm_method not in NORM_METHODS:
        raise InvalidParameterError(
            f"Normalisation method {norm_method} not recognised. Must be either TMM, RLE or logMS"
        )
    fdr_weighting = fdr_weighting or sj.config.fdr_weighting
    if fdr_weighting not in VALID_FDR_WEIGHTING:
        raise InvalidParameterError(
            f"Weighting option '{fdr_weighting}' not recognised. Choose from {VALID_FDR_WEIGHTING}"
        )

    model = _model_matrix(design, design_df)
    counts = sj.nhood_counts

    # Align samples: design may cover a subset, in any order
    if not model.index.isin(counts.columns).all():
        raise DimensionMismatchError(
            f"Design matrix ({len(model)}) and nhood counts ({counts.shape[1]}) "
            "are not the same dimension"
        )
    if len(model) < counts.shape[1]:
        print("  → Design matrix is a strict subset of the nhood counts")
    elif not counts.columns.equals(model.index):
        warnings.warn("Sample names in design matrix and nhood counts are not matched. Reordering",
                      stacklevel=2)
    counts = counts.loc[:, model.index]

    if min_mean > 0:
        keep_nh = (counts.mean(axis=1) >= min_mean).to_numpy()
    else:
        keep_nh = np.ones(len(counts), dtype=bool)
    kept_pos = np.flatnonzero(keep_nh)
    counts = counts.iloc[kept_pos]

    print(f"\nTesting {len(counts)} neighbourhoods ({norm_method} normalisation)")
    norm_factors = calc_norm_factors(counts, method=norm_method)
    fit = fit or fit_nb_glm
    res = fit(counts, model, norm_factors=norm_factors, coef=coef)
    if 'PValue' not in res.columns or len(res) != len(counts):
        raise DimensionMismatchError(
            "fit must return one row per neighbourhood with a 'PValue' column"
        )
    res = res.copy()
    res.index = counts.index
    res['Nhood'] = kept_pos

    pvalues = res['PValue'].to_numpy(dtype=float)
    res['FDR'] = np.nan
    finite = ~np.isnan(pvalues)
    if finite.any():
        res.loc[finite, 'FDR'] = multipletests(pvalues[finite], method='fdr_bh')[1]

    # Spatial FDR on p-values ordered by Nhood, matched back by Nhood
    print(f"  → Performing spatial FDR correction with {fdr_weighting} weighting")
    ordered = res.sort_values('Nhood')
    distances = sj.nhood_distances
    if distances is not None:
        distances = distances.iloc[ordered['Nhood'].to_numpy()]
    reduced_dims = reduced_dims or sj.nhood_params.get('reduced_dims') or sj.config.reduced_dims_key
    embedding = sj.embeddings.get(reduced_dims)
    d = sj.nhood_params.get('d')
    if embedding is not None and d is not None:
        embedding = embedding[:, :d]

    spatial_fdr = graph_spatial_fdr(
        nhoods=sj.nhoods[:, ordered['Nhood'].to_numpy()],
        graph=sj.graph,
        weighting=fdr_weighting,
        k=sj.nhood_params.get('k') or sj.k,
        pvalues=ordered['PValue'].to_numpy(dtype=float),
        indices=sj.nhood_index[ordered['Nhood'].to_numpy()],
        distances=distances,
        reduced_dimensions=embedding,
    )
    res['SpatialFDR'] = pd.Series(spatial_fdr, index=ordered['Nhood'].to_numpy()).reindex(
        res['Nhood'].to_numpy()
    ).to_numpy()

    n_sig = int((res['SpatialFDR'] < 0.1).sum())
    print(f"  ✓ {n_sig} neighbourhoods with SpatialFDR < 0.1")

    return res
