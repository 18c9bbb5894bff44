"""
glm.py - Count normalisation and a negative binomial GLM adapter

The model fitting itself is delegated to statsmodels; this module only
prepares offsets and turns the fits into one result row per neighbourhood.
"""
from __future__ import annotations

import warnings

import numpy as np
import pandas as pd
from scipy import stats as scipy_stats
import statsmodels.api as sm
from statsmodels.tools.sm_exceptions import PerfectSeparationError

from ..data.config import InvalidParameterError, DimensionMismatchError


NORM_METHODS = ("TMM", "RLE", "logMS")


def _tmm_factor(obs, ref, lib_obs, lib_ref,
                logratio_trim: float = 0.3, sum_trim: float = 0.05) -> float:
    """Trimmed mean of M-values of one sample against the reference."""
    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / lib_obs) / (ref / lib_ref))
        abs_e = (np.log2(obs / lib_obs) + np.log2(ref / lib_ref)) / 2
        v = (lib_obs - obs) / lib_obs / obs + (lib_ref - ref) / lib_ref / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e)
    log_r, abs_e, v = log_r[fin], abs_e[fin], v[fin]
    if len(log_r) == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = len(log_r)
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = scipy_stats.rankdata(log_r)
    rank_e = scipy_stats.rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    f = np.sum(log_r[keep] / v[keep]) / np.sum(1 / v[keep])
    if not np.isfinite(f):
        f = 0.0
    return float(2 ** f)


def calc_norm_factors(counts: pd.DataFrame, method: str = "TMM") -> np.ndarray:
    """
    Per-sample normalisation factors (edgeR conventions).

    Parameters
    ----------
    counts : pd.DataFrame
        (n_nhoods x n_samples) counts.
    method : str
        'TMM' (trimmed mean of M-values), 'RLE' (relative log expression)
        or 'logMS' (library size only, all factors 1).

    Returns
    -------
    np.ndarray
        Factors scaled to a geometric mean of 1.
    """
    if method not in NORM_METHODS:
        raise InvalidParameterError(
            f"Normalisation method {method} not recognised. Must be either TMM, RLE or logMS"
        )

    x = counts.to_numpy(dtype=float)
    n_samples = x.shape[1]
    lib_size = x.sum(axis=0)

    if method == "logMS":
        return np.ones(n_samples)

    if method == "RLE":
        positive = np.all(x > 0, axis=1)
        if not positive.any():
            warnings.warn("No neighbourhood is non-zero in every sample - RLE factors set to 1",
                          stacklevel=2)
            return np.ones(n_samples)
        log_gm = np.log(x[positive]).mean(axis=1)
        f = np.median(x[positive] / np.exp(log_gm)[:, None], axis=0) / lib_size
    else:
        with np.errstate(divide="ignore", invalid="ignore"):
            f75 = np.quantile(x / lib_size, 0.75, axis=0)
        ref_col = int(np.argmin(np.abs(f75 - f75.mean())))
        f = np.array([
            _tmm_factor(x[:, j], x[:, ref_col], lib_size[j], lib_size[ref_col])
            for j in range(n_samples)
        ])

    return f / np.exp(np.mean(np.log(f)))


def fit_nb_glm(
    counts: pd.DataFrame,
    design: pd.DataFrame,
    norm_factors: np.ndarray | None = None,
    coef: str | int | None = None,
) -> pd.DataFrame:
    """
    Negative binomial GLM per neighbourhood.

    Dispersion is a moment estimate from a Poisson fit; the tested
    coefficient's Wald statistic is referred to an F(1, residual df)
    distribution.

    Parameters
    ----------
    counts : pd.DataFrame
        (n_nhoods x n_samples) counts, columns aligned to design rows.
    design : pd.DataFrame
        (n_samples x n_coefs) model matrix.
    norm_factors : np.ndarray, optional
        Per-sample normalisation factors.
    coef : str or int, optional
        Coefficient to test. Defaults to the last design column.

    Returns
    -------
    pd.DataFrame
        Indexed like counts with columns logFC, logCPM, F, PValue.
    """
    if counts.shape[1] != design.shape[0]:
        raise DimensionMismatchError(
            f"Design matrix ({design.shape[0]}) and counts ({counts.shape[1]}) "
            "are not the same dimension"
        )

    X = design.to_numpy(dtype=float)
    if coef is None:
        coef_ix = X.shape[1] - 1
    elif isinstance(coef, str):
        if coef not in design.columns:
            raise InvalidParameterError(f"Coefficient '{coef}' not in design columns {list(design.columns)}")
        coef_ix = design.columns.get_loc(coef)
    else:
        coef_ix = int(coef)

    norm_factors = np.ones(counts.shape[1]) if norm_factors is None else np.asarray(norm_factors)
    lib_size = counts.to_numpy(dtype=float).sum(axis=0) * norm_factors
    offset = np.log(lib_size)
    df_resid = max(X.shape[0] - X.shape[1], 1)

    rows = []
    for y in counts.to_numpy(dtype=float):
        log_cpm = np.log2(np.mean((y + 0.5) / (lib_size + 1) * 1e6))
        row = {'logFC': np.nan, 'logCPM': log_cpm, 'F': np.nan, 'PValue': np.nan}
        if y.sum() == 0:
            rows.append(row)
            continue
        try:
            mu = sm.GLM(y, X, family=sm.families.Poisson(), offset=offset).fit().mu
            mu = np.maximum(mu, 1e-8)
            alpha = np.sum(((y - mu) ** 2 - mu) / mu ** 2) / df_resid
            alpha = float(alpha) if np.isfinite(alpha) and alpha > 1e-8 else 1e-8
            fit = sm.GLM(
                y, X, family=sm.families.NegativeBinomial(alpha=alpha), offset=offset
            ).fit()
        except (np.linalg.LinAlgError, ValueError, PerfectSeparationError) as e:
            warnings.warn(f"GLM fit failed for a neighbourhood: {e}", stacklevel=2)
            rows.append(row)
            continue

        beta = fit.params[coef_ix]
        f_stat = (beta / fit.bse[coef_ix]) ** 2
        row.update({
            'logFC': beta / np.log(2),
            'F': f_stat,
            'PValue': scipy_stats.f.sf(f_stat, 1, df_resid),
        })
        rows.append(row)

    return pd.DataFrame(rows, index=counts.index)
