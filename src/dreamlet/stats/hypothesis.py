"""
Per-fit result tables.

fit_top_table renders one ModelFit for a set of coefficients:

    single coefficient:   ID, logFC, [CI.L, CI.R], AveExpr, t, P.Value,
                          adj.P.Val, [B], z.std
    several coefficients: ID, <one column per coefficient>, AveExpr, F,
                          P.Value, adj.P.Val, F.std

``z.std`` and ``F.std`` express the statistic on a scale that does not
depend on degrees of freedom, so that results from assays with different
sample sizes can be ranked together.

fit_treat_table tests against a fold-change threshold (McCarthy & Smyth
2009): H0 is |logFC| <= lfc rather than logFC = 0.
"""

from __future__ import annotations

from collections.abc import Sequence

import numpy as np
import pandas as pd
from scipy import stats as scipy_stats

from dreamlet.stats.model_fit import ModelFit
from dreamlet.stats.multitest import adjust_pvalues

__all__ = ['fit_top_table', 'fit_treat_table', 'z_std', 'f_statistic']

_TINY = np.finfo(np.float64).tiny


def z_std(t: np.ndarray, p: np.ndarray) -> np.ndarray:
    """Signed standard-normal quantile with the same two-sided p-value."""
    p = np.clip(np.asarray(p, dtype=np.float64), _TINY, 1.0)
    return np.sign(t) * scipy_stats.norm.isf(p / 2.0)


def f_statistic(fit: ModelFit, coefs: Sequence[str]) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Joint F-test of ``coefs`` per feature.

    The t-statistics are combined through their correlation matrix
    (limma classifyTestsF):  F = t' R⁻¹ t / rank(R).

    Returns:
        Tuple (F, p_value, F_std) with F_std the chi-square equivalent
        statistic divided by its degrees of freedom.
    """
    t = fit.t[list(coefs)].to_numpy(dtype=np.float64)
    cov = fit.coef_covariance(list(coefs))
    df2 = fit.test_df().to_numpy(dtype=np.float64)

    n = t.shape[0]
    F = np.full(n, np.nan)
    q = np.zeros(n)
    for i in range(n):
        if not np.all(np.isfinite(t[i])):
            continue
        d = np.sqrt(np.diag(cov[i]))
        with np.errstate(divide="ignore", invalid="ignore"):
            R = cov[i] / np.outer(d, d)
        if not np.all(np.isfinite(R)):
            continue
        rank = np.linalg.matrix_rank(R)
        F[i] = float(t[i] @ np.linalg.pinv(R) @ t[i]) / rank
        q[i] = rank

    p = np.full(n, np.nan)
    ok = np.isfinite(F)
    p[ok] = scipy_stats.f.sf(F[ok], q[ok], df2[ok])
    F_std = np.full(n, np.nan)
    F_std[ok] = scipy_stats.chi2.isf(np.clip(p[ok], _TINY, 1.0), q[ok]) / q[ok]
    return F, p, F_std


def fit_top_table(
    fit: ModelFit,
    coefs: Sequence[str],
    confint: bool | float = False,
    adjust_method: str = "BH",
) -> pd.DataFrame:
    """
    Unsorted result table of one fit.

    Args:
        fit: Ordinary or moderated fit.
        coefs: Coefficients to report. One coefficient gives a t-test table,
            several give a joint F-test table.
        confint: Add CI.L / CI.R columns. True means 95%; a float sets the
            confidence level. Single-coefficient tables only.
        adjust_method: Within-fit multiple testing correction.

    Returns:
        DataFrame with one row per feature.

    Raises:
        ValueError: If a coefficient is not part of the fit.
    """
    coefs = list(coefs)
    missing = [c for c in coefs if c not in fit.coef_names]
    if missing:
        raise ValueError(f"Coefficients not in fit: {missing}")
    if not coefs:
        raise ValueError("At least one coefficient is required")

    ids = fit.feature_ids.to_numpy()
    amean = fit.amean.to_numpy(dtype=np.float64)

    if len(coefs) == 1:
        coef = coefs[0]
        logfc = fit.coefficients[coef].to_numpy(dtype=np.float64)
        t = fit.t[coef].to_numpy(dtype=np.float64)
        p = fit.p_value[coef].to_numpy(dtype=np.float64)

        table = pd.DataFrame({"ID": ids, "logFC": logfc})
        if confint:
            level = 0.95 if confint is True else float(confint)
            se = fit.stdev_unscaled[coef].to_numpy(dtype=np.float64) * fit.residual_scale().to_numpy()
            margin = se * scipy_stats.t.isf((1.0 - level) / 2.0, fit.test_df().to_numpy(dtype=np.float64))
            table["CI.L"] = logfc - margin
            table["CI.R"] = logfc + margin
        table["AveExpr"] = amean
        table["t"] = t
        table["P.Value"] = p
        table["adj.P.Val"] = adjust_pvalues(p, adjust_method)
        if fit.lods is not None:
            table["B"] = fit.lods[coef].to_numpy(dtype=np.float64)
        table["z.std"] = z_std(t, p)
        return table

    F, p, F_std = f_statistic(fit, coefs)
    table = pd.DataFrame({"ID": ids})
    for coef in coefs:
        table[coef] = fit.coefficients[coef].to_numpy(dtype=np.float64)
    table["AveExpr"] = amean
    table["F"] = F
    table["P.Value"] = p
    table["adj.P.Val"] = adjust_pvalues(p, adjust_method)
    table["F.std"] = F_std
    return table


def fit_treat_table(fit: ModelFit, coef: str, lfc: float) -> pd.DataFrame:
    """
    Unsorted fold-change threshold test of one coefficient.

    The p-value is the probability of a statistic at least as extreme as
    observed when the true |logFC| equals ``lfc``.

    Returns:
        DataFrame with ID, logFC, AveExpr, t, P.Value, adj.P.Val (BH).
    """
    if coef not in fit.coef_names:
        raise ValueError(f"Coefficient not in fit: {coef}")
    lfc = abs(float(lfc))

    logfc = fit.coefficients[coef].to_numpy(dtype=np.float64)
    se = fit.stdev_unscaled[coef].to_numpy(dtype=np.float64) * fit.residual_scale().to_numpy()
    df = fit.test_df().to_numpy(dtype=np.float64)

    acoef = np.abs(logfc)
    with np.errstate(divide="ignore", invalid="ignore"):
        tstat_right = (acoef - lfc) / se
        tstat_left = (acoef + lfc) / se
        t = np.where(acoef > lfc, np.sign(logfc) * tstat_right, 0.0)
    p = scipy_stats.t.sf(tstat_right, df) + scipy_stats.t.sf(tstat_left, df)
    p = np.minimum(p, 1.0)
    t = np.where(np.isfinite(tstat_right), t, np.nan)

    table = pd.DataFrame({
        "ID": fit.feature_ids.to_numpy(),
        "logFC": logfc,
        "AveExpr": fit.amean.to_numpy(dtype=np.float64),
        "t": t,
        "P.Value": p,
    })
    table["adj.P.Val"] = adjust_pvalues(p, "BH")
    return table
