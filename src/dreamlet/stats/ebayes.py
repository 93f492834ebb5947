"""
Empirical Bayes variance moderation (limma-style).

Residual variances of thousands of features are shrunk towards a common
prior, which stabilises test statistics when each feature has few residual
degrees of freedom.

Mathematical basis:
    Assume s²_i ~ (s₀²/d₀) × χ²_{d₀} a priori. Matching the moments of
    log(s²) gives the prior (d₀, s₀²); the posterior variance is

        s²_post = (d₀ × s₀² + d_i × s²_i) / (d₀ + d_i)

    and moderated t-statistics use s²_post with d₀ + d_i degrees of freedom.

Options:
    trend: s₀² follows a lowess trend in average expression (used for
        non count-derived input, where precision weights do not already
        absorb the mean-variance relationship)
    robust: log-variances are winsorized before estimating the prior so
        that outlier features do not inflate it

References:
    Smyth (2004) Statistical Applications in Genetics and Molecular Biology 3(1)
    Phipson et al. (2016) Annals of Applied Statistics 10(2):946-963
"""

from __future__ import annotations

import logging
from dataclasses import replace

import numpy as np
import pandas as pd
from numpy.typing import NDArray
from scipy import stats as scipy_stats
from scipy.special import digamma, polygamma

from dreamlet.stats.model_fit import ModelFit

__all__ = [
    'EmpiricalBayesShrinkage',
    'trigamma_inverse',
    'fit_f_dist',
    'squeeze_var',
    'tmixture',
]

logger = logging.getLogger(__name__)


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """
    Solve trigamma(y) = x for y > 0.

    fit_f_dist matches the variance of the log residual variances to
    trigamma(d0 / 2); this inverts that moment equation to recover the prior
    degrees of freedom. Newton steps are taken on 1/trigamma, which is
    nearly linear in y, starting from y = 0.5 + 1/x. Non-positive x means
    the observed spread is fully explained by sampling error and gives
    y = inf.
    """
    if x <= 0:
        return np.inf
    # asymptotes: trigamma(y) ~ 1/y**2 near zero and ~ 1/y for large y
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = polygamma(1, y)
        step = tri * (1.0 - tri / x) / polygamma(2, y)
        y += step
        if abs(step) < tol * y:
            break
    else:
        logger.debug("trigamma_inverse: no convergence after %d iterations (x=%g)", max_iter, x)
    return float(y)


def fit_f_dist(
    sigma2: NDArray[np.float64],
    df: NDArray[np.float64],
    covariate: NDArray[np.float64] | None = None,
    robust: bool = False,
    span: float = 0.4,
    winsor_tail_p: tuple[float, float] = (0.05, 0.1),
) -> tuple[float, NDArray[np.float64]]:
    """
    Estimate prior d0 and s0² via method of moments (limma fitFDist).

    Algorithm:
        1. e = log(s²) - digamma(df/2) + log(df/2)
        2. emean = mean(e), or a lowess trend of e against ``covariate``
        3. evar = var(e - emean) - mean(trigamma(df/2))
        4. d₀ = 2 × trigamma⁻¹(evar)
        5. s₀² = exp(emean + digamma(d₀/2) - log(d₀/2))

    Args:
        sigma2: Sample variances (n_features,)
        df: Residual degrees of freedom (n_features,)
        covariate: Optional covariate for a variance trend (average expression)
        robust: Winsorize the centred log-variances before step 3
        span: Lowess span used with ``covariate``
        winsor_tail_p: Lower and upper tail proportions for winsorizing

    Returns:
        Tuple (d0, s0_sq) where s0_sq has one value per feature. d0 is
        np.inf when variances are no more dispersed than expected, and 0
        when too few variances are available to estimate the prior.
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)

    valid_mask = np.isfinite(sigma2) & (sigma2 > 0) & np.isfinite(df) & (df > 0)
    n_valid = int(valid_mask.sum())

    if n_valid < 3:
        fill = float(np.median(sigma2[valid_mask])) if n_valid > 0 else 1.0
        return 0.0, np.full(sigma2.shape, fill)

    df_half = df[valid_mask] / 2.0
    e = np.log(sigma2[valid_mask]) - digamma(df_half) + np.log(df_half)

    if covariate is not None:
        from statsmodels.nonparametric.smoothers_lowess import lowess

        covariate = np.asarray(covariate, dtype=np.float64)
        x = covariate[valid_mask]
        # at least three neighbours per local fit
        frac = max(span, min(1.0, 3.0 / n_valid))
        trend = lowess(e, x, frac=frac, return_sorted=False)
        if not np.all(np.isfinite(trend)):
            trend = np.full_like(e, np.mean(e))
        order = np.argsort(x, kind="mergesort")
        emean_all = np.interp(covariate, x[order], trend[order])
        emean_valid = trend
    else:
        emean_valid = np.full_like(e, np.mean(e))
        emean_all = np.full(sigma2.shape, emean_valid[0])

    resid = e - emean_valid
    if robust:
        lo, hi = np.quantile(resid, [winsor_tail_p[0], 1.0 - winsor_tail_p[1]])
        resid = np.clip(resid, lo, hi)

    evar = np.sum(resid ** 2) / (n_valid - 1) - np.mean(polygamma(1, df_half))

    if evar <= 0:
        return np.inf, np.exp(emean_all)

    d0 = 2.0 * trigamma_inverse(evar)
    if d0 > 1e10:
        return np.inf, np.exp(emean_all)

    s0_sq = np.exp(emean_all + digamma(d0 / 2.0) - np.log(d0 / 2.0))
    return float(d0), s0_sq


def squeeze_var(
    sigma2: NDArray[np.float64],
    df: NDArray[np.float64],
    d0: float,
    s0_sq: NDArray[np.float64] | float,
) -> tuple[NDArray[np.float64], NDArray[np.float64]]:
    """
    Posterior variances and total degrees of freedom (limma squeezeVar).

    Total degrees of freedom are capped at the pooled residual degrees of
    freedom across all features.

    Returns:
        Tuple (s2_post, df_total), both (n_features,)
    """
    sigma2 = np.asarray(sigma2, dtype=np.float64)
    df = np.broadcast_to(np.asarray(df, dtype=np.float64), sigma2.shape)
    s0_sq = np.broadcast_to(np.asarray(s0_sq, dtype=np.float64), sigma2.shape)
    df_pooled = float(np.nansum(df))

    if d0 == 0:
        return sigma2.copy(), df.copy()

    if np.isinf(d0):
        s2_post = s0_sq.copy()
        df_total = np.full(sigma2.shape, np.inf)
    else:
        s2_post = (d0 * s0_sq + df * sigma2) / (d0 + df)
        df_total = d0 + df

    return s2_post, np.minimum(df_total, df_pooled)


def tmixture(
    tstat: NDArray[np.float64],
    stdev_unscaled: NDArray[np.float64],
    df: NDArray[np.float64],
    proportion: float,
    v0_lim: tuple[float, float] | None = None,
) -> float:
    """
    Prior variance of the non-null coefficients (limma tmixture.vector).

    Returns NaN when there are too few statistics to estimate it.
    """
    ok = np.isfinite(tstat) & np.isfinite(stdev_unscaled)
    tstat = np.abs(tstat[ok])
    v1_all = stdev_unscaled[ok] ** 2
    df = np.asarray(df, dtype=np.float64)[ok]

    n = len(tstat)
    ntarget = int(np.ceil(proportion / 2.0 * n))
    if ntarget < 1:
        return np.nan
    p = max(ntarget / n, proportion)

    max_df = float(np.max(df))
    lower = df < max_df
    if np.any(lower):
        tail = scipy_stats.t.logsf(tstat[lower], df[lower])
        tstat[lower] = scipy_stats.t.isf(np.exp(tail), max_df)

    order = np.argsort(-tstat, kind="mergesort")[:ntarget]
    tstat = tstat[order]
    v1 = v1_all[order]
    r = np.arange(1, ntarget + 1)
    p0 = 2.0 * scipy_stats.t.sf(tstat, max_df)
    ptarget = ((r - 0.5) / n - (1.0 - p) * p0) / p

    v0 = np.zeros(ntarget)
    pos = ptarget > p0
    if np.any(pos):
        qtarget = scipy_stats.t.isf(ptarget[pos] / 2.0, max_df)
        v0[pos] = v1[pos] * ((tstat[pos] / qtarget) ** 2 - 1.0)
    if v0_lim is not None:
        v0 = np.clip(v0, v0_lim[0], v0_lim[1])
    return float(np.mean(v0))


class EmpiricalBayesShrinkage:
    """
    Variance moderation of a ModelFit.

    Attributes:
        proportion: Assumed proportion of differentially expressed features,
            used for the B-statistic.
        stdev_coef_lim: Limits on the prior standard deviation of non-null
            coefficients, relative to the prior residual standard deviation.
        span: Lowess span for the variance trend.
        winsor_tail_p: Tail proportions winsorized when ``robust`` is set.

    Examples:
        >>> shrinkage = EmpiricalBayesShrinkage()
        >>> moderated = shrinkage.shrink(fit, robust=True, trend=True)
        >>> moderated.df_prior.iloc[0] > 0
        True
    """

    def __init__(
        self,
        proportion: float = 0.01,
        stdev_coef_lim: tuple[float, float] = (0.1, 4.0),
        span: float = 0.4,
        winsor_tail_p: tuple[float, float] = (0.05, 0.1),
    ):
        if not 0 < proportion < 1:
            raise ValueError(f"proportion must be in (0, 1), got {proportion}")
        self.proportion = proportion
        self.stdev_coef_lim = stdev_coef_lim
        self.span = span
        self.winsor_tail_p = winsor_tail_p

    def shrink(self, fit: ModelFit, robust: bool = False, trend: bool = False) -> ModelFit:
        """
        Return a moderated copy of ``fit``.

        Args:
            fit: Ordinary fit with residual variances.
            robust: Winsorize outlier variances when estimating the prior.
            trend: Let the prior variance depend on average expression.

        Returns:
            ModelFit with s2_prior, df_prior, s2_post, df_total, lods and
            moderated t / p_value.
        """
        sigma2 = fit.sigma.to_numpy(dtype=np.float64) ** 2
        df = fit.df_residual.to_numpy(dtype=np.float64)
        covariate = fit.amean.to_numpy(dtype=np.float64) if trend else None

        d0, s0_sq = fit_f_dist(
            sigma2, df,
            covariate=covariate,
            robust=robust,
            span=self.span,
            winsor_tail_p=self.winsor_tail_p,
        )
        s2_post, df_total = squeeze_var(sigma2, df, d0, s0_sq)
        logger.debug("Prior df %.3g, median prior variance %.3g", d0, float(np.median(s0_sq)))

        index = fit.feature_ids
        coef = fit.coefficients
        su = fit.stdev_unscaled
        with np.errstate(divide="ignore", invalid="ignore"):
            t = coef / su.mul(np.sqrt(s2_post), axis=0)
        dof = np.broadcast_to(df_total[:, None], t.shape)
        p = 2.0 * scipy_stats.t.sf(np.abs(t.to_numpy()), dof)

        lods = self._lods(t.to_numpy(), su.to_numpy(), df_total, d0, s0_sq)

        return replace(
            fit,
            t=t,
            p_value=pd.DataFrame(p, index=index, columns=coef.columns),
            s2_prior=pd.Series(s0_sq, index=index),
            df_prior=pd.Series(np.full(len(index), d0), index=index),
            s2_post=pd.Series(s2_post, index=index),
            df_total=pd.Series(df_total, index=index),
            lods=pd.DataFrame(lods, index=index, columns=coef.columns),
        )

    def _lods(
        self,
        t: NDArray[np.float64],
        stdev_unscaled: NDArray[np.float64],
        df_total: NDArray[np.float64],
        d0: float,
        s0_sq: NDArray[np.float64],
    ) -> NDArray[np.float64]:
        """B-statistics: log-odds that each coefficient is non-zero."""
        s2_prior = float(np.median(s0_sq))
        v0_lim = (
            self.stdev_coef_lim[0] ** 2 / s2_prior,
            self.stdev_coef_lim[1] ** 2 / s2_prior,
        )

        n_coef = t.shape[1]
        var_prior = np.empty(n_coef)
        for j in range(n_coef):
            var_prior[j] = tmixture(
                t[:, j], stdev_unscaled[:, j], df_total, self.proportion, v0_lim
            )
        var_prior[~np.isfinite(var_prior)] = 1.0 / s2_prior

        v1 = stdev_unscaled ** 2
        with np.errstate(divide="ignore", invalid="ignore"):
            r = (v1 + var_prior[None, :]) / v1
            t2 = t ** 2
            if np.isinf(d0) or d0 > 1e6:
                kernel = t2 * (1.0 - 1.0 / r) / 2.0
            else:
                dft = df_total[:, None]
                kernel = (1.0 + dft) / 2.0 * np.log((t2 + dft) / (t2 / r + dft))
            return np.log(self.proportion / (1.0 - self.proportion)) - np.log(r) / 2.0 + kernel
