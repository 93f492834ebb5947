"""
Fitted linear model for one assay.

ModelFit holds per-feature estimates for every coefficient of an assay's
design, plus any contrasts appended after fitting. Before variance
moderation ``t`` and ``p_value`` are ordinary statistics computed from the
residual standard deviation; after moderation they use the posterior
variance and the total degrees of freedom.

Shape Invariants:
    - coefficients, stdev_unscaled, t, p_value: features × coefficients
    - cov_unscaled: (n_features, n_coef, n_coef)
    - sigma, df_residual, amean and the shrinkage fields: one per feature
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace

import numpy as np
import pandas as pd
from scipy import stats as scipy_stats

__all__ = ['ModelFit', 'ordinary_t']


def ordinary_t(
    coefficients: pd.DataFrame,
    stdev_unscaled: pd.DataFrame,
    sigma: pd.Series,
    df: pd.Series,
) -> tuple[pd.DataFrame, pd.DataFrame]:
    """t-statistics and two-sided p-values for every coefficient."""
    se = stdev_unscaled.mul(sigma, axis=0)
    with np.errstate(divide="ignore", invalid="ignore"):
        t = coefficients / se
    dof = np.broadcast_to(df.to_numpy(dtype=np.float64)[:, None], t.shape)
    p = 2.0 * scipy_stats.t.sf(np.abs(t.to_numpy()), dof)
    return t, pd.DataFrame(p, index=t.index, columns=t.columns)


@dataclass
class ModelFit:
    """
    Per-feature linear model estimates for one assay.

    Attributes:
        coefficients: Estimates (features × coefficients).
        stdev_unscaled: Standard errors divided by sigma.
        sigma: Residual standard deviation per feature.
        df_residual: Residual degrees of freedom per feature.
        amean: Average expression per feature.
        formula: Formula text the assay was fit with.
        cov_unscaled: Unscaled covariance of the estimates per feature.
            Defaults to the diagonal implied by ``stdev_unscaled``.
        t: Test statistics (ordinary or moderated).
        p_value: Two-sided p-values matching ``t``.
        s2_prior: Prior variance per feature (after moderation).
        df_prior: Prior degrees of freedom per feature (after moderation).
        s2_post: Posterior variance per feature (after moderation).
        df_total: Degrees of freedom of the moderated statistics.
        lods: Log-odds of differential expression (after moderation).
        contrast_names: Columns of ``coefficients`` added from contrasts.
        errors: Per-feature failure messages from the fit.
        method: ``"ols"`` or ``"lmm"``.
    """

    coefficients: pd.DataFrame
    stdev_unscaled: pd.DataFrame
    sigma: pd.Series
    df_residual: pd.Series
    amean: pd.Series
    formula: str = ""
    cov_unscaled: np.ndarray | None = None
    t: pd.DataFrame | None = None
    p_value: pd.DataFrame | None = None
    s2_prior: pd.Series | None = None
    df_prior: pd.Series | None = None
    s2_post: pd.Series | None = None
    df_total: pd.Series | None = None
    lods: pd.DataFrame | None = None
    contrast_names: tuple[str, ...] = ()
    errors: dict[str, str] = field(default_factory=dict)
    method: str = "ols"

    def __post_init__(self):
        if not isinstance(self.coefficients, pd.DataFrame):
            raise TypeError(f"coefficients must be pd.DataFrame, got {type(self.coefficients)}")
        if self.stdev_unscaled.shape != self.coefficients.shape:
            raise ValueError(
                f"stdev_unscaled shape {self.stdev_unscaled.shape} must match "
                f"coefficients shape {self.coefficients.shape}"
            )
        n = len(self.coefficients)
        for name in ("sigma", "df_residual", "amean"):
            if len(getattr(self, name)) != n:
                raise ValueError(f"{name} length must match n_features ({n})")

        if self.cov_unscaled is None:
            su = self.stdev_unscaled.to_numpy(dtype=np.float64)
            cov = np.zeros((n, su.shape[1], su.shape[1]))
            idx = np.arange(su.shape[1])
            cov[:, idx, idx] = su ** 2
            self.cov_unscaled = cov

        if self.t is None or self.p_value is None:
            self.t, self.p_value = ordinary_t(
                self.coefficients, self.stdev_unscaled, self.sigma, self.df_residual
            )

    @property
    def feature_ids(self) -> pd.Index:
        return self.coefficients.index

    @property
    def coef_names(self) -> list[str]:
        return list(self.coefficients.columns)

    @property
    def n_features(self) -> int:
        return len(self.coefficients)

    @property
    def is_moderated(self) -> bool:
        return self.s2_post is not None

    def residual_scale(self) -> pd.Series:
        """Standard deviation the statistics are scaled by."""
        if self.s2_post is not None:
            return np.sqrt(self.s2_post)
        return self.sigma

    def test_df(self) -> pd.Series:
        """Degrees of freedom of ``t``."""
        if self.df_total is not None:
            return self.df_total
        return self.df_residual

    def select_features(self, mask) -> ModelFit:
        """New ModelFit restricted to features where ``mask`` is True."""
        mask = np.asarray(mask, dtype=bool)
        if len(mask) != self.n_features:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_features ({self.n_features})"
            )

        def take(value):
            if value is None:
                return None
            if isinstance(value, (pd.DataFrame, pd.Series)):
                return value.loc[mask]
            return value[mask]

        return replace(
            self,
            coefficients=take(self.coefficients),
            stdev_unscaled=take(self.stdev_unscaled),
            sigma=take(self.sigma),
            df_residual=take(self.df_residual),
            amean=take(self.amean),
            cov_unscaled=take(self.cov_unscaled),
            t=take(self.t),
            p_value=take(self.p_value),
            s2_prior=take(self.s2_prior),
            df_prior=take(self.df_prior),
            s2_post=take(self.s2_post),
            df_total=take(self.df_total),
            lods=take(self.lods),
            errors=dict(self.errors),
        )

    def coef_covariance(self, coefs: list[str]) -> np.ndarray:
        """Unscaled covariance restricted to ``coefs`` for every feature."""
        idx = [self.coef_names.index(c) for c in coefs]
        return self.cov_unscaled[:, idx][:, :, idx]

    def __repr__(self) -> str:
        kind = "moderated" if self.is_moderated else "ordinary"
        return (
            f"ModelFit({self.n_features} features, {len(self.coef_names)} coefficients, "
            f"{self.method}, {kind})"
        )
