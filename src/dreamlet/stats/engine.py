"""
Per-feature regression engines.

The orchestrator only depends on two narrow protocols:

    RegressionEngine.fit(matrix, formula, design, contrasts) -> ModelFit
    ShrinkageEngine.shrink(fit, robust, trend) -> ModelFit

LinearModelEngine is the default RegressionEngine:

1. Fixed effects, no weights, complete data: one vectorized OLS solve
   shared by every feature (X'X inverted once)
2. Fixed effects with precision weights or missing values: weighted least
   squares per feature on its observed samples
3. Random intercepts ``(1 | g)``: statsmodels MixedLM per feature (REML).
   Several random intercepts are fit as crossed variance components.

Failures:
    - Problems with the design as a whole (no samples, rank deficiency,
      unsupported random slopes) raise GroupLevelFitError
    - A feature that cannot be fit is recorded in ``ModelFit.errors`` and
      left out of the fit; the remaining features are unaffected
"""

from __future__ import annotations

import logging
import warnings
from typing import Protocol, runtime_checkable

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from dreamlet.core.expression import ExpressionMatrix
from dreamlet.errors import GroupLevelFitError
from dreamlet.stats.design_matrix import build_design, r_style_name
from dreamlet.stats.formula import SINGULAR_DESIGN_MESSAGE, Formula
from dreamlet.stats.model_fit import ModelFit

__all__ = [
    'RegressionEngine',
    'ShrinkageEngine',
    'LinearModelEngine',
]

logger = logging.getLogger(__name__)


@runtime_checkable
class RegressionEngine(Protocol):
    """Protocol for fitting one assay's features against its design."""

    def fit(
        self,
        matrix: ExpressionMatrix,
        formula: Formula,
        design: pd.DataFrame,
        contrasts: pd.DataFrame | None = None,
        **options,
    ) -> ModelFit:
        """Fit every feature of ``matrix``; raise GroupLevelFitError on design failure."""
        ...


@runtime_checkable
class ShrinkageEngine(Protocol):
    """Protocol for empirical Bayes moderation of a fit."""

    def shrink(self, fit: ModelFit, robust: bool = False, trend: bool = False) -> ModelFit:
        """Return a moderated copy of ``fit``."""
        ...


class LinearModelEngine:
    """
    Default regression engine (OLS / WLS / linear mixed model).

    Attributes:
        reml: Fit mixed models by REML (default) or maximum likelihood.
        mixed_method: Optimizer passed to ``MixedLMResults.fit``.
        max_iter: Maximum optimizer iterations for mixed models.

    Examples:
        >>> engine = LinearModelEngine()
        >>> fit = engine.fit(matrix, Formula.parse("~ group_id"), design)
        >>> fit.coef_names
        ['(Intercept)', 'group_idstim']
    """

    def __init__(self, reml: bool = True, mixed_method: str = "lbfgs", max_iter: int = 200):
        self.reml = reml
        self.mixed_method = mixed_method
        self.max_iter = max_iter

    def fit(
        self,
        matrix: ExpressionMatrix,
        formula: Formula,
        design: pd.DataFrame,
        contrasts: pd.DataFrame | None = None,
        **options,
    ) -> ModelFit:
        """
        Fit every feature of ``matrix``.

        Args:
            matrix: Expression of one assay, samples aligned with ``design``.
            formula: Assay-specific formula.
            design: Design table indexed by sample id.
            contrasts: Optional coefficient × contrast matrix; each contrast
                is appended as an estimated column.
            **options: ``reml``, ``mixed_method`` or ``max_iter`` override
                the engine defaults for this call.

        Returns:
            ModelFit with ordinary statistics.

        Raises:
            GroupLevelFitError: If the assay cannot be fit at all.
        """
        unknown = set(options) - {"reml", "mixed_method", "max_iter"}
        if unknown:
            raise GroupLevelFitError(f"Unknown fit options: {sorted(unknown)}")
        reml = options.get("reml", self.reml)
        mixed_method = options.get("mixed_method", self.mixed_method)
        max_iter = options.get("max_iter", self.max_iter)

        if isinstance(formula, str):
            formula = Formula.parse(formula)

        if matrix.n_samples == 0:
            raise GroupLevelFitError("No samples available for model fitting")

        missing = matrix.sample_ids.difference(design.index)
        if len(missing) > 0:
            raise GroupLevelFitError(f"Samples missing from design table: {list(missing[:6])}")
        design = design.loc[matrix.sample_ids]

        try:
            X = build_design(formula, design)
        except ValueError as e:
            raise GroupLevelFitError(str(e)) from e

        if np.linalg.matrix_rank(X.to_numpy(dtype=np.float64)) < X.shape[1]:
            raise GroupLevelFitError(SINGULAR_DESIGN_MESSAGE)

        for term in formula.random_terms:
            lhs, _ = Formula.random_parts(term)
            if lhs != "1":
                raise GroupLevelFitError(
                    f"Random slopes are not supported: '{term}'. Use random intercepts (1 | g)."
                )

        Y = matrix.data
        if formula.random_terms:
            if matrix.weights is not None:
                logger.warning("Precision weights are not used by the mixed model fit")
            est = self._fit_mixed(Y, X, design, formula, reml, mixed_method, max_iter)
            method = "lmm"
        elif matrix.weights is None and np.all(np.isfinite(Y)):
            est = self._fit_ols(Y, X.to_numpy(dtype=np.float64))
            method = "ols"
        else:
            est = self._fit_wls(Y, matrix.weights, X.to_numpy(dtype=np.float64))
            method = "ols"

        coef, cov, sigma, rdf, errors = est
        feature_ids = matrix.feature_ids
        ok = np.ones(len(feature_ids), dtype=bool)
        ok[list(errors)] = False
        error_map = {feature_ids[i]: msg for i, msg in sorted(errors.items())}

        coef_names = list(X.columns)
        if contrasts is not None and contrasts.shape[1] > 0:
            contrasts = contrasts.reindex(coef_names).fillna(0.0)
            T = np.hstack([np.eye(len(coef_names)), contrasts.to_numpy(dtype=np.float64)])
            coef = coef @ T
            cov = np.einsum("ji,fjk,kl->fil", T, cov, T)
            names = coef_names + list(contrasts.columns)
            contrast_names = tuple(contrasts.columns)
        else:
            names = coef_names
            contrast_names = ()

        index = feature_ids[ok]
        coef = coef[ok]
        cov = cov[ok]
        with np.errstate(invalid="ignore"):
            stdev = np.sqrt(np.diagonal(cov, axis1=1, axis2=2))

        with warnings.catch_warnings():
            warnings.simplefilter("ignore", category=RuntimeWarning)
            amean = np.nanmean(Y[ok], axis=1) if Y.shape[1] > 0 else np.full(ok.sum(), np.nan)

        return ModelFit(
            coefficients=pd.DataFrame(coef, index=index, columns=names),
            stdev_unscaled=pd.DataFrame(stdev, index=index, columns=names),
            sigma=pd.Series(sigma[ok], index=index),
            df_residual=pd.Series(rdf[ok], index=index),
            amean=pd.Series(amean, index=index),
            formula=str(formula),
            cov_unscaled=cov,
            contrast_names=contrast_names,
            errors=error_map,
            method=method,
        )

    @staticmethod
    def _fit_ols(Y: NDArray[np.float64], X: NDArray[np.float64]):
        """Vectorized OLS for all features at once."""
        n_features = Y.shape[0]
        n, p = X.shape
        XtX_inv = np.linalg.inv(X.T @ X)
        beta = Y @ X @ XtX_inv.T
        resid = Y - beta @ X.T
        rdf = n - p
        rss = np.sum(resid ** 2, axis=1)
        sigma = np.sqrt(rss / rdf) if rdf >= 1 else np.full(n_features, np.nan)
        cov = np.broadcast_to(XtX_inv, (n_features, p, p)).copy()
        return beta, cov, sigma, np.full(n_features, float(rdf)), {}

    def _fit_wls(
        self,
        Y: NDArray[np.float64],
        W: NDArray[np.float64] | None,
        X: NDArray[np.float64],
    ):
        """Weighted least squares per feature on its observed samples."""
        n_features = Y.shape[0]
        p = X.shape[1]
        beta = np.full((n_features, p), np.nan)
        cov = np.full((n_features, p, p), np.nan)
        sigma = np.full(n_features, np.nan)
        rdf = np.zeros(n_features)
        errors: dict[int, str] = {}

        for i in range(n_features):
            y = Y[i]
            w = np.ones_like(y) if W is None else W[i]
            mask = np.isfinite(y) & np.isfinite(w) & (w > 0)
            n_obs = int(mask.sum())
            if n_obs < p:
                errors[i] = f"Too few observations ({n_obs}) for {p} coefficients"
                continue
            sw = np.sqrt(w[mask])
            Xw = X[mask] * sw[:, None]
            yw = y[mask] * sw
            if np.linalg.matrix_rank(Xw) < p:
                errors[i] = "Design is rank deficient for the observed samples"
                continue
            XtX_inv = np.linalg.inv(Xw.T @ Xw)
            b = XtX_inv @ (Xw.T @ yw)
            resid = yw - Xw @ b
            df_i = n_obs - p
            beta[i] = b
            cov[i] = XtX_inv
            rdf[i] = df_i
            sigma[i] = np.sqrt(np.sum(resid ** 2) / df_i) if df_i >= 1 else np.nan

        return beta, cov, sigma, rdf, errors

    def _fit_mixed(
        self,
        Y: NDArray[np.float64],
        X: pd.DataFrame,
        design: pd.DataFrame,
        formula: Formula,
        reml: bool,
        mixed_method: str,
        max_iter: int,
    ):
        """Linear mixed model per feature with random intercepts."""
        import statsmodels.formula.api as smf
        from statsmodels.tools.sm_exceptions import ConvergenceWarning

        n_features = Y.shape[0]
        p = X.shape[1]
        beta = np.full((n_features, p), np.nan)
        cov = np.full((n_features, p, p), np.nan)
        sigma = np.full(n_features, np.nan)
        rdf = np.zeros(n_features)
        errors: dict[int, str] = {}

        grouping = [Formula.random_parts(t)[1] for t in formula.random_terms]
        missing = [g for g in grouping if g not in design.columns]
        if missing:
            raise GroupLevelFitError(f"Random effect variables not found: {missing}")

        frame = design.copy()
        frame["__y__"] = np.nan
        fixed_rhs = formula.fixed_formula()[1:].strip()
        model_formula = f"__y__ ~ {fixed_rhs}"

        if len(grouping) == 1:
            group_kwargs = {"groups": grouping[0]}
        else:
            frame["__all__"] = 1
            group_kwargs = {
                "groups": "__all__",
                "re_formula": "0",
                "vc_formula": {g: f"0 + C({g})" for g in grouping},
            }

        for i in range(n_features):
            mask = np.isfinite(Y[i])
            sub = frame.loc[mask].copy()
            sub["__y__"] = Y[i, mask]
            n_obs = len(sub)
            if n_obs <= p:
                errors[i] = f"Too few observations ({n_obs}) for {p} coefficients"
                continue
            try:
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore", category=ConvergenceWarning)
                    warnings.simplefilter("ignore", category=RuntimeWarning)
                    model = smf.mixedlm(model_formula, sub, **group_kwargs)
                    result = model.fit(reml=reml, method=mixed_method, maxiter=max_iter)
            except Exception as e:
                errors[i] = f"Mixed model failed: {type(e).__name__}: {e}"
                continue

            if not result.converged:
                errors[i] = "Mixed model did not converge"
                continue

            fe_names = [r_style_name(n) for n in result.model.exog_names]
            if fe_names != list(X.columns):
                errors[i] = "Fixed effects do not match the design for the observed samples"
                continue

            scale = float(result.scale)
            cov_fe = np.asarray(result.cov_params(), dtype=np.float64)[:p, :p]
            n_groups = int(sub[grouping[0]].nunique())

            beta[i] = np.asarray(result.fe_params, dtype=np.float64)
            cov[i] = cov_fe / scale
            sigma[i] = np.sqrt(scale)
            rdf[i] = max(n_groups - p, n_obs - p - 1)

        return beta, cov, sigma, rdf, errors
