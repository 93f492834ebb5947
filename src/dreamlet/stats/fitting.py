"""
Per-assay fitting pipeline.

GroupFitter runs one assay through a fixed sequence of stages::

    SubsetSamples -> ReduceFormula -> BuildContrasts -> Fit -> PostProcess

and returns a FitOutcome that is one of:

    SUCCESS         a moderated (or ordinary) ModelFit
    EMPTY           the engine ran but no feature has a usable fit
    GROUP_FAILURE   the assay could not be fit (message recorded)
    NOT_ATTEMPTED   the assay has no features

Nothing in this module raises for a single assay: merge problems, singular
designs and engine failures become GROUP_FAILURE outcomes, and per-feature
failures are carried in the outcome's error map.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum

import numpy as np
import pandas as pd

from dreamlet.core.expression import ExpressionMatrix
from dreamlet.core.metadata import merge_metadata
from dreamlet.diagnostics import Diagnostic
from dreamlet.errors import GroupLevelFitError, MergeError
from dreamlet.stats.design_matrix import make_contrasts
from dreamlet.stats.formula import SINGULAR_DESIGN_MESSAGE, Formula, check_design, reduce_formula
from dreamlet.stats.model_fit import ModelFit

__all__ = ['OutcomeKind', 'FitOutcome', 'GroupFitter']

logger = logging.getLogger(__name__)


class OutcomeKind(Enum):
    """Terminal state of one assay's pipeline."""
    SUCCESS = "success"
    EMPTY = "empty"
    GROUP_FAILURE = "group_failure"
    NOT_ATTEMPTED = "not_attempted"


@dataclass(frozen=True)
class FitOutcome:
    """
    Result of fitting one assay.

    Attributes:
        assay: Assay name
        kind: Terminal state
        formula: Formula the assay was (or would have been) fit with
        was_reduced: Whether ``formula`` differs from the requested formula
        n_retain: Samples retained for fitting
        n_genes: Features in the assay's expression matrix
        fit: Fitted model (SUCCESS only)
        error_initial: Group-level failure message (GROUP_FAILURE only)
        errors: Per-feature failure messages
        diagnostics: Messages raised while fitting
        elapsed: Wall time in seconds
    """

    assay: str
    kind: OutcomeKind
    formula: Formula
    n_retain: int
    n_genes: int
    was_reduced: bool = False
    fit: ModelFit | None = None
    error_initial: str | None = None
    errors: Mapping[str, str] = field(default_factory=dict)
    diagnostics: tuple[Diagnostic, ...] = ()
    elapsed: float = 0.0

    @property
    def is_success(self) -> bool:
        return self.kind is OutcomeKind.SUCCESS

    def detail_record(self) -> dict:
        """One row of the details table."""
        return {
            "assay": self.assay,
            "n_retain": self.n_retain,
            "formula": str(self.formula),
            "formula_drops_terms": self.was_reduced,
            "n_genes": self.n_genes,
            "n_errors": len(self.errors),
            "error_initial": self.error_initial is not None,
        }


class GroupFitter:
    """
    Fits one assay at a time with shared settings.

    Instances are sent to joblib workers, so they hold only picklable
    configuration.

    Attributes:
        engine: RegressionEngine used for the fit
        shrinkage: ShrinkageEngine applied when ``use_ebayes`` is set
        contrasts: Named contrast expressions (may be empty)
        min_cells: Minimum cells per sample when the matrix carries n_cells
        robust: Robust prior estimation in the shrinkage step
        use_ebayes: Apply the shrinkage step
        fit_options: Extra keyword options for ``engine.fit``
    """

    def __init__(
        self,
        engine,
        shrinkage,
        contrasts: Mapping[str, str] | Sequence[str] | None = None,
        min_cells: int = 10,
        robust: bool = False,
        use_ebayes: bool = True,
        fit_options: Mapping | None = None,
    ):
        self.engine = engine
        self.shrinkage = shrinkage
        self.contrasts = contrasts
        self.min_cells = min_cells
        self.robust = robust
        self.use_ebayes = use_ebayes
        self.fit_options = dict(fit_options or {})

    def fit(
        self,
        assay: str,
        matrix: ExpressionMatrix,
        sample_data: pd.DataFrame,
        group_data: pd.DataFrame,
        by: str,
        group_column: str,
        formula: Formula,
    ) -> FitOutcome:
        """
        Run the pipeline for one assay.

        Args:
            assay: Assay name
            matrix: The assay's expression
            sample_data: Preprocessed shared metadata (index = sample id)
            group_data: Assay-varying metadata
            by: Join key column of ``group_data``
            group_column: Assay name column of ``group_data``
            formula: Requested formula

        Returns:
            FitOutcome; never raises for problems specific to this assay.
        """
        start = time.perf_counter()
        diagnostics: list[Diagnostic] = []
        n_genes = matrix.n_features

        def finish(kind: OutcomeKind, **kwargs) -> FitOutcome:
            kwargs.setdefault("formula", formula)
            return FitOutcome(
                assay=assay,
                kind=kind,
                n_genes=n_genes,
                diagnostics=tuple(diagnostics),
                elapsed=time.perf_counter() - start,
                **kwargs,
            )

        def known_errors(errors: Mapping[str, str]) -> dict[str, str]:
            kept = {k: v for k, v in errors.items() if k in matrix.feature_ids}
            unknown = [k for k in errors if k not in matrix.feature_ids]
            if unknown:
                diagnostics.append(Diagnostic(
                    logging.DEBUG,
                    f"{assay}: ignored errors for {len(unknown)} unknown features: {unknown[:6]}",
                    assay,
                ))
            return kept

        if n_genes == 0:
            return finish(OutcomeKind.NOT_ATTEMPTED, n_retain=0)

        # SubsetSamples
        keep = matrix.sample_ids.isin(sample_data.index)
        if self.min_cells and matrix.n_cells is not None:
            keep &= np.asarray(matrix.n_cells >= self.min_cells)
        sample_ids = matrix.sample_ids[keep]

        try:
            design = merge_metadata(
                sample_data, group_data, assay, by,
                group_column=group_column, sample_ids=sample_ids,
            )
        except MergeError as e:
            return finish(OutcomeKind.GROUP_FAILURE, n_retain=len(sample_ids), error_initial=str(e))

        used = [v for v in formula.variables if v in design.columns]
        design = design.loc[design[used].notna().all(axis=1)]
        expr = matrix.select_samples(design.index)
        n_retain = expr.n_samples

        # ReduceFormula
        try:
            reduced, was_reduced = reduce_formula(formula, design)
            full_rank = check_design(reduced, design)
        except ValueError as e:
            return finish(OutcomeKind.GROUP_FAILURE, n_retain=n_retain, error_initial=str(e))

        if not full_rank:
            return finish(
                OutcomeKind.GROUP_FAILURE,
                formula=reduced,
                was_reduced=was_reduced,
                n_retain=n_retain,
                error_initial=SINGULAR_DESIGN_MESSAGE,
            )

        # BuildContrasts
        L = None
        if self.contrasts:
            try:
                L = make_contrasts(reduced, design, self.contrasts)
            except ValueError as e:
                diagnostics.append(Diagnostic(
                    logging.DEBUG, f"{assay}: contrasts not built: {e}", assay
                ))

        # Fit
        common = {"formula": reduced, "was_reduced": was_reduced, "n_retain": n_retain}
        try:
            fit = self.engine.fit(expr, reduced, design, contrasts=L, **self.fit_options)
        except GroupLevelFitError as e:
            return finish(
                OutcomeKind.GROUP_FAILURE,
                error_initial=str(e),
                errors=known_errors(e.errors),
                **common,
            )
        except Exception as e:
            return finish(
                OutcomeKind.GROUP_FAILURE, error_initial=f"{type(e).__name__}: {e}", **common
            )

        if not isinstance(fit, ModelFit):
            return finish(
                OutcomeKind.GROUP_FAILURE,
                error_initial=f"Regression engine returned {type(fit).__name__}, expected ModelFit",
                **common,
            )

        errors = known_errors(fit.errors)
        common["errors"] = errors

        # PostProcess
        if fit.n_features == 0 or fit.sigma.isna().all():
            return finish(OutcomeKind.EMPTY, **common)

        fit = fit.select_features((fit.df_residual >= 1).to_numpy())
        if fit.n_features == 0:
            return finish(OutcomeKind.EMPTY, **common)

        if self.use_ebayes:
            try:
                fit = self.shrinkage.shrink(fit, robust=self.robust, trend=not matrix.is_counts)
            except Exception as e:
                return finish(
                    OutcomeKind.GROUP_FAILURE,
                    error_initial=f"Variance moderation failed: {type(e).__name__}: {e}",
                    **common,
                )

        return finish(OutcomeKind.SUCCESS, fit=fit, **common)
