"""
Differential expression across every assay of a processed dataset.

dreamlet() fits the same formula to each assay (cell type) independently:

1. Shared metadata is prepared once: samples missing a formula covariate
   are dropped and unused categories are removed.
2. Each assay goes through GroupFitter (sample subsetting, metadata merge,
   formula reduction, fit, variance moderation). Assays run in parallel
   with joblib; results are collected in the requested order.
3. Outcomes are assembled into a DreamletResult: successful fits, one
   details row per attempted assay, and the error ledgers.

A failing assay never aborts the others; its failure is recorded in the
details table and the assay-level error ledger.

Examples:
    >>> result = dreamlet(processed, "~ group_id + (1 | donor)")
    >>> result.top_table(coef="group_idstim", number=20)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping, Sequence

import pandas as pd
from joblib import Parallel, delayed

from dreamlet.core.processed import ProcessedData
from dreamlet.diagnostics import Diagnostic, emit
from dreamlet.errors import ConfigurationError
from dreamlet.stats.ebayes import EmpiricalBayesShrinkage
from dreamlet.stats.engine import LinearModelEngine
from dreamlet.stats.fitting import FitOutcome, GroupFitter
from dreamlet.stats.formula import Formula
from dreamlet.stats.results import DETAIL_COLUMNS, DreamletResult

__all__ = ['dreamlet', 'prepare_sample_data']

logger = logging.getLogger(__name__)


def prepare_sample_data(sample_data: pd.DataFrame, formula: Formula) -> pd.DataFrame:
    """
    Shared metadata restricted to samples complete in the formula covariates.

    Covariates missing from ``sample_data`` are ignored here; they may be
    supplied by assay-varying metadata.
    """
    used = [v for v in formula.variables if v in sample_data.columns]
    data = sample_data.loc[sample_data[used].notna().all(axis=1)].copy()
    for col in data.columns:
        if isinstance(data[col].dtype, pd.CategoricalDtype):
            data[col] = data[col].cat.remove_unused_categories()
    return data


def dreamlet(
    x: ProcessedData,
    formula: str | Formula,
    assays: Sequence[str] | None = None,
    contrasts: Mapping[str, str] | Sequence[str] | None = None,
    min_cells: int = 10,
    robust: bool = False,
    use_ebayes: bool = True,
    n_jobs: int = 1,
    engine=None,
    shrinkage=None,
    observer: Callable[[Diagnostic], None] | None = None,
    **fit_options,
) -> DreamletResult:
    """
    Fit a linear (mixed) model to every assay.

    Args:
        x: Processed per-assay expression and metadata.
        formula: R-style formula, e.g. ``"~ group_id + age + (1 | donor)"``.
        assays: Assays to fit, in output order. Defaults to all.
        contrasts: Named linear combinations of coefficients to estimate,
            e.g. ``{"stim_vs_ctrl": "group_idstim - group_idctrl"}``.
        min_cells: Samples with fewer cells are dropped (when the matrix
            carries cell counts).
        robust: Robust empirical Bayes prior estimation.
        use_ebayes: Moderate variances after fitting.
        n_jobs: Parallel workers (joblib semantics, -1 = all cores).
        engine: RegressionEngine; defaults to LinearModelEngine.
        shrinkage: ShrinkageEngine; defaults to EmpiricalBayesShrinkage.
        observer: Called with every Diagnostic emitted by this call.
        **fit_options: Passed to ``engine.fit``.

    Returns:
        DreamletResult with one fit per successful assay.

    Raises:
        TypeError: If ``x`` is not ProcessedData.
        ConfigurationError: If requested assays are missing or repeated.
    """
    if not isinstance(x, ProcessedData):
        raise TypeError(f"x must be ProcessedData, got {type(x)}")
    if isinstance(formula, str):
        formula = Formula.parse(formula)
    elif not isinstance(formula, Formula):
        raise TypeError(f"formula must be str or Formula, got {type(formula)}")

    assays = x.assay_names() if assays is None else [assays] if isinstance(assays, str) else list(assays)
    missing = [a for a in assays if a not in x]
    if missing:
        raise ConfigurationError(
            "Assays are not found in dataset: " + ", ".join(map(str, missing[:6]))
        )
    if len(set(assays)) != len(assays):
        raise ConfigurationError("Assays must not be repeated")

    sample_data = prepare_sample_data(x.sample_data, formula)

    fitter = GroupFitter(
        engine=engine if engine is not None else LinearModelEngine(),
        shrinkage=shrinkage if shrinkage is not None else EmpiricalBayesShrinkage(),
        contrasts=contrasts,
        min_cells=min_cells,
        robust=robust,
        use_ebayes=use_ebayes,
        fit_options=fit_options,
    )

    logger.info("Fitting %d assays with %s", len(assays), formula)
    outcomes: list[FitOutcome] = Parallel(n_jobs=n_jobs)(
        delayed(fitter.fit)(
            name, x[name], sample_data, x.group_data, x.by, x.group_column, formula
        )
        for name in assays
    )

    diagnostics: list[Diagnostic] = []

    def report(diagnostic: Diagnostic, as_warning: bool = False) -> None:
        diagnostics.append(diagnostic)
        emit(diagnostic, logger, observer, as_warning=as_warning)

    fits = {}
    errors = {}
    error_initial = {}
    for outcome in outcomes:
        for diagnostic in outcome.diagnostics:
            report(diagnostic)
        report(Diagnostic(logging.INFO, f"  {outcome.assay}... {outcome.elapsed:.2f}s", outcome.assay))
        if outcome.is_success:
            fits[outcome.assay] = outcome.fit
        errors[outcome.assay] = dict(outcome.errors)
        if outcome.error_initial is not None:
            error_initial[outcome.assay] = outcome.error_initial

    details = pd.DataFrame([o.detail_record() for o in outcomes], columns=DETAIL_COLUMNS)

    n_reduced = int(details["formula_drops_terms"].sum())
    if n_reduced > 0:
        report(
            Diagnostic(
                logging.WARNING,
                f"Terms dropped from formulas for {n_reduced} assays.\n"
                " Run details() on result for more information",
            ),
            as_warning=True,
        )

    n_models = int(details["n_genes"].sum())
    n_failed = int(details["n_errors"].sum())
    if n_models > 0 and n_failed > 0:
        report(Diagnostic(
            logging.INFO,
            f"Of {n_models:,} models fit across all assays, {100 * n_failed / n_models:.3g}% failed",
        ))

    return DreamletResult(
        fits,
        details=details,
        errors=errors,
        error_initial=error_initial,
        diagnostics=diagnostics,
    )
