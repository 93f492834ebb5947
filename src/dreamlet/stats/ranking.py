"""
Ranked result tables pooled across assays.

Each assay's fit is rendered on its own (unsorted, untruncated), the
tables are stacked with an ``assay`` column, and multiple testing
correction is applied once over the pooled table. Correcting per assay and
then pooling would understate the number of tests performed.

Assays fit with different reduced formulas can produce different columns
(for example when only one of two requested coefficients was estimable).
Stacking takes the union of columns and fills the gaps with NaN.
"""

from __future__ import annotations

import logging
import math
import warnings
from collections.abc import Iterable, Sequence

import numpy as np
import pandas as pd

from dreamlet.errors import ConfigurationError, EmptyResultError
from dreamlet.stats.hypothesis import fit_top_table, fit_treat_table
from dreamlet.stats.multitest import adjust_pvalues, validate_adjust_method
from dreamlet.stats.results import DreamletResult

__all__ = ['top_table', 'get_treat', 'SORT_KEYS']

logger = logging.getLogger(__name__)

# sort key -> (column, transform); sorted ascending on the transformed value
SORT_KEYS = {
    "logFC": ("logFC", lambda v: -np.abs(v)),
    "AveExpr": ("AveExpr", lambda v: -v),
    "P": ("P.Value", lambda v: v),
    "t": ("t", lambda v: -np.abs(v)),
    "B": ("B", lambda v: -v),
    "none": (None, None),
}


def _as_coef_list(coef) -> list[str]:
    if coef is None:
        raise ConfigurationError("coef must be given")
    coefs = [coef] if isinstance(coef, str) else list(coef)
    if not coefs:
        raise ConfigurationError("coef must name at least one coefficient")
    return coefs


def _stable_sort(table: pd.DataFrame, column: str | None, transform) -> pd.DataFrame:
    if column is None:
        return table
    if column not in table.columns:
        raise ConfigurationError(f"Cannot sort by '{column}': column not in result table")
    key = transform(table[column].to_numpy(dtype=np.float64))
    key = np.where(np.isnan(key), np.inf, key)
    return table.iloc[np.argsort(key, kind="mergesort")]


def _truncate(table: pd.DataFrame, number) -> pd.DataFrame:
    if number is None or (isinstance(number, float) and math.isinf(number)):
        return table
    return table.head(int(number))


def top_table(
    result: DreamletResult,
    coef: str | Sequence[str],
    number: int | float | None = 10,
    genelist: Iterable | None = None,
    adjust_method: str = "BH",
    sort_by: str = "P",
    p_value: float = 1.0,
    lfc: float = 0.0,
    confint: bool | float = False,
) -> pd.DataFrame:
    """
    Ranked table of features pooled across assays.

    Args:
        result: Fits to report.
        coef: Coefficient name, or several names for a joint F-test.
        number: Maximum rows returned (None or inf for all).
        genelist: Only report features with these IDs.
        adjust_method: Multiple testing correction over the pooled table.
        sort_by: ``logFC``, ``AveExpr``, ``P``, ``t``, ``B`` or ``none``.
        p_value: Keep rows with P.Value <= p_value.
        lfc: Keep rows with |logFC| >= lfc (single coefficient only).
        confint: Add confidence interval columns (single coefficient).

    Returns:
        DataFrame with an ``assay`` column followed by the per-fit columns.

    Raises:
        ConfigurationError: On an invalid sort key or adjustment method.
        EmptyResultError: If no assay estimated any requested coefficient.
    """
    coefs = _as_coef_list(coef)
    validate_adjust_method(adjust_method)
    if sort_by not in SORT_KEYS:
        raise ConfigurationError(f"sort_by must be one of {list(SORT_KEYS)}, got '{sort_by}'")

    known = set(result.coef_names())
    unknown = [c for c in coefs if c not in known]
    if unknown:
        logger.warning("Coefficients not estimated in any assay: %s", unknown)

    tables = []
    for name, fit in result.items():
        present = [c for c in coefs if c in fit.coef_names]
        if not present:
            continue
        table = fit_top_table(fit, present, confint=confint)
        table = table[table["ID"].notna()].copy()
        if "z.std" not in table.columns and "t" in table.columns:
            table["z.std"] = table["t"]
        if len(table) > 0:
            table.insert(0, "assay", name)
            tables.append(table)

    if not tables:
        raise EmptyResultError("No results were found matching given criteria")

    pooled = pd.concat(tables, ignore_index=True, sort=False)
    pooled["adj.P.Val"] = adjust_pvalues(pooled["P.Value"].to_numpy(dtype=np.float64), adjust_method)

    if p_value < 1:
        pooled = pooled[pooled["P.Value"] <= p_value]
    if lfc > 0 and len(coefs) == 1 and "logFC" in pooled.columns:
        pooled = pooled[pooled["logFC"].abs() >= lfc]
    if genelist is not None:
        pooled = pooled[pooled["ID"].isin(list(genelist))]

    if "t" in pooled.columns and "F.std" in pooled.columns:
        warnings.warn("Mixture of univariate and multivariate results is returned", UserWarning, stacklevel=2)

    column, transform = SORT_KEYS[sort_by]
    pooled = _stable_sort(pooled, column, transform)
    return _truncate(pooled, number).reset_index(drop=True)


_TREAT_SORT_KEYS = {
    "logfc": ("logFC", lambda v: -np.abs(v)),
    "aveexpr": ("AveExpr", lambda v: -v),
    "p": ("P.Value", lambda v: v),
    "t": ("t", lambda v: -np.abs(v)),
    "none": (None, None),
}


def get_treat(
    result: DreamletResult,
    coef: str | Sequence[str],
    lfc: float = math.log2(1.2),
    number: int | float | None = 10,
    sort_by: str = "p",
) -> pd.DataFrame:
    """
    Fold-change threshold tests pooled across assays.

    Only assays whose fit contains every requested coefficient contribute.
    P-values are BH-adjusted over the pooled table.

    Args:
        result: Fits to report.
        coef: Coefficient to test.
        lfc: Minimum absolute log2 fold change of interest.
        number: Maximum rows returned (None or inf for all).
        sort_by: ``logFC``, ``AveExpr``, ``p``, ``t`` or ``none``
            (case-insensitive).

    Raises:
        ConfigurationError: On more than one coefficient or an invalid sort key.
        EmptyResultError: If no assay estimated the coefficient.
    """
    coefs = _as_coef_list(coef)
    if len(coefs) > 1:
        raise ConfigurationError("get_treat tests a single coefficient")
    key = str(sort_by).lower()
    if key not in _TREAT_SORT_KEYS:
        raise ConfigurationError(
            f"sort_by must be one of logFC, AveExpr, p, t, none; got '{sort_by}'"
        )

    tables = []
    for name, fit in result.items():
        if not all(c in fit.coef_names for c in coefs):
            continue
        table = fit_treat_table(fit, coefs[0], lfc)
        table = table[table["ID"].notna()].copy()
        if len(table) > 0:
            table.insert(0, "assay", name)
            tables.append(table)

    if not tables:
        raise EmptyResultError("No results were found matching given criteria")

    pooled = pd.concat(tables, ignore_index=True, sort=False)
    pooled["adj.P.Val"] = adjust_pvalues(pooled["P.Value"].to_numpy(dtype=np.float64), "BH")

    column, transform = _TREAT_SORT_KEYS[key]
    pooled = _stable_sort(pooled, column, transform)
    return _truncate(pooled, number).reset_index(drop=True)
