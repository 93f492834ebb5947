"""
Multiple testing correction.

Method names follow R's ``p.adjust``; each is mapped onto
``statsmodels.stats.multitest.multipletests``. Missing p-values are left
missing and do not count towards the number of tests.
"""

from __future__ import annotations

import numpy as np
from numpy.typing import ArrayLike, NDArray

from dreamlet.errors import ConfigurationError

__all__ = ['ADJUST_METHODS', 'adjust_pvalues', 'validate_adjust_method']

ADJUST_METHODS = {
    "BH": "fdr_bh",
    "fdr": "fdr_bh",
    "BY": "fdr_by",
    "bonferroni": "bonferroni",
    "holm": "holm",
    "hochberg": "simes-hochberg",
    "hommel": "hommel",
    "none": None,
}


def validate_adjust_method(method: str) -> str:
    """Return ``method`` unchanged, or raise ConfigurationError if unsupported."""
    if method not in ADJUST_METHODS:
        raise ConfigurationError(
            f"Unknown adjust_method '{method}'. Choose from {sorted(ADJUST_METHODS)}"
        )
    return method


def adjust_pvalues(pvalues: ArrayLike, method: str = "BH") -> NDArray[np.float64]:
    """
    Apply multiple testing correction.

    Args:
        pvalues: Raw p-values. NaN entries are ignored.
        method: One of ``BH`` (``fdr``), ``BY``, ``bonferroni``, ``holm``,
            ``hochberg``, ``hommel`` or ``none``.

    Returns:
        Adjusted p-values, same length as the input.

    Raises:
        ConfigurationError: If ``method`` is not supported.
    """
    from statsmodels.stats.multitest import multipletests

    validate_adjust_method(method)
    pvalues = np.asarray(pvalues, dtype=np.float64)

    valid_mask = ~np.isnan(pvalues)
    adj_pvals = np.full_like(pvalues, np.nan)

    if not np.any(valid_mask):
        return adj_pvals

    sm_method = ADJUST_METHODS[method]
    if sm_method is None:
        adj_pvals[valid_mask] = pvalues[valid_mask]
        return adj_pvals

    _, adj_pvals[valid_mask], _, _ = multipletests(pvalues[valid_mask], method=sm_method)
    return adj_pvals
