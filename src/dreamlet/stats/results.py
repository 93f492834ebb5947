"""
Collection of per-assay fits.

DreamletResult is an ordered, read-only mapping of assay name to ModelFit
for every assay that was fit successfully, plus:

    details       one row per attempted assay (samples retained, formula
                  used, whether terms were dropped, feature and error counts)
    errors        assay -> {feature -> message} for features that failed
    error_initial assay -> message for assays that failed as a whole
    diagnostics   messages emitted while fitting

Subsetting projects all of these onto the selected assays.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping, Sequence
from typing import NamedTuple

import numpy as np
import pandas as pd

from dreamlet.diagnostics import Diagnostic
from dreamlet.errors import ConfigurationError
from dreamlet.stats.model_fit import ModelFit

__all__ = ['DETAIL_COLUMNS', 'DreamletResult', 'ErrorTables', 'as_dreamlet_result']

logger = logging.getLogger(__name__)

DETAIL_COLUMNS = [
    "assay",
    "n_retain",
    "formula",
    "formula_drops_terms",
    "n_genes",
    "n_errors",
    "error_initial",
]


class ErrorTables(NamedTuple):
    """Assay-level and feature-level error tables."""
    assay_level: pd.DataFrame
    gene_level: pd.DataFrame


def _coolcat(label: str, items: Sequence[str]) -> str:
    items = [str(i) for i in items]
    n = len(items)
    if n > 5:
        items = items[:2] + ["..."] + items[-2:]
    return f"{label}({n}): {' '.join(items)}"


class DreamletResult(Mapping):
    """
    Fits of every successful assay with details and error ledgers.

    Indexing by name returns the assay's ModelFit; ``subset`` returns a new
    DreamletResult.

    Examples:
        >>> result.assay_names()
        ['B cells', 'T cells']
        >>> result["B cells"].coef_names
        ['(Intercept)', 'group_idstim']
        >>> result.subset([1]).assay_names()
        ['T cells']
    """

    def __init__(
        self,
        fits: Mapping[str, ModelFit] | None = None,
        details: pd.DataFrame | None = None,
        errors: Mapping[str, Mapping[str, str]] | None = None,
        error_initial: Mapping[str, str] | None = None,
        diagnostics: Sequence[Diagnostic] = (),
    ):
        fits = dict(fits or {})
        for name, fit in fits.items():
            if not isinstance(fit, ModelFit):
                raise TypeError(f"fit for '{name}' must be ModelFit, got {type(fit)}")

        if details is None:
            details = pd.DataFrame(columns=DETAIL_COLUMNS)
        elif not isinstance(details, pd.DataFrame):
            raise TypeError(f"details must be pd.DataFrame, got {type(details)}")
        elif "assay" not in details.columns:
            raise ValueError("details must have an 'assay' column")

        self._fits = fits
        self._details = details.reset_index(drop=True)
        self._errors = {k: dict(v) for k, v in (errors or {}).items()}
        self._error_initial = dict(error_initial or {})
        self._diagnostics = tuple(diagnostics)

    # Mapping interface

    def __getitem__(self, name):
        """Fit by name; any other selector (position, slice, mask, list) subsets."""
        if isinstance(name, str):
            return self._fits[name]
        return self.subset(name)

    def __iter__(self) -> Iterator[str]:
        return iter(self._fits)

    def __len__(self) -> int:
        return len(self._fits)

    def __contains__(self, name) -> bool:
        return name in self._fits

    # Accessors

    def assay_names(self) -> list[str]:
        return list(self._fits)

    def assay(self, i: int | str) -> ModelFit:
        """Fit by position or name."""
        if isinstance(i, str):
            return self._fits[i]
        return self._fits[self.assay_names()[i]]

    def details(self) -> pd.DataFrame:
        """Copy of the details table, one row per attempted assay."""
        return self._details.copy()

    @property
    def errors(self) -> dict[str, dict[str, str]]:
        return {k: dict(v) for k, v in self._errors.items()}

    @property
    def error_initial(self) -> dict[str, str]:
        return dict(self._error_initial)

    @property
    def diagnostics(self) -> tuple[Diagnostic, ...]:
        return self._diagnostics

    def coef_names(self) -> list[str]:
        """Union of coefficient names across assays, in first-seen order."""
        names: list[str] = []
        seen = set()
        for fit in self._fits.values():
            for coef in fit.coef_names:
                if coef not in seen:
                    seen.add(coef)
                    names.append(coef)
        return names

    def see_errors(self) -> ErrorTables:
        """
        Error ledgers as tables.

        Returns:
            ErrorTables with ``assay_level`` (assay, error_text_initial) and
            ``gene_level`` (assay, feature, error_text).
        """
        assay_level = pd.DataFrame(
            [(k, v) for k, v in self._error_initial.items()],
            columns=["assay", "error_text_initial"],
        )
        gene_level = pd.DataFrame(
            [(k, fid, msg) for k, errs in self._errors.items() for fid, msg in errs.items()],
            columns=["assay", "feature", "error_text"],
        )
        logger.info("Assay-level errors: %d", len(assay_level))
        logger.info("Gene-level errors: %d", len(gene_level))
        return ErrorTables(assay_level, gene_level)

    # Subsetting

    def _resolve(self, indices) -> list[str]:
        names = self.assay_names()
        if isinstance(indices, slice):
            return names[indices]
        if isinstance(indices, (str, int, np.integer)):
            indices = [indices]

        arr = np.asarray(indices)
        if arr.dtype == bool:
            if len(arr) != len(names):
                raise ValueError(f"mask length ({len(arr)}) must match number of assays ({len(names)})")
            return [n for n, m in zip(names, arr) if m]

        selected = []
        for i in indices:
            if isinstance(i, str):
                if i not in self._fits:
                    raise KeyError(f"Unknown assay: {i}")
                selected.append(i)
            else:
                selected.append(names[int(i)])
        if len(set(selected)) != len(selected):
            raise ConfigurationError("Assays must not be selected more than once")
        return selected

    def subset(self, indices) -> DreamletResult:
        """
        New result restricted to the selected assays.

        Args:
            indices: Position, name, slice, boolean mask, or a sequence of
                positions / names. Selection order is preserved.

        Returns:
            DreamletResult whose details rows and error ledgers are
            restricted to the selected assays.
        """
        selected = self._resolve(indices)
        order = {name: i for i, name in enumerate(selected)}

        details = self._details[self._details["assay"].isin(order)]
        positions = details["assay"].map(order).to_numpy()
        details = details.iloc[np.argsort(positions, kind="stable")]

        return DreamletResult(
            {name: self._fits[name] for name in selected},
            details=details,
            errors={k: self._errors[k] for k in selected if k in self._errors},
            error_initial={k: self._error_initial[k] for k in selected if k in self._error_initial},
            diagnostics=[d for d in self._diagnostics if d.assay is None or d.assay in order],
        )

    # Construction from fits

    @classmethod
    def from_fits(cls, fits, details: pd.DataFrame | None = None) -> DreamletResult:
        """
        Build a result from existing fits.

        Args:
            fits: Mapping of name to ModelFit, or a sequence of
                (name, ModelFit) pairs.
            details: Optional details table.

        Raises:
            ConfigurationError: If a name is empty or repeated.
            TypeError: If a value is not a ModelFit.
        """
        items = list(fits.items()) if isinstance(fits, Mapping) else list(fits)
        names = [name for name, _ in items]

        if any(name is None or str(name) == "" for name in names):
            raise ConfigurationError("names(fits) must not contain empty names")
        if len(set(names)) != len(names):
            raise ConfigurationError("names(fits) must be unique")
        for name, fit in items:
            if not isinstance(fit, ModelFit):
                raise TypeError(f"fit for '{name}' must be ModelFit, got {type(fit)}")

        return cls(dict(items), details=details)

    # Reporting

    def top_table(self, coef, **kwargs) -> pd.DataFrame:
        """Ranked table pooled across assays; see ``dreamlet.stats.ranking.top_table``."""
        from dreamlet.stats.ranking import top_table
        return top_table(self, coef, **kwargs)

    def get_treat(self, coef, **kwargs) -> pd.DataFrame:
        """Fold-change threshold table; see ``dreamlet.stats.ranking.get_treat``."""
        from dreamlet.stats.ranking import get_treat
        return get_treat(self, coef, **kwargs)

    def summary(self) -> str:
        lines = ["class: DreamletResult", _coolcat("assays", self.assay_names())]
        if self._fits:
            n_features = [fit.n_features for fit in self._fits.values()]
            lines += ["Genes:", f" min: {min(n_features)}", f" max: {max(n_features)}"]
        lines.append(_coolcat("details", list(self._details.columns)))
        lines.append(_coolcat("coef_names", self.coef_names()))

        columns = self._details.columns
        n_models = int(self._details["n_genes"].sum()) if "n_genes" in columns else 0
        n_failed = int(self._details["n_errors"].sum()) if "n_errors" in columns else 0
        if n_models > 0 and n_failed > 0:
            lines.append("")
            lines.append(
                f"Of {n_models:,} models fit across all assays, "
                f"{100 * n_failed / n_models:.3g}% failed"
            )
        return "\n".join(lines)

    def __repr__(self) -> str:
        return self.summary()

    def __str__(self) -> str:
        return self.summary()


as_dreamlet_result = DreamletResult.from_fits
