"""
Processed per-assay data consumed by the orchestrator.

ProcessedData is the read-only hand-off from upstream pseudobulk
aggregation and normalization: one ExpressionMatrix per assay plus two
metadata tables.

    sample_data: covariates constant across assays, indexed by sample id
        (donor age, sex, disease status, ...)
    group_data: covariates that vary by assay, one row per (assay, sample)
        (e.g. mean number of detected genes per cell in that cell type)

``group_column`` names the column of ``group_data`` holding the assay name
and ``by`` the column holding the sample id used for the join.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping

import pandas as pd

from dreamlet.core.expression import ExpressionMatrix

__all__ = ['ProcessedData']


class ProcessedData(Mapping):
    """
    Ordered, read-only mapping of assay name to ExpressionMatrix.

    Attributes:
        sample_data: Metadata shared by every assay (index = sample id)
        group_data: Assay-varying metadata (may be empty)
        by: Join key column in ``group_data`` holding sample ids
        group_column: Column in ``group_data`` holding assay names

    Examples:
        >>> processed = ProcessedData(
        ...     assays={"B cells": b_matrix, "T cells": t_matrix},
        ...     sample_data=donor_table,
        ... )
        >>> list(processed)
        ['B cells', 'T cells']
    """

    def __init__(
        self,
        assays: Mapping[str, ExpressionMatrix],
        sample_data: pd.DataFrame,
        group_data: pd.DataFrame | None = None,
        by: str = "sample_id",
        group_column: str = "assay",
    ):
        if not isinstance(sample_data, pd.DataFrame):
            raise TypeError(f"sample_data must be pd.DataFrame, got {type(sample_data)}")
        for name, matrix in assays.items():
            if not isinstance(matrix, ExpressionMatrix):
                raise TypeError(
                    f"assay '{name}' must be an ExpressionMatrix, got {type(matrix)}"
                )

        if group_data is None:
            group_data = pd.DataFrame(columns=[group_column, by])
        elif not isinstance(group_data, pd.DataFrame):
            raise TypeError(f"group_data must be pd.DataFrame, got {type(group_data)}")
        else:
            missing = [c for c in (group_column, by) if c not in group_data.columns]
            if missing:
                raise ValueError(f"group_data is missing required columns: {missing}")

        self._assays = dict(assays)
        self._sample_data = sample_data
        self._group_data = group_data
        self._by = by
        self._group_column = group_column

    def __getitem__(self, name: str) -> ExpressionMatrix:
        return self._assays[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._assays)

    def __len__(self) -> int:
        return len(self._assays)

    def assay_names(self) -> list[str]:
        return list(self._assays)

    @property
    def sample_data(self) -> pd.DataFrame:
        return self._sample_data

    @property
    def group_data(self) -> pd.DataFrame:
        return self._group_data

    @property
    def by(self) -> str:
        return self._by

    @property
    def group_column(self) -> str:
        return self._group_column

    def __repr__(self) -> str:
        return (
            f"ProcessedData({len(self)} assays)\n"
            f"  Assays: {self.assay_names()}\n"
            f"  Sample metadata columns: {list(self._sample_data.columns)}\n"
            f"  Assay-varying metadata columns: "
            f"{[c for c in self._group_data.columns if c not in (self._by, self._group_column)]}"
        )
