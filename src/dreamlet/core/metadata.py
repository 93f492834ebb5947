"""
Merging of shared and assay-varying sample metadata.

Each assay is fit against its own design table built from two sources:

1. Metadata constant across assays (one row per sample)
2. Metadata that varies by assay (one row per assay and sample), typically
   summary statistics computed while aggregating cells into pseudobulk

The merge is a left join on the sample id: every retained sample keeps its
row, assay-varying columns are added where available and are NaN otherwise.
A duplicated join key would make the join ambiguous and is rejected.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import pandas as pd

from dreamlet.errors import MergeError

__all__ = ['merge_metadata']

logger = logging.getLogger(__name__)


def merge_metadata(
    constant_table: pd.DataFrame,
    varying_table: pd.DataFrame,
    group_id: str,
    by: str,
    group_column: str = "assay",
    sample_ids: Sequence[str] | pd.Index | None = None,
) -> pd.DataFrame:
    """
    Build the design table for one assay.

    Args:
        constant_table: Shared metadata indexed by sample id.
        varying_table: Assay-varying metadata with columns ``group_column``
            and ``by`` plus covariates.
        group_id: Assay whose slice of ``varying_table`` is joined.
        by: Column of ``varying_table`` holding the sample id.
        group_column: Column of ``varying_table`` holding the assay name.
        sample_ids: Samples present in the assay's expression matrix. The
            constant table is restricted to these, in this order. Defaults
            to every row of ``constant_table``.

    Returns:
        Design table indexed by sample id. Assay-varying columns replace
        constant columns of the same name.

    Raises:
        MergeError: If the sample id is duplicated in either table for this
            assay, or a requested sample is absent from the constant table.
    """
    if constant_table.index.has_duplicates:
        dup = constant_table.index[constant_table.index.duplicated()].unique()
        raise MergeError(
            f"Duplicated sample ids in shared metadata: {list(dup[:6])}"
        )

    if sample_ids is not None:
        sample_ids = pd.Index(sample_ids)
        missing = sample_ids.difference(constant_table.index)
        if len(missing) > 0:
            raise MergeError(
                f"Samples missing from shared metadata for '{group_id}': {list(missing[:6])}"
            )
        design = constant_table.loc[sample_ids]
    else:
        design = constant_table

    if varying_table is None or len(varying_table) == 0:
        return design.copy()

    group_slice = varying_table[varying_table[group_column] == group_id]
    group_slice = group_slice.drop(columns=[group_column])

    if group_slice[by].duplicated().any():
        dup = group_slice.loc[group_slice[by].duplicated(), by].unique()
        raise MergeError(
            f"Join key '{by}' is duplicated for '{group_id}': {list(dup[:6])}"
        )

    group_slice = group_slice.set_index(by)
    overlap = [c for c in group_slice.columns if c in design.columns]
    if overlap:
        logger.debug("Assay-varying columns override shared columns for %s: %s", group_id, overlap)
        design = design.drop(columns=overlap)

    merged = design.join(group_slice, how="left")
    merged.index.name = constant_table.index.name

    return merged
