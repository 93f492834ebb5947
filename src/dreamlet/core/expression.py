"""
Expression matrix container for a single assay (cell type).

ExpressionMatrix couples a features × samples matrix of normalized
expression with its identifiers and, optionally, with the precision weights
produced by a voom-style transform and the number of cells that were
aggregated into each pseudobulk sample.

Biological Context:
    After pseudobulk aggregation each assay (cell type) has its own matrix:
    - Rows = features (genes)
    - Columns = samples (donors, conditions, time points)
    - Values = log2 normalized expression

    Samples present in one assay may be missing from another (a donor can
    lack a rare cell type), so every assay carries its own sample index.

Engineering Design:
    - Immutable: subsetting returns new instances
    - Validated: constructor checks shape and index consistency
    - Weights present == count-derived input (voom precision weights)

Examples:
    >>> import numpy as np
    >>> import pandas as pd
    >>> from dreamlet.core.expression import ExpressionMatrix
    >>>
    >>> matrix = ExpressionMatrix(
    ...     data=np.array([[5.1, 6.2], [7.3, 8.4]]),
    ...     feature_ids=pd.Index(["GENE1", "GENE2"]),
    ...     sample_ids=pd.Index(["donor1", "donor2"]),
    ... )
    >>> matrix.shape
    (2, 2)
"""

from __future__ import annotations

import numpy as np
import pandas as pd

__all__ = ['ExpressionMatrix']


class ExpressionMatrix:
    """
    Immutable container for one assay's expression values.

    Attributes:
        data: Expression matrix (features × samples)
        feature_ids: Row identifiers (genes)
        sample_ids: Column identifiers (samples)
        weights: Optional precision weights (same shape as data)
        n_cells: Optional number of cells per sample (length n_samples)

    Shape Invariants:
        - data.shape[0] == len(feature_ids)
        - data.shape[1] == len(sample_ids)
        - weights.shape == data.shape (when present)
        - len(n_cells) == n_samples (when present)
    """

    def __init__(
        self,
        data: np.ndarray,
        feature_ids: pd.Index,
        sample_ids: pd.Index,
        weights: np.ndarray | None = None,
        n_cells: np.ndarray | None = None,
    ):
        """
        Initialize ExpressionMatrix with validation.

        Args:
            data: Expression matrix (features × samples)
            feature_ids: Row identifiers
            sample_ids: Column identifiers
            weights: Precision weights, same shape as data. Their presence
                marks the matrix as derived from raw counts.
            n_cells: Number of cells aggregated into each sample

        Raises:
            ValueError: If shapes are inconsistent or identifiers are duplicated
            TypeError: If data types are incorrect
        """
        if not isinstance(data, np.ndarray):
            raise TypeError(f"data must be np.ndarray, got {type(data)}")
        if not isinstance(feature_ids, pd.Index):
            raise TypeError(f"feature_ids must be pd.Index, got {type(feature_ids)}")
        if not isinstance(sample_ids, pd.Index):
            raise TypeError(f"sample_ids must be pd.Index, got {type(sample_ids)}")

        if data.ndim != 2:
            raise ValueError(f"data must be 2D, got shape {data.shape}")

        n_features, n_samples = data.shape

        if len(feature_ids) != n_features:
            raise ValueError(
                f"feature_ids length ({len(feature_ids)}) must match data rows ({n_features})"
            )
        if len(sample_ids) != n_samples:
            raise ValueError(
                f"sample_ids length ({len(sample_ids)}) must match data columns ({n_samples})"
            )
        if sample_ids.has_duplicates:
            raise ValueError("sample_ids must be unique")
        if feature_ids.has_duplicates:
            raise ValueError("feature_ids must be unique")

        if weights is not None:
            weights = np.asarray(weights, dtype=np.float64)
            if weights.shape != data.shape:
                raise ValueError(
                    f"weights shape {weights.shape} must match data shape {data.shape}"
                )
        if n_cells is not None:
            n_cells = np.asarray(n_cells)
            if n_cells.shape != (n_samples,):
                raise ValueError(
                    f"n_cells length ({len(n_cells)}) must match n_samples ({n_samples})"
                )

        self._data = np.asarray(data, dtype=np.float64)
        self._feature_ids = feature_ids
        self._sample_ids = sample_ids
        self._weights = weights
        self._n_cells = n_cells

    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        weights: pd.DataFrame | None = None,
        n_cells: pd.Series | None = None,
    ) -> ExpressionMatrix:
        """
        Build from a features × samples DataFrame.

        ``weights`` and ``n_cells`` are aligned to ``frame`` by label.
        """
        w = None
        if weights is not None:
            w = weights.reindex(index=frame.index, columns=frame.columns).to_numpy(dtype=np.float64)
        cells = None
        if n_cells is not None:
            cells = n_cells.reindex(frame.columns).to_numpy()
        return cls(
            data=frame.to_numpy(dtype=np.float64),
            feature_ids=pd.Index(frame.index),
            sample_ids=pd.Index(frame.columns),
            weights=w,
            n_cells=cells,
        )

    @property
    def data(self) -> np.ndarray:
        """Expression matrix (features × samples)."""
        return self._data

    @property
    def feature_ids(self) -> pd.Index:
        return self._feature_ids

    @property
    def sample_ids(self) -> pd.Index:
        return self._sample_ids

    @property
    def weights(self) -> np.ndarray | None:
        """Precision weights, or None for non count-derived input."""
        return self._weights

    @property
    def n_cells(self) -> np.ndarray | None:
        return self._n_cells

    @property
    def is_counts(self) -> bool:
        """True when the matrix is derived from counts (carries precision weights)."""
        return self._weights is not None

    @property
    def shape(self) -> tuple[int, int]:
        return self._data.shape

    @property
    def n_features(self) -> int:
        return self._data.shape[0]

    @property
    def n_samples(self) -> int:
        return self._data.shape[1]

    def select_samples(self, samples: np.ndarray | pd.Series | pd.Index | list) -> ExpressionMatrix:
        """
        Subset matrix by samples (columns).

        Args:
            samples: Boolean mask of length n_samples, or a sequence of
                sample ids. Ids keep the order in which they are given.

        Returns:
            New ExpressionMatrix with the selected samples

        Raises:
            ValueError: If a boolean mask has the wrong length
            KeyError: If a sample id is unknown
        """
        if isinstance(samples, pd.Series):
            samples = samples.values
        samples = np.asarray(samples)

        if samples.dtype == bool:
            if len(samples) != self.n_samples:
                raise ValueError(
                    f"mask length ({len(samples)}) must match n_samples ({self.n_samples})"
                )
            idx = np.flatnonzero(samples)
        else:
            idx = self._sample_ids.get_indexer(samples)
            if (idx < 0).any():
                missing = [s for s, i in zip(samples, idx) if i < 0]
                raise KeyError(f"Unknown sample ids: {missing[:6]}")

        return ExpressionMatrix(
            data=self._data[:, idx],
            feature_ids=self._feature_ids,
            sample_ids=self._sample_ids[idx],
            weights=None if self._weights is None else self._weights[:, idx],
            n_cells=None if self._n_cells is None else self._n_cells[idx],
        )

    def select_features(self, mask: np.ndarray | pd.Series) -> ExpressionMatrix:
        """Subset matrix by features (rows) with a boolean mask."""
        if isinstance(mask, pd.Series):
            mask = mask.values

        if len(mask) != self.n_features:
            raise ValueError(
                f"mask length ({len(mask)}) must match n_features ({self.n_features})"
            )

        return ExpressionMatrix(
            data=self._data[mask, :],
            feature_ids=self._feature_ids[mask],
            sample_ids=self._sample_ids,
            weights=None if self._weights is None else self._weights[mask, :],
            n_cells=self._n_cells,
        )

    def to_frame(self) -> pd.DataFrame:
        """Expression values as a features × samples DataFrame."""
        return pd.DataFrame(self._data, index=self._feature_ids, columns=self._sample_ids)

    def __repr__(self) -> str:
        kind = "counts-derived" if self.is_counts else "continuous"
        return f"ExpressionMatrix({self.n_features} features × {self.n_samples} samples, {kind})"

    def __str__(self) -> str:
        return self.__repr__()
