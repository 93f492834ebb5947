"""
Pytest configuration and shared fixtures.

Provides synthetic pseudobulk datasets and hand-built model fits.
"""

import numpy as np
import pandas as pd
import pytest

from dreamlet.core.expression import ExpressionMatrix
from dreamlet.core.processed import ProcessedData
from dreamlet.stats.model_fit import ModelFit


def generate_sample_data(n_donors: int = 8, seed: int = 0) -> pd.DataFrame:
    """
    Shared metadata for a paired design: every donor has a ctrl and a stim sample.

    Columns:
        group_id: ctrl / stim
        donor: donor id
        age: donor age (constant within donor)
        batch: single batch for every sample
    """
    rng = np.random.default_rng(seed)
    ages = rng.integers(20, 80, size=n_donors)
    rows = []
    for d in range(n_donors):
        for cond in ("ctrl", "stim"):
            rows.append({
                "sample_id": f"d{d + 1}_{cond}",
                "group_id": cond,
                "donor": f"d{d + 1}",
                "age": float(ages[d]),
                "batch": "b1",
            })
    return pd.DataFrame(rows).set_index("sample_id")


def generate_expression(
    sample_data: pd.DataFrame,
    n_genes: int = 40,
    n_de: int = 5,
    effect: float = 2.0,
    weights: bool = False,
    seed: int = 0,
) -> ExpressionMatrix:
    """
    Log-expression with a stim effect on the first ``n_de`` genes.

    Returns:
        ExpressionMatrix with samples in ``sample_data`` order.
    """
    rng = np.random.default_rng(seed)
    n_samples = len(sample_data)
    baseline = rng.uniform(4, 10, size=(n_genes, 1))
    donor_codes = pd.factorize(sample_data["donor"])[0]
    donor_effect = rng.normal(0, 0.3, size=(n_genes, donor_codes.max() + 1))[:, donor_codes]
    noise = rng.normal(0, 0.5, size=(n_genes, n_samples))
    stim = (sample_data["group_id"] == "stim").to_numpy(dtype=float)
    signal = np.zeros((n_genes, n_samples))
    signal[:n_de] = effect * stim
    data = baseline + donor_effect + signal + noise

    w = rng.uniform(0.5, 2.0, size=data.shape) if weights else None
    return ExpressionMatrix(
        data=data,
        feature_ids=pd.Index([f"GENE{i + 1}" for i in range(n_genes)]),
        sample_ids=pd.Index(sample_data.index),
        weights=w,
        n_cells=np.full(n_samples, 50),
    )


def generate_processed(
    assays=("B cells", "T cells"),
    n_genes: int = 40,
    n_donors: int = 8,
    group_data: pd.DataFrame | None = None,
    seed: int = 0,
) -> ProcessedData:
    """ProcessedData with one synthetic matrix per assay."""
    sample_data = generate_sample_data(n_donors=n_donors, seed=seed)
    matrices = {
        name: generate_expression(sample_data, n_genes=n_genes, seed=seed + i + 1)
        for i, name in enumerate(assays)
    }
    return ProcessedData(matrices, sample_data, group_data=group_data)


def make_fit(
    ids,
    p_values,
    coef: str = "group_idstim",
    logfc=None,
    amean=None,
) -> ModelFit:
    """
    ModelFit with prescribed p-values for one coefficient plus an intercept.

    t-statistics are set to match the p-values at 10 residual df, with the
    sign of ``logfc``.
    """
    from scipy import stats as scipy_stats

    ids = pd.Index(ids)
    p = np.asarray(p_values, dtype=float)
    n = len(ids)
    df = np.full(n, 10.0)
    t = scipy_stats.t.isf(p / 2, df)
    if logfc is None:
        logfc = t * 0.1
    logfc = np.asarray(logfc, dtype=float)
    t = np.sign(logfc) * t
    names = ["(Intercept)", coef]

    coefficients = pd.DataFrame({"(Intercept)": np.full(n, 5.0), coef: logfc}, index=ids)
    stdev = pd.DataFrame({"(Intercept)": np.full(n, 0.1), coef: logfc / t}, index=ids)
    return ModelFit(
        coefficients=coefficients[names],
        stdev_unscaled=stdev[names],
        sigma=pd.Series(np.ones(n), index=ids),
        df_residual=pd.Series(df, index=ids),
        amean=pd.Series(amean if amean is not None else np.full(n, 5.0), index=ids),
        formula="~ group_id",
        t=pd.DataFrame({"(Intercept)": np.full(n, 50.0), coef: t}, index=ids),
        p_value=pd.DataFrame({"(Intercept)": np.full(n, 1e-10), coef: p}, index=ids),
    )


@pytest.fixture
def sample_data():
    return generate_sample_data()


@pytest.fixture
def expression(sample_data):
    return generate_expression(sample_data)


@pytest.fixture
def processed():
    return generate_processed()
