"""Tests for the default regression engine."""

import numpy as np
import pandas as pd
import pytest
import statsmodels.api as sm

from dreamlet.core.expression import ExpressionMatrix
from dreamlet.errors import GroupLevelFitError
from dreamlet.stats.design_matrix import build_design, make_contrasts
from dreamlet.stats.engine import LinearModelEngine, RegressionEngine, ShrinkageEngine
from dreamlet.stats.ebayes import EmpiricalBayesShrinkage
from dreamlet.stats.formula import Formula
from dreamlet.stats.model_fit import ModelFit


@pytest.fixture
def engine():
    return LinearModelEngine()


class TestProtocols:

    def test_defaults_satisfy_protocols(self, engine):
        assert isinstance(engine, RegressionEngine)
        assert isinstance(EmpiricalBayesShrinkage(), ShrinkageEngine)


class TestOrdinaryLeastSquares:

    def test_matches_statsmodels(self, engine, expression, sample_data):
        formula = Formula.parse("~ group_id + age")
        fit = engine.fit(expression, formula, sample_data)

        X = build_design(formula, sample_data)
        ref = sm.OLS(expression.data[3], X.to_numpy()).fit()

        assert isinstance(fit, ModelFit)
        assert fit.coef_names == ["(Intercept)", "group_idstim", "age"]
        assert fit.method == "ols"
        np.testing.assert_allclose(fit.coefficients.iloc[3].to_numpy(), ref.params, rtol=1e-8)
        np.testing.assert_allclose(fit.sigma.iloc[3], np.sqrt(ref.scale), rtol=1e-8)
        np.testing.assert_allclose(
            fit.stdev_unscaled.iloc[3].to_numpy() * fit.sigma.iloc[3], ref.bse, rtol=1e-8
        )
        np.testing.assert_allclose(fit.p_value.iloc[3].to_numpy(), ref.pvalues, rtol=1e-6)
        assert (fit.df_residual == 13).all()

    def test_amean_is_row_mean(self, engine, expression, sample_data):
        fit = engine.fit(expression, Formula.parse("~ group_id"), sample_data)
        np.testing.assert_allclose(fit.amean.to_numpy(), expression.data.mean(axis=1))

    def test_detects_stim_effect(self, engine, expression, sample_data):
        fit = engine.fit(expression, Formula.parse("~ group_id"), sample_data)
        assert (fit.coefficients["group_idstim"].iloc[:5] > 1.0).all()
        assert (fit.p_value["group_idstim"].iloc[:5] < 0.01).all()

    def test_saturated_design_has_missing_sigma(self, engine, sample_data):
        sub = sample_data.iloc[:2]
        m = ExpressionMatrix(np.ones((3, 2)), pd.Index(["a", "b", "c"]), pd.Index(sub.index))
        fit = engine.fit(m, Formula.parse("~ group_id"), sub)

        assert fit.sigma.isna().all()
        assert (fit.df_residual == 0).all()

    def test_string_formula_accepted(self, engine, expression, sample_data):
        fit = engine.fit(expression, "~ group_id", sample_data)
        assert fit.formula == "~ group_id"


class TestWeightedAndMissing:

    def test_weights_match_statsmodels_wls(self, engine, sample_data):
        rng = np.random.default_rng(3)
        data = rng.normal(5, 1, size=(4, len(sample_data)))
        weights = rng.uniform(0.5, 2.0, size=data.shape)
        m = ExpressionMatrix(
            data, pd.Index(list("abcd")), pd.Index(sample_data.index), weights=weights
        )
        formula = Formula.parse("~ group_id")
        fit = engine.fit(m, formula, sample_data)

        X = build_design(formula, sample_data).to_numpy()
        ref = sm.WLS(data[1], X, weights=weights[1]).fit()
        np.testing.assert_allclose(fit.coefficients.iloc[1].to_numpy(), ref.params, rtol=1e-8)
        np.testing.assert_allclose(fit.sigma.iloc[1], np.sqrt(ref.scale), rtol=1e-8)

    def test_missing_values_reduce_df(self, engine, expression, sample_data):
        data = expression.data.copy()
        data[0, :3] = np.nan
        m = ExpressionMatrix(data, expression.feature_ids, expression.sample_ids)
        fit = engine.fit(m, Formula.parse("~ group_id"), sample_data)

        assert fit.df_residual.iloc[0] == 11
        assert fit.df_residual.iloc[1] == 14

    def test_feature_with_too_few_observations_recorded(self, engine, expression, sample_data):
        data = expression.data.copy()
        data[2, 1:] = np.nan
        m = ExpressionMatrix(data, expression.feature_ids, expression.sample_ids)
        fit = engine.fit(m, Formula.parse("~ group_id"), sample_data)

        assert "GENE3" in fit.errors
        assert "Too few observations" in fit.errors["GENE3"]
        assert "GENE3" not in fit.feature_ids
        assert fit.n_features == expression.n_features - 1


class TestGroupLevelFailures:

    def test_no_samples(self, engine, expression, sample_data):
        empty = expression.select_samples(np.zeros(expression.n_samples, dtype=bool))
        with pytest.raises(GroupLevelFitError, match="No samples"):
            engine.fit(empty, Formula.parse("~ group_id"), sample_data.iloc[:0])

    def test_singular_design(self, engine, expression, sample_data):
        data = sample_data.assign(age2=sample_data["age"] * 2)
        with pytest.raises(GroupLevelFitError, match="singular"):
            engine.fit(expression, Formula.parse("~ age + age2"), data)

    def test_unknown_variable(self, engine, expression, sample_data):
        with pytest.raises(GroupLevelFitError, match="Cannot build design"):
            engine.fit(expression, Formula.parse("~ nothing_here"), sample_data)

    def test_random_slope_rejected(self, engine, expression, sample_data):
        with pytest.raises(GroupLevelFitError, match="Random slopes"):
            engine.fit(expression, Formula.parse("~ group_id + (age | donor)"), sample_data)

    def test_unknown_option(self, engine, expression, sample_data):
        with pytest.raises(GroupLevelFitError, match="Unknown fit options"):
            engine.fit(expression, Formula.parse("~ group_id"), sample_data, bogus=1)


class TestContrasts:

    def test_contrast_appended_as_coefficient(self, engine, expression, sample_data):
        formula = Formula.parse("~ 0 + group_id")
        L = make_contrasts(formula, sample_data, {"stim_vs_ctrl": "group_idstim - group_idctrl"})
        fit = engine.fit(expression, formula, sample_data, contrasts=L)

        assert fit.coef_names == ["group_idctrl", "group_idstim", "stim_vs_ctrl"]
        assert fit.contrast_names == ("stim_vs_ctrl",)
        diff = fit.coefficients["group_idstim"] - fit.coefficients["group_idctrl"]
        np.testing.assert_allclose(fit.coefficients["stim_vs_ctrl"], diff)
        # balanced two-group design: var(a - b) = var(a) + var(b)
        np.testing.assert_allclose(
            fit.stdev_unscaled["stim_vs_ctrl"] ** 2,
            fit.stdev_unscaled["group_idctrl"] ** 2 + fit.stdev_unscaled["group_idstim"] ** 2,
        )
        assert fit.cov_unscaled.shape == (expression.n_features, 3, 3)


class TestMixedModel:

    def test_random_intercept_fit(self, engine, sample_data):
        rng = np.random.default_rng(7)
        donor = pd.factorize(sample_data["donor"])[0]
        stim = (sample_data["group_id"] == "stim").to_numpy(dtype=float)
        data = np.vstack([
            5 + 1.5 * stim + rng.normal(0, 1.0, size=8)[donor] + rng.normal(0, 0.3, size=16)
            for _ in range(3)
        ])
        m = ExpressionMatrix(data, pd.Index(["a", "b", "c"]), pd.Index(sample_data.index))

        fit = engine.fit(m, Formula.parse("~ group_id + (1 | donor)"), sample_data)

        assert fit.method == "lmm"
        assert fit.n_features + len(fit.errors) == 3
        if fit.n_features:
            assert fit.coef_names == ["(Intercept)", "group_idstim"]
            assert (fit.coefficients["group_idstim"] > 0.5).all()
            assert (fit.df_residual >= 1).all()
