"""Tests for per-fit hypothesis tables."""

import numpy as np
import pytest
from scipy import stats as scipy_stats

from dreamlet.stats.ebayes import EmpiricalBayesShrinkage
from dreamlet.stats.engine import LinearModelEngine
from dreamlet.stats.formula import Formula
from dreamlet.stats.hypothesis import fit_top_table, fit_treat_table, z_std


@pytest.fixture
def fit(expression, sample_data):
    return LinearModelEngine().fit(expression, Formula.parse("~ group_id + age"), sample_data)


@pytest.fixture
def moderated(fit):
    return EmpiricalBayesShrinkage().shrink(fit)


class TestSingleCoefficient:

    def test_columns_ordinary(self, fit):
        table = fit_top_table(fit, ["group_idstim"])
        assert list(table.columns) == [
            "ID", "logFC", "AveExpr", "t", "P.Value", "adj.P.Val", "z.std"
        ]
        assert len(table) == fit.n_features

    def test_columns_moderated_with_confint(self, moderated):
        table = fit_top_table(moderated, ["group_idstim"], confint=True)
        assert list(table.columns) == [
            "ID", "logFC", "CI.L", "CI.R", "AveExpr", "t", "P.Value", "adj.P.Val", "B", "z.std"
        ]
        assert (table["CI.L"] < table["logFC"]).all()
        assert (table["CI.R"] > table["logFC"]).all()

    def test_wider_confidence_level(self, moderated):
        t95 = fit_top_table(moderated, ["group_idstim"], confint=True)
        t99 = fit_top_table(moderated, ["group_idstim"], confint=0.99)
        assert ((t99["CI.R"] - t99["CI.L"]) > (t95["CI.R"] - t95["CI.L"])).all()

    def test_table_is_unsorted(self, fit):
        table = fit_top_table(fit, ["group_idstim"])
        assert list(table["ID"]) == list(fit.feature_ids)

    def test_z_std_has_same_p_value(self, moderated):
        table = fit_top_table(moderated, ["group_idstim"])
        p_from_z = 2 * scipy_stats.norm.sf(np.abs(table["z.std"]))
        np.testing.assert_allclose(p_from_z, table["P.Value"], rtol=1e-6)
        assert (np.sign(table["z.std"]) == np.sign(table["t"])).all()

    def test_unknown_coefficient(self, fit):
        with pytest.raises(ValueError, match="not in fit"):
            fit_top_table(fit, ["group_idother"])


class TestSeveralCoefficients:

    def test_columns(self, moderated):
        table = fit_top_table(moderated, ["group_idstim", "age"])
        assert list(table.columns) == [
            "ID", "group_idstim", "age", "AveExpr", "F", "P.Value", "adj.P.Val", "F.std"
        ]

    def test_uncorrelated_f_is_mean_squared_t(self):
        # ~ 0 + group_id has orthogonal columns, so F = (t1² + t2²) / 2
        from conftest import generate_sample_data, generate_expression

        data = generate_sample_data()
        matrix = generate_expression(data, n_genes=5)
        f = LinearModelEngine().fit(matrix, Formula.parse("~ 0 + group_id"), data)
        table = fit_top_table(f, ["group_idctrl", "group_idstim"])

        expected = (f.t["group_idctrl"] ** 2 + f.t["group_idstim"] ** 2) / 2
        np.testing.assert_allclose(table["F"], expected.to_numpy())

    def test_f_std_on_chi_square_scale(self, moderated):
        table = fit_top_table(moderated, ["group_idstim", "age"])
        p_from_std = scipy_stats.chi2.sf(table["F.std"] * 2, 2)
        np.testing.assert_allclose(p_from_std, table["P.Value"], rtol=1e-6)


class TestTreat:

    def test_threshold_increases_p_values(self, moderated):
        plain = fit_top_table(moderated, ["group_idstim"])
        treat = fit_treat_table(moderated, "group_idstim", lfc=0.5)

        assert list(treat.columns) == ["ID", "logFC", "AveExpr", "t", "P.Value", "adj.P.Val"]
        assert (treat["P.Value"].to_numpy() >= plain["P.Value"].to_numpy() - 1e-12).all()

    def test_zero_threshold_matches_t_test(self, moderated):
        plain = fit_top_table(moderated, ["group_idstim"])
        treat = fit_treat_table(moderated, "group_idstim", lfc=0.0)
        np.testing.assert_allclose(treat["P.Value"], plain["P.Value"], rtol=1e-6)

    def test_small_effects_have_zero_t(self, moderated):
        treat = fit_treat_table(moderated, "group_idstim", lfc=100.0)
        assert (treat["t"] == 0).all()


class TestZStd:

    def test_tiny_p_values_stay_finite(self):
        z = z_std(np.array([40.0, -40.0]), np.array([0.0, 1e-320]))
        assert np.isfinite(z).all()
        assert z[0] > 0 > z[1]
