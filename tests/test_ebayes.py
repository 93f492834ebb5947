"""Tests for empirical Bayes variance moderation."""

import numpy as np
import pandas as pd
import pytest
from scipy.special import polygamma

from dreamlet.stats.ebayes import (
    EmpiricalBayesShrinkage,
    fit_f_dist,
    squeeze_var,
    tmixture,
    trigamma_inverse,
)
from dreamlet.stats.engine import LinearModelEngine
from dreamlet.stats.formula import Formula


class TestTrigammaInverse:

    @pytest.mark.parametrize("y", [0.1, 0.7, 2.0, 15.0, 300.0])
    def test_inverts_trigamma(self, y):
        assert trigamma_inverse(polygamma(1, y)) == pytest.approx(y, rel=1e-5)

    def test_non_positive_input(self):
        assert trigamma_inverse(0.0) == np.inf

    def test_asymptotes(self):
        assert trigamma_inverse(1e8) == pytest.approx(1e-4)
        assert trigamma_inverse(1e-7) == pytest.approx(1e7)


class TestFitFDist:

    def test_recovers_prior(self):
        rng = np.random.default_rng(11)
        d0, s0_sq, df = 8.0, 0.25, 6.0
        true_var = s0_sq * d0 / rng.chisquare(d0, size=20000)
        sigma2 = true_var * rng.chisquare(df, size=20000) / df

        est_d0, est_s0 = fit_f_dist(sigma2, np.full(20000, df))

        assert est_d0 == pytest.approx(d0, rel=0.2)
        assert np.all(est_s0 == est_s0[0])
        assert est_s0[0] == pytest.approx(s0_sq, rel=0.1)

    def test_no_extra_dispersion_gives_infinite_prior_df(self):
        rng = np.random.default_rng(2)
        sigma2 = rng.chisquare(50, size=5000) / 50 * 0.5
        d0, _ = fit_f_dist(sigma2, np.full(5000, 50.0))
        assert d0 > 100

    def test_too_few_variances_disable_moderation(self):
        d0, s0 = fit_f_dist(np.array([1.0, 2.0]), np.array([3.0, 3.0]))
        assert d0 == 0.0
        assert s0.shape == (2,)

    def test_trend_follows_covariate(self):
        rng = np.random.default_rng(5)
        amean = np.linspace(2, 12, 3000)
        prior = np.exp(-0.3 * amean)
        sigma2 = prior * rng.chisquare(10, size=3000) / 10

        _, s0_sq = fit_f_dist(sigma2, np.full(3000, 10.0), covariate=amean)

        assert s0_sq[0] > s0_sq[-1]
        assert s0_sq[0] / s0_sq[-1] > 5

    def test_robust_ignores_outliers(self):
        rng = np.random.default_rng(9)
        sigma2 = 0.5 * rng.chisquare(5, size=4000) / 5
        sigma2[:40] *= 1000

        d0_plain, _ = fit_f_dist(sigma2, np.full(4000, 5.0))
        d0_robust, _ = fit_f_dist(sigma2, np.full(4000, 5.0), robust=True)

        assert d0_robust > d0_plain


class TestSqueezeVar:

    def test_posterior_between_prior_and_sample(self):
        sigma2 = np.array([0.1, 1.0, 4.0])
        s2_post, df_total = squeeze_var(sigma2, np.full(3, 4.0), 4.0, 1.0)

        np.testing.assert_allclose(s2_post, [0.55, 1.0, 2.5])
        np.testing.assert_allclose(df_total, [8.0, 8.0, 8.0])

    def test_infinite_prior_df_uses_prior_and_pooled_df(self):
        s2_post, df_total = squeeze_var(np.array([0.2, 3.0]), np.array([5.0, 5.0]), np.inf, 1.0)

        np.testing.assert_allclose(s2_post, [1.0, 1.0])
        np.testing.assert_allclose(df_total, [10.0, 10.0])

    def test_zero_prior_df_leaves_variances(self):
        sigma2 = np.array([0.2, 3.0])
        s2_post, df_total = squeeze_var(sigma2, np.array([5.0, 5.0]), 0.0, 1.0)
        np.testing.assert_allclose(s2_post, sigma2)
        np.testing.assert_allclose(df_total, [5.0, 5.0])


class TestTmixture:

    def test_too_few_statistics(self):
        assert np.isnan(tmixture(np.array([]), np.array([]), np.array([]), 0.01))

    def test_positive_for_strong_signal(self):
        rng = np.random.default_rng(4)
        t = rng.standard_t(10, size=2000)
        t[:40] += 8
        v0 = tmixture(t, np.full(2000, 0.5), np.full(2000, 10.0), 0.02)
        assert v0 > 0


class TestEmpiricalBayesShrinkage:

    @pytest.fixture
    def fit(self, sample_data):
        from conftest import generate_expression

        matrix = generate_expression(sample_data, n_genes=300, n_de=20, seed=12)
        return LinearModelEngine().fit(matrix, Formula.parse("~ group_id"), sample_data)

    def test_moderated_fields(self, fit):
        moderated = EmpiricalBayesShrinkage().shrink(fit)

        assert moderated.is_moderated
        assert not fit.is_moderated
        assert (moderated.df_total >= moderated.df_residual).all()
        assert moderated.lods.shape == moderated.coefficients.shape
        assert np.isfinite(moderated.lods["group_idstim"]).all()

    def test_posterior_variance_shrinks_towards_prior(self, fit):
        moderated = EmpiricalBayesShrinkage().shrink(fit)
        s2 = fit.sigma ** 2
        lo = np.minimum(s2, moderated.s2_prior)
        hi = np.maximum(s2, moderated.s2_prior)
        assert ((moderated.s2_post >= lo - 1e-12) & (moderated.s2_post <= hi + 1e-12)).all()

    def test_de_genes_rank_highest_by_b(self, fit):
        moderated = EmpiricalBayesShrinkage().shrink(fit, robust=True, trend=True)
        top = moderated.lods["group_idstim"].sort_values(ascending=False).index[:20]
        assert len(set(top) & {f"GENE{i + 1}" for i in range(20)}) >= 18

    def test_input_fit_not_mutated(self, fit):
        before = fit.t.copy()
        EmpiricalBayesShrinkage().shrink(fit)
        pd.testing.assert_frame_equal(fit.t, before)

    def test_invalid_proportion(self):
        with pytest.raises(ValueError, match="proportion"):
            EmpiricalBayesShrinkage(proportion=1.5)
