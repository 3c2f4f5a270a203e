# This code was written by Claude (Anthropic). The project was directed by Lior Pachter.
"""Tests for gene-wise dispersions, the dispersion trend and MAP shrinkage."""

import warnings

import numpy as np
import pytest

import deseqpython as dp
from deseqpython.dispersion import MIN_DISP, gene_dispersions, max_disp


@pytest.fixture
def trended(rng):
    """Means and noisy dispersions around 0.05 + 2 / mean."""
    means = np.exp(rng.uniform(np.log(5), np.log(1e4), 2000))
    truth = 0.05 + 2.0 / means
    disps = truth * rng.gamma(10, 0.1, size=len(means))
    return means, disps, truth


class TestGeneDispersions:
    """Cox-Reid gene-wise estimates."""

    def test_recovers_dispersion(self, rng):
        alpha, mu = 0.2, 100.0
        r = 1 / alpha
        y = rng.negative_binomial(r, r / (r + mu), size=(1, 200))
        disp, fitted_mu = gene_dispersions(y, np.ones((200, 1)), np.ones(200))
        assert abs(disp[0] - alpha) / alpha < 0.3
        assert fitted_mu.shape == (1, 200)

    def test_all_zero_gene_nan(self, nb_counts):
        X = np.column_stack([np.ones(6), [0, 0, 0, 1, 1, 1]])
        disp, _ = gene_dispersions(nb_counts.values[-3:], X, np.ones(6))
        assert np.isnan(disp[-1])
        assert np.all(np.isfinite(disp[:-1]))

    def test_bounded(self, nb_counts):
        X = np.column_stack([np.ones(6), [0, 0, 0, 1, 1, 1]])
        disp, _ = gene_dispersions(nb_counts.values[:40], X, np.ones(6))
        assert np.all(disp >= MIN_DISP)
        assert np.all(disp <= max_disp(6))

    def test_no_residual_df(self, nb_counts):
        with pytest.raises(ValueError):
            gene_dispersions(nb_counts.values[:, :2], np.eye(2), np.ones(2))

    def test_parallel_matches_serial(self, nb_counts):
        X = np.column_stack([np.ones(6), [0, 0, 0, 1, 1, 1]])
        x = nb_counts.values[:10]
        serial, _ = gene_dispersions(x, X, np.ones(6), n_jobs=1)
        parallel, _ = gene_dispersions(x, X, np.ones(6), n_jobs=2)
        np.testing.assert_allclose(parallel, serial)


class TestTrend:
    """fit_dispersion_trend."""

    def test_parametric_coefficients(self, trended):
        means, disps, _ = trended
        trend = dp.fit_dispersion_trend(means, disps, 'parametric')
        assert trend.fit_type == 'parametric'
        np.testing.assert_allclose(trend.coefficients, [0.05, 2.0], rtol=0.2)

    def test_local(self, trended):
        means, disps, truth = trended
        trend = dp.fit_dispersion_trend(means, disps, 'local')
        assert trend.fit_type == 'local'
        ratio = trend(means) / truth
        assert 0.7 < np.median(ratio) < 1.3

    def test_mean(self, trended):
        means, disps, _ = trended
        trend = dp.fit_dispersion_trend(means, disps, 'mean')
        vals = trend(means)
        assert np.all(vals == vals[0])
        assert vals[0] == pytest.approx(np.mean(disps), rel=0.05)

    def test_unusable_genes_ignored(self, trended):
        means, disps, _ = trended
        padded_means = np.concatenate([means, [50.0] * 100])
        padded = np.concatenate([disps, [MIN_DISP] * 100])
        a = dp.fit_dispersion_trend(means, disps)
        b = dp.fit_dispersion_trend(padded_means, padded)
        np.testing.assert_allclose(a.coefficients, b.coefficients)

    def test_no_usable_genes(self):
        with pytest.warns(dp.DispersionFitWarning):
            trend = dp.fit_dispersion_trend(np.array([10.0, 20.0, 30.0]),
                                            np.full(3, MIN_DISP))
        assert trend.fit_type == 'mean'
        assert np.all(trend(np.array([1.0, 100.0])) == MIN_DISP)

    def test_invalid_fit_type(self, trended):
        means, disps, _ = trended
        with pytest.raises(ValueError):
            dp.fit_dispersion_trend(means, disps, 'loess')

    def test_floor(self):
        trend = dp.DispersionTrend('parametric', coefficients=np.array([-1.0, 0.0]))
        assert np.all(trend(np.array([1.0, 10.0])) == MIN_DISP)


class TestDatasetDispersions:
    """Dispersion steps on a DESeqDataSet."""

    def test_outputs(self, fitted_ds):
        fit = fitted_ds['dispersion.fit']
        assert fit.columns == ('Intercept', 'condition_B_vs_A')
        assert np.isnan(fit.gene_est[-1])
        assert np.isnan(fit.final[-1])
        final = fit.final[:-1]
        assert np.all(final >= MIN_DISP)
        assert np.all(final <= max_disp(6))
        assert fit.prior_var >= 0.25

    def test_shrinkage_towards_trend(self, fitted_ds):
        fit = fitted_ds['dispersion.fit']
        ok = np.isfinite(fit.gene_est) & ~fit.outlier & (fit.gene_est > 100 * MIN_DISP)
        before = np.median(np.abs(np.log(fit.gene_est[ok]) - np.log(fit.fitted[ok])))
        after = np.median(np.abs(np.log(fit.final[ok]) - np.log(fit.fitted[ok])))
        assert after < before

    def test_outliers_keep_gene_estimate(self, fitted_ds):
        fit = fitted_ds['dispersion.fit']
        o = fit.outlier
        np.testing.assert_allclose(fit.final[o], fit.gene_est[o])

    def test_get_dispersions(self, fitted_ds):
        d = dp.get_dispersions(fitted_ds)
        assert list(d.index) == fitted_ds.gene_ids
        np.testing.assert_array_equal(d.values, fitted_ds['dispersion.fit'].final)

    def test_stepwise(self, nb_counts, samples6):
        ds = dp.estimate_size_factors(
            dp.make_deseq_dataset(nb_counts.iloc[:60], samples6, '~ condition'))
        dp.estimate_dispersions_gene_est(ds)
        assert ds['stage'] == 'SizeFactorsEstimated'
        assert ds['dispersion.fit'].fitted is None
        with warnings.catch_warnings():
            warnings.simplefilter('ignore', dp.DispersionFitWarning)
            dp.estimate_dispersions_fit(ds, fit_type='local')
        assert ds['stage'] == 'DispersionsEstimated'
        assert ds['dispersion.fit'].trend.fit_type == 'local'
        dp.estimate_dispersions_map(ds)
        assert ds['stage'] == 'DispersionsShrunk'
        assert ds['dispersion.fit'].final is not None

        dp.estimate_dispersions_gene_est(ds)
        assert ds['stage'] == 'SizeFactorsEstimated'
        assert ds['dispersion.fit'].final is None

    def test_read_only(self, fitted_ds):
        fit = fitted_ds['dispersion.fit']
        with pytest.raises(ValueError):
            fit.final[0] = 1.0

    def test_design_recorded(self, fitted_ds):
        fit = fitted_ds['dispersion.fit']
        np.testing.assert_array_equal(fit.design, fitted_ds['design.matrix'])
        assert fit.matches(fitted_ds['design.columns'], fitted_ds['design.matrix'])

    def test_shrinkage_rejects_changed_design(self, fitted_ds):
        from deseqpython.design import resolve_design
        ds = fitted_ds._copy()
        ds['samples']['condition'] = ['B', 'A', 'A', 'B', 'B', 'A']
        resolve_design(ds, ds['design'])
        assert not ds['dispersion.fit'].matches(ds['design.columns'],
                                                ds['design.matrix'])
        with pytest.raises(dp.StageError):
            dp.estimate_dispersions_map(ds)
        with pytest.raises(dp.StageError):
            dp.estimate_dispersions_fit(ds)
