"""
Unit tests for fe_gcv.evaluators module.

Tests the exact and stochastic GCV evaluators:
- Degrees of freedom behaviour in lambda
- Analytic derivatives against finite differences
- Agreement and reproducibility of the stochastic estimate
"""

import pytest
import numpy as np
import scipy.linalg

from fe_gcv.carrier import build_carrier
from fe_gcv.evaluators import GCVExact, GCVStochastic, _trace_estimate
from fe_gcv.optimization_data import OptimizationData
from fe_gcv.regression import MixedFERegression


def _carrier(data, mesh):
    vertices, triangles = mesh
    model = MixedFERegression(data, vertices, triangles)
    return build_carrier(data, model, OptimizationData())


class TestGCVExact:
    """Test suite for exact GCV evaluation."""

    @pytest.fixture(autouse=True)
    def setup(self, node_data, mesh):
        self.carrier = _carrier(node_data, mesh)
        self.evaluator = GCVExact(self.carrier)

    def test_dof_decreases_with_lambda(self):
        lambdas = np.logspace(-3, 3, 13)
        dofs = [self.evaluator.compute_dof(lam) for lam in lambdas]

        assert np.all(np.diff(dofs) <= 1e-10)
        assert 0 < dofs[-1] < dofs[0] < self.carrier.n_obs

    def test_dof_at_zero_interpolates(self):
        # T alone is singular on unobserved nodes
        with pytest.warns(UserWarning, match="least squares"):
            dof = self.evaluator.compute_dof(0.0)

        assert dof == pytest.approx(self.carrier.n_obs)
        assert self.evaluator.compute_dof(1e-3) <= dof + 1e-8

    def test_score_infinite_at_zero(self):
        with pytest.warns(UserWarning):
            score, d1, d2 = self.evaluator.evaluate(0.0)

        assert score == np.inf
        assert np.isnan(d1) and np.isnan(d2)

    def test_score_matches_definition(self):
        lam = 0.3
        score, _, _ = self.evaluator.evaluate(lam)

        V = self.carrier.get_T() + lam * self.carrier.get_R()
        S = self.carrier.get_psi() @ scipy.linalg.solve(V, self.carrier.get_E())
        z = self.carrier.get_z()
        n = len(z)
        r = z - S @ z
        expected = n * (r @ r) / (n - np.trace(S))**2

        assert score == pytest.approx(expected, rel=1e-10)
        np.testing.assert_allclose(self.evaluator.last_z_hat, S @ z)
        assert self.evaluator.last_lambda == lam

    def test_first_derivative(self):
        lam = 0.3
        h = 1e-5 * lam
        _, d1, _ = self.evaluator.evaluate(lam)
        upper = self.evaluator.evaluate(lam + h, derivatives=False)[0]
        lower = self.evaluator.evaluate(lam - h, derivatives=False)[0]

        assert d1 == pytest.approx((upper - lower) / (2 * h), rel=1e-4)

    def test_second_derivative(self):
        lam = 0.3
        h = 1e-5 * lam
        _, _, d2 = self.evaluator.evaluate(lam)
        upper = self.evaluator.evaluate(lam + h)[1]
        lower = self.evaluator.evaluate(lam - h)[1]

        assert d2 == pytest.approx((upper - lower) / (2 * h), rel=1e-3)

    def test_skipped_derivatives_are_nan(self):
        score, d1, d2 = self.evaluator.evaluate(0.3, derivatives=False)

        assert np.isfinite(score)
        assert np.isnan(d1) and np.isnan(d2)

    def test_negative_lambda_rejected(self):
        with pytest.raises(ValueError):
            self.evaluator.evaluate(-1.0)
        with pytest.raises(ValueError):
            self.evaluator.evaluate(np.nan)

    def test_default_lambda_positive(self):
        lam = self.evaluator.default_lambda()

        assert np.isfinite(lam)
        assert lam > 0


class TestGCVExactWeighted:
    """Covariates add q to the degrees of freedom."""

    def test_weighted_dof(self, covariate_data, mesh):
        carrier = _carrier(covariate_data, mesh)
        evaluator = GCVExact(carrier)
        lam = 0.5

        V = carrier.get_T() + lam * carrier.get_R()
        S = carrier.get_psi() @ scipy.linalg.solve(V, carrier.get_E())
        expected = 1 + np.trace(carrier.get_Q() @ S)

        assert evaluator.compute_dof(lam) == pytest.approx(expected, rel=1e-10)

    def test_weighted_derivative(self, covariate_data, mesh):
        evaluator = GCVExact(_carrier(covariate_data, mesh))
        lam = 0.5
        h = 1e-5 * lam

        _, d1, _ = evaluator.evaluate(lam)
        upper = evaluator.evaluate(lam + h, derivatives=False)[0]
        lower = evaluator.evaluate(lam - h, derivatives=False)[0]

        assert d1 == pytest.approx((upper - lower) / (2 * h), rel=1e-4)

    def test_areal_score_finite(self, areal_data, mesh):
        evaluator = GCVExact(_carrier(areal_data, mesh))
        score, d1, d2 = evaluator.evaluate(0.5)

        assert np.isfinite(score)
        assert np.isfinite(d1) and np.isfinite(d2)


class TestGCVStochastic:
    """Test suite for the stochastic trace estimate."""

    @pytest.fixture(autouse=True)
    def setup(self, node_data, mesh):
        self.carrier = _carrier(node_data, mesh)
        self.exact = GCVExact(self.carrier)

    def test_close_to_exact(self):
        stochastic = GCVStochastic(self.carrier, n_probes=2000, seed=0)

        for lam in (0.05, 0.5, 5.0):
            assert stochastic.compute_dof(lam) == pytest.approx(
                self.exact.compute_dof(lam), abs=0.25
            )
            stochastic.evaluate(lam, derivatives=False)
            self.exact.evaluate(lam, derivatives=False)
            # fitted values are solved exactly in both evaluators
            np.testing.assert_allclose(
                stochastic.last_z_hat, self.exact.last_z_hat, rtol=1e-6, atol=1e-8
            )

    def test_same_seed_reproducible(self):
        first = GCVStochastic(self.carrier, n_probes=50, seed=123)
        second = GCVStochastic(self.carrier, n_probes=50, seed=123)

        np.testing.assert_array_equal(first.probes, second.probes)
        assert first.evaluate(0.5) == second.evaluate(0.5)

    def test_probes_are_rademacher(self):
        stochastic = GCVStochastic(self.carrier, n_probes=30, seed=1)

        assert stochastic.probes.shape == (self.carrier.n_obs, 30)
        assert set(np.unique(stochastic.probes)) <= {-1.0, 1.0}

    def test_derivatives_finite(self):
        stochastic = GCVStochastic(self.carrier, n_probes=200, seed=5)
        score, d1, d2 = stochastic.evaluate(0.5)

        assert np.isfinite(score)
        assert np.isfinite(d1) and np.isfinite(d2)

    def test_zero_lambda_infinite(self):
        stochastic = GCVStochastic(self.carrier, n_probes=10, seed=2)

        with pytest.warns(UserWarning, match="lambda=0"):
            score, _, _ = stochastic.evaluate(0.0)
        assert score == np.inf

    def test_invalid_probe_count(self):
        with pytest.raises(ValueError):
            GCVStochastic(self.carrier, n_probes=0)

    def test_trace_estimate_identity(self):
        U = np.random.default_rng(9).choice([-1.0, 1.0], size=(7, 4))

        # u^t u == n for every Rademacher probe
        assert _trace_estimate(U, U) == pytest.approx(7.0)


class TestGCVStochasticConfigurations:
    """Weighted and areal carriers through the sparse stochastic path."""

    @pytest.mark.parametrize("data_fixture", ["covariate_data", "areal_data"])
    def test_matches_exact(self, data_fixture, mesh, request):
        carrier = _carrier(request.getfixturevalue(data_fixture), mesh)
        exact = GCVExact(carrier)
        stochastic = GCVStochastic(carrier, n_probes=20000, seed=0)
        lam = 0.5

        expected = exact.evaluate(lam)
        estimate = stochastic.evaluate(lam)

        assert estimate[0] == pytest.approx(expected[0], rel=0.05)
        assert estimate[1] == pytest.approx(expected[1], rel=0.1, abs=5e-3)
        assert estimate[2] == pytest.approx(expected[2], rel=0.1, abs=5e-3)
        np.testing.assert_allclose(
            stochastic.last_z_hat, exact.last_z_hat, rtol=1e-6, atol=1e-8
        )

    def test_weighted_dof_includes_covariates(self, covariate_data, mesh):
        carrier = _carrier(covariate_data, mesh)
        exact = GCVExact(carrier)
        stochastic = GCVStochastic(carrier, n_probes=20000, seed=3)

        dof = stochastic.compute_dof(0.5)

        assert dof == pytest.approx(exact.compute_dof(0.5), abs=0.1)
        assert dof > 1
