"""
Integration tests for fe_gcv.skeleton module.

Runs the whole selection pipeline (model, carrier, evaluator, search) on
small strip meshes.
"""

import pytest
import numpy as np
from unittest.mock import patch

from fe_gcv import (
    OptimizationData,
    OptimizationOutput,
    RegressionData,
    regression_skeleton,
)
from fe_gcv.carrier import build_carrier
from fe_gcv.evaluators import GCVExact, GCVStochastic
from fe_gcv.exceptions import ConfigurationError
from fe_gcv.regression import MixedFERegression
from fe_gcv.skeleton import check_optimization_data, optimizer_method_selection

from conftest import OBS_NODES


class TestNewtonPipeline:
    """Newton search with the exact evaluator."""

    def test_selects_interior_lambda(self, node_data, mesh):
        vertices, triangles = mesh
        solution, output = regression_skeleton(
            node_data, OptimizationData(), vertices, triangles
        )

        assert isinstance(output, OptimizationOutput)
        assert output.termination == "converged"
        assert output.lambda_sol > 0
        assert np.isfinite(output.gcv_opt)
        assert 1 <= output.n_it
        # starting point plus at most 40 accepted iterates
        assert len(output.lambda_vec) <= 41
        assert len(output.lambda_vec) == len(output.gcv_vec)
        assert output.lambda_pos == -1
        assert solution.shape == (len(vertices),)
        assert output.time_partial >= 0

    def test_better_than_interpolation(self, node_data, mesh):
        vertices, triangles = mesh
        _, output = regression_skeleton(
            node_data, OptimizationData(), vertices, triangles
        )

        model = MixedFERegression(node_data, vertices, triangles)
        evaluator = GCVExact(build_carrier(node_data, model, OptimizationData()))
        with pytest.warns(UserWarning):
            score_at_zero, _, _ = evaluator.evaluate(0.0)

        assert output.gcv_opt < score_at_zero
        assert output.gcv_opt == pytest.approx(
            evaluator.evaluate(output.lambda_sol, derivatives=False)[0]
        )

    def test_diagnostics(self, node_data, mesh):
        vertices, triangles = mesh
        _, output = regression_skeleton(
            node_data, OptimizationData(), vertices, triangles
        )

        n = node_data.n_obs
        residual = node_data.observations - output.z_hat
        assert 0 < output.dof < n
        assert output.rmse == pytest.approx(np.sqrt(np.mean(residual**2)))
        assert output.sigma_hat_sq == pytest.approx(residual @ residual / (n - output.dof))
        assert output.betas is None

    def test_finite_difference_newton(self, node_data, mesh):
        vertices, triangles = mesh
        _, output = regression_skeleton(
            node_data, OptimizationData(criterion="newton_fd"), vertices, triangles
        )

        assert output.lambda_sol > 0
        assert np.isfinite(output.gcv_opt)

    def test_verbose_output(self, node_data, mesh, capsys):
        vertices, triangles = mesh
        regression_skeleton(node_data, OptimizationData(), vertices, triangles, verbose=True)

        captured = capsys.readouterr()
        assert "Selected lambda" in captured.out


class TestBatchPipeline:
    """Grid evaluation."""

    def test_grid_minimum(self, node_data, mesh):
        vertices, triangles = mesh
        grid = [0.01, 0.1, 1.0, 10.0]
        opt_data = OptimizationData(criterion="batch", lambdas=grid)

        _, output = regression_skeleton(node_data, opt_data, vertices, triangles)

        best = int(np.argmin(output.gcv_vec))
        assert output.lambda_sol == grid[best]
        assert output.lambda_pos == best
        assert output.n_it == 4
        assert len(output.gcv_vec) == 4
        assert output.termination == "grid_evaluated"
        assert output.gcv_opt == pytest.approx(output.gcv_vec[best])

    def test_areal(self, areal_data, mesh):
        vertices, triangles = mesh
        grid = np.logspace(-2, 2, 5)
        opt_data = OptimizationData(criterion="batch", lambdas=grid)

        solution, output = regression_skeleton(areal_data, opt_data, vertices, triangles)

        assert output.lambda_sol in grid
        assert output.z_hat.shape == (4,)
        assert np.all(np.isfinite(solution))

    def test_zero_in_grid_with_shared_nodes(self, mesh):
        # two observations per node keep the lambda = 0 score finite
        vertices, triangles = mesh
        z = np.array([0.1, -0.1, 2.05, 1.9, 4.1, 3.95])
        data = RegressionData(z, observation_indices=[0, 0, 2, 2, 4, 4])
        opt_data = OptimizationData(criterion="batch", lambdas=[0.0, 1.0, 10.0])

        solution, output = regression_skeleton(data, opt_data, vertices, triangles)

        assert output.lambda_sol in (1.0, 10.0)
        assert output.lambda_pos in (1, 2)
        assert len(output.gcv_vec) == 3
        assert np.all(np.isfinite(solution))

    def test_zero_only_grid_uses_default(self, node_data, mesh):
        vertices, triangles = mesh
        opt_data = OptimizationData(criterion="batch", lambdas=[0.0])

        with pytest.warns(UserWarning, match="positive grid lambda"):
            solution, output = regression_skeleton(node_data, opt_data, vertices, triangles)

        model = MixedFERegression(node_data, vertices, triangles)
        default = GCVExact(build_carrier(node_data, model, opt_data)).default_lambda()

        assert output.lambda_sol == pytest.approx(default)
        assert output.lambda_pos == -1
        assert output.termination == "grid_evaluated"
        assert np.isfinite(output.gcv_opt)
        assert np.all(np.isfinite(solution))

    def test_boundary_conditions(self, mesh):
        vertices, triangles = mesh
        z = vertices[OBS_NODES, 0] + np.array([0.12, -0.08, 0.05, -0.11, 0.09, -0.06])
        data = RegressionData(
            z, observation_indices=OBS_NODES, bc_indices=[0, 5], bc_values=[0.0, 1.0]
        )
        opt_data = OptimizationData(criterion="batch", lambdas=[0.1, 1.0])

        solution, _ = regression_skeleton(data, opt_data, vertices, triangles)

        assert solution[0] == pytest.approx(0.0, abs=1e-6)
        assert solution[5] == pytest.approx(1.0, abs=1e-6)


class TestCovariates:

    def test_betas_returned(self, covariate_data, mesh):
        vertices, triangles = mesh
        solution, output = regression_skeleton(
            covariate_data, OptimizationData(criterion="batch", lambdas=[0.1, 1.0, 10.0]),
            vertices, triangles
        )

        W = covariate_data.covariates
        z = covariate_data.observations
        psi = MixedFERegression(covariate_data, vertices, triangles).psi
        expected = np.linalg.solve(W.T @ W, W.T @ (z - psi @ solution))

        assert output.betas.shape == (1,)
        np.testing.assert_allclose(output.betas, expected, rtol=1e-8)
        assert output.dof > 1


class TestStochasticPipeline:

    def test_newton(self, node_data, mesh):
        vertices, triangles = mesh
        opt_data = OptimizationData(dof_evaluation="stochastic", n_probes=500, seed=0)

        _, output = regression_skeleton(node_data, opt_data, vertices, triangles)

        assert output.lambda_sol > 0
        assert np.isfinite(output.gcv_opt)

    def test_reproducible(self, node_data, mesh):
        vertices, triangles = mesh
        opt_data = OptimizationData(
            dof_evaluation="stochastic", criterion="batch",
            lambdas=[0.1, 1.0, 10.0], n_probes=100, seed=42
        )

        _, first = regression_skeleton(node_data, opt_data, vertices, triangles)
        _, second = regression_skeleton(node_data, opt_data, vertices, triangles)

        assert first.gcv_vec == second.gcv_vec
        assert first.lambda_sol == second.lambda_sol

    def test_evaluator_selected(self, node_data, mesh):
        vertices, triangles = mesh
        opt_data = OptimizationData(dof_evaluation="stochastic", n_probes=20, seed=1)
        model = MixedFERegression(node_data, vertices, triangles)

        evaluator = optimizer_method_selection(build_carrier(node_data, model, opt_data))

        assert isinstance(evaluator, GCVStochastic)
        assert evaluator.probes.shape == (node_data.n_obs, 20)


class TestConfigurationErrors:
    """Unsupported settings fail before any model is built."""

    @pytest.mark.parametrize("loss, dof", [
        ("GCV", "not_required"),
        ("unused", "not_required"),
        ("unused", "exact"),
    ])
    def test_unsupported_pairs(self, node_data, mesh, loss, dof):
        vertices, triangles = mesh
        opt_data = OptimizationData(loss_function=loss, dof_evaluation=dof)

        with patch("fe_gcv.skeleton.MixedFERegression") as model_cls:
            with pytest.raises(ConfigurationError):
                regression_skeleton(node_data, opt_data, vertices, triangles)
            model_cls.assert_not_called()

    def test_batch_without_grid(self):
        with pytest.raises(ConfigurationError):
            check_optimization_data(OptimizationData(criterion="batch"))

    def test_unknown_option_strings(self):
        with pytest.raises(ConfigurationError):
            OptimizationData(criterion="golden")
        with pytest.raises(ConfigurationError):
            OptimizationData(dof_evaluation="approximate")

    def test_invalid_numeric_options(self):
        with pytest.raises(ValueError):
            OptimizationData(n_probes=0)
        with pytest.raises(ValueError):
            OptimizationData(tolerance=-1.0)
