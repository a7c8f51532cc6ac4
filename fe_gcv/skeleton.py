"""
Lambda selection pipeline: model -> carrier -> evaluator -> optimizer.
"""

import numpy as np
from typing import Tuple

from fe_gcv.carrier import build_carrier
from fe_gcv.evaluators import GCVExact, GCVStochastic
from fe_gcv.exceptions import ConfigurationError
from fe_gcv.optimization_data import OptimizationData, OptimizationOutput
from fe_gcv.optimizers import Checker, create_optimizer
from fe_gcv.regression import MixedFERegression, RegressionData
from fe_gcv.utils import Timer

# (loss_function, dof_evaluation) pairs with an evaluator
_EVALUATORS = {
    ("GCV", "exact"): GCVExact,
    ("GCV", "stochastic"): GCVStochastic,
}


def check_optimization_data(opt_data: OptimizationData) -> None:
    """
    Reject option combinations that have no implementation.

    :raises ConfigurationError: for an unsupported (loss, dof evaluation)
        pair or a batch search without a grid
    """
    key = (opt_data.loss_function, opt_data.dof_evaluation)
    if key not in _EVALUATORS:
        raise ConfigurationError(
            f"Loss function '{opt_data.loss_function}' with dof evaluation "
            f"'{opt_data.dof_evaluation}' is not implemented"
        )
    if opt_data.criterion == "batch" and (opt_data.lambdas is None or opt_data.lambdas.size == 0):
        raise ConfigurationError("Batch evaluation needs a non-empty lambda grid")


def regression_skeleton(
    regression_data: RegressionData,
    opt_data: OptimizationData,
    vertices: np.ndarray,
    triangles: np.ndarray,
    verbose: bool = False
) -> Tuple[np.ndarray, OptimizationOutput]:
    """
    Select lambda by GCV and solve the regression at the selected value.

    Parameters
    ----------
    regression_data : RegressionData
        Observations, covariates and boundary conditions
    opt_data : OptimizationData
        Loss, dof evaluation and search settings
    vertices : np.ndarray
        Mesh vertex coordinates of shape (n_nodes, 2)
    triangles : np.ndarray
        Triangle connectivity of shape (n_tri, 3)
    verbose : bool
        Print progress

    Returns
    -------
    solution : np.ndarray
        Field coefficients at the mesh nodes for the selected lambda
    output : OptimizationOutput
        Selected lambda, trajectories, timing and diagnostics
    """
    check_optimization_data(opt_data)

    model = MixedFERegression(regression_data, vertices, triangles, verbose=verbose)
    carrier = build_carrier(regression_data, model, opt_data, verbose=verbose)

    evaluator = optimizer_method_selection(carrier, verbose=verbose)
    return optimizer_strategy_selection(evaluator, carrier, verbose=verbose)


def optimizer_method_selection(carrier, verbose: bool = False):
    """Build the GCV evaluator requested by the carrier's optimization data."""
    opt_data = carrier.get_opt_data()
    check_optimization_data(opt_data)

    if verbose:
        print(f"{opt_data.loss_function} {opt_data.dof_evaluation}")

    if opt_data.dof_evaluation == "stochastic":
        return GCVStochastic(
            carrier, n_probes=opt_data.n_probes, seed=opt_data.seed, verbose=verbose
        )
    return _EVALUATORS[(opt_data.loss_function, opt_data.dof_evaluation)](carrier, verbose=verbose)


def optimizer_strategy_selection(
    evaluator,
    carrier,
    verbose: bool = False
) -> Tuple[np.ndarray, OptimizationOutput]:
    """Run the search strategy and solve at the selected lambda."""
    opt_data = carrier.get_opt_data()
    optimizer = create_optimizer(opt_data.criterion, evaluator, opt_data, verbose=verbose)

    checker = Checker()
    gcv_v = []
    lambda_v = []

    with Timer() as timer:
        if opt_data.criterion == "batch":
            lam, n_it = optimizer.compute(checker, gcv_v, lambda_v)
            lambda_pos = optimizer.lambda_pos
        else:
            lam, n_it = optimizer.compute(
                opt_data.initial_lambda, opt_data.tolerance, opt_data.max_iter,
                checker, gcv_v, lambda_v
            )
            lambda_pos = -1

    if verbose:
        print(f"Selected lambda={lam:.4e} ({checker.which()}) in {timer.elapsed:.3f}s")

    # betas are only available after apply
    solution = carrier.apply(lam)
    output = evaluator.get_output(
        lam, n_it, timer.elapsed, gcv_v, lambda_v, checker.which(), lambda_pos=lambda_pos
    )

    return solution, output
