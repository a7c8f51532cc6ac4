"""
Optimization configuration and results for lambda selection.
"""

from dataclasses import dataclass, field
from typing import List, Literal, Optional, Sequence

import numpy as np

from fe_gcv.exceptions import ConfigurationError

LossFunction = Literal["GCV", "unused"]
DOFEvaluation = Literal["exact", "stochastic", "not_required"]
Criterion = Literal["batch", "newton", "newton_fd"]

LOSS_FUNCTIONS = ("GCV", "unused")
DOF_EVALUATIONS = ("exact", "stochastic", "not_required")
CRITERIA = ("batch", "newton", "newton_fd")


class OptimizationData:
    """
    Settings of the lambda search.

    Parameters
    ----------
    loss_function : {"GCV", "unused"}
        Criterion minimized over lambda
    dof_evaluation : {"exact", "stochastic", "not_required"}
        How the equivalent degrees of freedom are computed
    criterion : {"batch", "newton", "newton_fd"}
        Grid evaluation or Newton search (analytic or finite difference
        derivatives)
    initial_lambda : float
        Starting point of the Newton search; values <= 0 (default -1)
        select an automatic starting point
    lambdas : sequence of float, optional
        Grid evaluated in batch mode
    n_probes : int
        Number of random probe vectors for stochastic dof evaluation
    seed : int, optional
        Seed of the probe generator
    tolerance : float
        Relative step size below which the Newton search stops
    max_iter : int
        Maximum number of Newton iterations
    """

    def __init__(
        self,
        loss_function: LossFunction = "GCV",
        dof_evaluation: DOFEvaluation = "exact",
        criterion: Criterion = "newton",
        initial_lambda: float = -1.0,
        lambdas: Optional[Sequence[float]] = None,
        n_probes: int = 100,
        seed: Optional[int] = None,
        tolerance: float = 5e-2,
        max_iter: int = 40
    ):
        if loss_function not in LOSS_FUNCTIONS:
            raise ConfigurationError(
                f"Unknown loss function '{loss_function}', expected one of {LOSS_FUNCTIONS}"
            )
        if dof_evaluation not in DOF_EVALUATIONS:
            raise ConfigurationError(
                f"Unknown dof evaluation '{dof_evaluation}', expected one of {DOF_EVALUATIONS}"
            )
        if criterion not in CRITERIA:
            raise ConfigurationError(
                f"Unknown criterion '{criterion}', expected one of {CRITERIA}"
            )
        if not isinstance(n_probes, (int, np.integer)) or n_probes < 1:
            raise ValueError(f"n_probes must be a positive integer, got {n_probes}")
        if tolerance <= 0:
            raise ValueError(f"tolerance must be positive, got {tolerance}")
        if max_iter < 1:
            raise ValueError(f"max_iter must be at least 1, got {max_iter}")

        self.loss_function = loss_function
        self.dof_evaluation = dof_evaluation
        self.criterion = criterion
        self.initial_lambda = float(initial_lambda)
        self.lambdas = None if lambdas is None else np.asarray(lambdas, dtype=np.float64).ravel()
        self.n_probes = int(n_probes)
        self.seed = seed
        self.tolerance = float(tolerance)
        self.max_iter = int(max_iter)


@dataclass
class OptimizationOutput:
    """Diagnostics of a lambda search."""

    lambda_sol: float
    gcv_opt: float
    n_it: int
    termination: str
    lambda_vec: List[float] = field(default_factory=list)
    gcv_vec: List[float] = field(default_factory=list)
    lambda_pos: int = -1
    dof: float = float("nan")
    z_hat: Optional[np.ndarray] = None
    rmse: float = float("nan")
    sigma_hat_sq: float = float("nan")
    time_partial: float = 0.0
    betas: Optional[np.ndarray] = None
