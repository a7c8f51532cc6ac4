"""
Search strategies over the smoothing parameter lambda.

``NewtonOptimizer`` looks for a stationary point of the GCV score with
Newton steps lambda_{k+1} = lambda_k - GCV'(lambda_k) / GCV''(lambda_k),
``NewtonFDOptimizer`` does the same with finite difference derivatives and
``BatchEvaluator`` evaluates a fixed grid and keeps its minimizer.
"""

from enum import Enum
from typing import List, Optional, Tuple
import warnings

import numpy as np

from fe_gcv.exceptions import ConfigurationError


class TerminationState(Enum):
    INIT = "init"
    ITERATING = "iterating"
    CONVERGED = "converged"
    MAX_ITER_REACHED = "max_iter_reached"
    DIVERGED = "diverged"
    GRID_EVALUATED = "grid_evaluated"


class Checker:
    """Records which stopping criterion ended a search."""

    def __init__(self):
        self.state = TerminationState.INIT

    def start(self):
        self.state = TerminationState.ITERATING

    def set_tolerance(self):
        self.state = TerminationState.CONVERGED

    def set_max_iter(self):
        self.state = TerminationState.MAX_ITER_REACHED

    def set_diverged(self):
        self.state = TerminationState.DIVERGED

    def set_grid(self):
        self.state = TerminationState.GRID_EVALUATED

    def which(self) -> str:
        return self.state.value


class NewtonOptimizer:
    """
    Safeguarded Newton search for the GCV minimizer.

    Each candidate is kept within [lambda_k / 10, 10 * lambda_k], so lambda
    stays positive. Non-positive curvature gives a multiplicative step in
    the descent direction, and a candidate raising the score has its step
    halved (on the log scale) a few times.

    Parameters
    ----------
    evaluator : GCVEvaluator
        Provides evaluate(lambda) -> (score, d1, d2) and default_lambda()
    verbose : bool
        Print the iterations
    """

    max_shrink = 10.0
    max_halvings = 4
    max_lambda = 1e15

    def __init__(self, evaluator, verbose: bool = False):
        self.F = evaluator
        self.verbose = verbose
        self.n_evaluations = 0

    def compute(
        self,
        lam: float,
        tolerance: float = 5e-2,
        max_iter: int = 40,
        checker: Optional[Checker] = None,
        gcv_v: Optional[List[float]] = None,
        lambda_v: Optional[List[float]] = None
    ) -> Tuple[float, int]:
        """
        Run the search.

        :param lam: Starting lambda; <= 0 or non-finite selects the default
        :param tolerance: Stop when |lambda_{k+1} - lambda_k| <= tolerance * lambda_k
        :param max_iter: Maximum number of iterations
        :param checker: Receives the termination state
        :param gcv_v: Receives the accepted GCV values
        :param lambda_v: Receives the accepted lambdas
        :return: (best lambda, number of score evaluations)
        """
        checker = checker if checker is not None else Checker()
        gcv_v = gcv_v if gcv_v is not None else []
        lambda_v = lambda_v if lambda_v is not None else []
        self.n_evaluations = 0

        if not np.isfinite(lam) or lam <= 0:
            lam = self.F.default_lambda()
            if self.verbose:
                print(f"Automatic starting lambda: {lam:.4e}")

        checker.start()
        score, d1, d2 = self._evaluate(lam)
        gcv_v.append(score)
        lambda_v.append(lam)

        if not np.isfinite(score):
            checker.set_diverged()
            warnings.warn(f"GCV is not finite at the starting lambda {lam:.4e}")
            return lam, self.n_evaluations

        best_lam, best_score = lam, score

        for n_iter in range(1, max_iter + 1):
            candidate = self._step(lam, d1, d2)
            new_score, new_d1, new_d2 = self._evaluate(candidate)

            halvings = 0
            while (not np.isfinite(new_score) or new_score > score) and halvings < self.max_halvings:
                candidate = np.sqrt(lam * candidate)
                new_score, new_d1, new_d2 = self._evaluate(candidate)
                halvings += 1

            if not np.isfinite(candidate) or not np.isfinite(new_score) or candidate > self.max_lambda:
                checker.set_diverged()
                warnings.warn(
                    f"Newton search diverged at iteration {n_iter}, returning lambda={best_lam:.4e}"
                )
                return best_lam, self.n_evaluations

            step = abs(candidate - lam)
            previous = lam
            lam, score, d1, d2 = candidate, new_score, new_d1, new_d2
            gcv_v.append(score)
            lambda_v.append(lam)

            if score < best_score:
                best_lam, best_score = lam, score

            if self.verbose:
                print(f"  iteration {n_iter}: lambda={lam:.4e} GCV={score:.6e}")

            if step <= tolerance * previous:
                checker.set_tolerance()
                return best_lam, self.n_evaluations

        checker.set_max_iter()
        warnings.warn(
            f"Newton search stopped after {max_iter} iterations, returning lambda={best_lam:.4e}"
        )
        return best_lam, self.n_evaluations

    def _evaluate(self, lam: float) -> Tuple[float, float, float]:
        self.n_evaluations += 1
        return self.F.evaluate(lam)

    def _step(self, lam: float, d1: float, d2: float) -> float:
        if np.isfinite(d2) and d2 > 0 and np.isfinite(d1):
            candidate = lam - d1 / d2
        elif np.isfinite(d1) and d1 > 0:
            candidate = lam / 2.0
        else:
            candidate = lam * 2.0

        return float(np.clip(candidate, lam / self.max_shrink, lam * self.max_shrink))


class NewtonFDOptimizer(NewtonOptimizer):
    """Newton search with central finite difference derivatives of the score."""

    relative_step = 1e-3

    def _evaluate(self, lam: float) -> Tuple[float, float, float]:
        h = self.relative_step * lam
        self.n_evaluations += 3

        score = self.F.evaluate(lam, derivatives=False)[0]
        upper = self.F.evaluate(lam + h, derivatives=False)[0]
        lower = self.F.evaluate(lam - h, derivatives=False)[0]
        # leave the evaluator state at lam
        self.F.evaluate(lam, derivatives=False)

        d1 = (upper - lower) / (2.0 * h)
        d2 = (upper - 2.0 * score + lower) / h**2
        return score, d1, d2


class BatchEvaluator:
    """
    Evaluate the GCV score on a grid of lambdas and keep the minimizer.

    Parameters
    ----------
    evaluator : GCVEvaluator
        Provides evaluate(lambda)
    lambdas : sequence of float
        Grid, evaluated in the given order
    """

    def __init__(self, evaluator, lambdas, verbose: bool = False):
        lambdas = np.asarray(lambdas, dtype=np.float64).ravel()
        if lambdas.size == 0:
            raise ConfigurationError("Batch evaluation needs a non-empty lambda grid")
        if np.any(~np.isfinite(lambdas)) or np.any(lambdas < 0):
            raise ConfigurationError("Lambda grid must hold finite, non-negative values")

        self.F = evaluator
        self.lambdas = lambdas
        self.verbose = verbose
        self.lambda_pos = -1

    def compute(
        self,
        checker: Optional[Checker] = None,
        gcv_v: Optional[List[float]] = None,
        lambda_v: Optional[List[float]] = None
    ) -> Tuple[float, int]:
        """
        Evaluate the whole grid.

        :return: (positive lambda with the lowest finite score, number of evaluations);
            the default lambda when no positive grid point scores finite
        """
        checker = checker if checker is not None else Checker()
        gcv_v = gcv_v if gcv_v is not None else []
        lambda_v = lambda_v if lambda_v is not None else []

        checker.start()
        scores = np.empty(len(self.lambdas))
        for i, lam in enumerate(self.lambdas):
            scores[i] = self.F.evaluate(lam, derivatives=False)[0]
            gcv_v.append(scores[i])
            lambda_v.append(lam)
            if self.verbose:
                print(f"  lambda={lam:.4e} GCV={scores[i]:.6e}")

        # lambda = 0 is scored but cannot be solved for, so it never wins
        ranked = np.where(np.isfinite(scores) & (self.lambdas > 0), scores, np.inf)
        checker.set_grid()

        if not np.any(np.isfinite(ranked)):
            self.lambda_pos = -1
            lam = self.F.default_lambda()
            warnings.warn(
                f"GCV is not finite at any positive grid lambda, using lambda={lam:.4e}"
            )
            return float(lam), len(self.lambdas)

        self.lambda_pos = int(np.argmin(ranked))
        return float(self.lambdas[self.lambda_pos]), len(self.lambdas)


def create_optimizer(criterion: str, evaluator, opt_data=None, verbose: bool = False):
    """
    Build the search strategy named by ``criterion``.

    :param criterion: "batch", "newton" or "newton_fd"
    :param evaluator: GCV evaluator driven by the strategy
    :param opt_data: OptimizationData holding the grid for batch mode
    :param verbose: Print progress
    """
    if criterion == "newton":
        return NewtonOptimizer(evaluator, verbose=verbose)
    if criterion == "newton_fd":
        return NewtonFDOptimizer(evaluator, verbose=verbose)
    if criterion == "batch":
        lambdas = None if opt_data is None else opt_data.lambdas
        if lambdas is None:
            raise ConfigurationError("Batch evaluation needs a lambda grid")
        return BatchEvaluator(evaluator, lambdas, verbose=verbose)

    raise ConfigurationError(f"Unknown optimization criterion '{criterion}'")
