"""
Generalized cross-validation score and its derivatives in lambda.

    GCV(lambda) = n * ||z - z_hat||^2 / (n - dof)^2

with z_hat = H z + Q S z (Q = I, H = 0 without covariates), S the
smoother Psi (T + lambda P)^-1 E and dof = q + tr(Q S) the equivalent
degrees of freedom. Since dV/dlambda = P,

    dS/dlambda   = -Psi K F
    d2S/dlambda2 = 2 Psi K K F,    F = V^-1 E, K = V^-1 P

``GCVExact`` forms these matrices with dense solves; ``GCVStochastic``
only applies them to the observations and to a fixed set of Rademacher
probe vectors through sparse solves, estimating the traces as in
Hutchinson (1990).
"""

import numpy as np
import scipy.linalg
from typing import Optional, Tuple
import warnings

from fe_gcv.optimization_data import OptimizationOutput

# (z_hat, dz_hat, d2z_hat, dof, ddof, d2dof)
HatTerms = Tuple[np.ndarray, Optional[np.ndarray], Optional[np.ndarray],
                 float, Optional[float], Optional[float]]


class GCVEvaluator:
    """
    Common GCV arithmetic; subclasses supply the smoother terms.

    Attributes
    ----------
    carrier : Carrier
        Source of the matrices, never modified
    last_lambda : float
        Lambda of the most recent evaluation
    last_dof : float
        Equivalent degrees of freedom at ``last_lambda``
    last_z_hat : np.ndarray
        Fitted values at ``last_lambda``
    """

    def __init__(self, carrier, verbose: bool = False):
        self.carrier = carrier
        self.verbose = verbose
        self.last_lambda = None
        self.last_score = np.nan
        self.last_dof = np.nan
        self.last_z_hat = None

    def evaluate(self, lam: float, derivatives: bool = True) -> Tuple[float, float, float]:
        """
        Compute the GCV score and its first two derivatives at ``lam``.

        :param lam: Smoothing parameter (>= 0)
        :param derivatives: Skip the derivative terms when False
        :return: (score, dscore, d2score); derivatives are nan when skipped
            and the score is inf when n - dof vanishes
        """
        lam = float(lam)
        if not np.isfinite(lam) or lam < 0:
            raise ValueError(f"lambda must be finite and non-negative, got {lam}")

        terms = self._hat_terms(lam, derivatives)
        if terms is None:
            self._record(lam, np.inf, np.nan, None)
            return np.inf, np.nan, np.nan

        z_hat, dz, d2z, dof, ddof, d2dof = terms
        z = self.carrier.get_z()
        n = len(z)

        r = z - z_hat
        a = r @ r
        b = n - dof

        if b <= 1e-8 * n:
            self._record(lam, np.inf, dof, z_hat)
            return np.inf, np.nan, np.nan

        score = n * a / b**2
        self._record(lam, score, dof, z_hat)

        if not derivatives:
            return score, np.nan, np.nan

        a1 = -2.0 * (r @ dz)
        a2 = 2.0 * (dz @ dz) - 2.0 * (r @ d2z)
        b1 = -ddof
        b2 = -d2dof

        d1 = n * (a1 / b**2 - 2.0 * a * b1 / b**3)
        d2 = n * (a2 / b**2 - 4.0 * a1 * b1 / b**3 - 2.0 * a * b2 / b**3
                  + 6.0 * a * b1**2 / b**4)

        if self.verbose:
            print(f"  lambda={lam:.4e} GCV={score:.6e} dof={dof:.3f}")

        return score, d1, d2

    def compute_dof(self, lam: float) -> float:
        """Equivalent degrees of freedom at ``lam``."""
        terms = self._hat_terms(float(lam), False)
        return np.nan if terms is None else terms[3]

    def default_lambda(self) -> float:
        """
        Starting lambda balancing the data-fit and penalty blocks.

        Ratio of the traces of T and P restricted to nodes without a
        boundary condition; 1.0 when that ratio is not usable.
        """
        T_diag = np.diag(self.carrier.get_T()).copy()
        P_diag = np.diag(self.carrier.get_R()).copy()

        free = np.ones(len(T_diag), dtype=bool)
        free[self.carrier.get_bc_indices()] = False

        t = T_diag[free].sum()
        p = P_diag[free].sum()
        lam = t / p if p > 0 else np.nan

        if not np.isfinite(lam) or lam <= 0:
            return 1.0
        return float(lam)

    def get_output(
        self,
        lam: float,
        n_it: int,
        time_partial: float,
        gcv_v,
        lambda_v,
        termination: str,
        lambda_pos: int = -1
    ) -> OptimizationOutput:
        """
        Collect the diagnostics of a finished search.

        Call after ``carrier.apply(lam)`` so that covariate coefficients
        are available.
        """
        if self.last_lambda != lam:
            self.evaluate(lam, derivatives=False)

        z = self.carrier.get_z()
        n = len(z)
        if self.last_z_hat is not None:
            r = z - self.last_z_hat
            rmse = float(np.sqrt(np.mean(r**2)))
            sigma_hat_sq = float(r @ r / (n - self.last_dof)) if n > self.last_dof else np.inf
        else:
            rmse = np.nan
            sigma_hat_sq = np.nan

        return OptimizationOutput(
            lambda_sol=float(lam),
            gcv_opt=float(self.last_score),
            n_it=int(n_it),
            termination=termination,
            lambda_vec=list(lambda_v),
            gcv_vec=list(gcv_v),
            lambda_pos=lambda_pos,
            dof=float(self.last_dof),
            z_hat=self.last_z_hat,
            rmse=rmse,
            sigma_hat_sq=sigma_hat_sq,
            time_partial=time_partial,
            betas=self.carrier.get_model().get_beta(),
        )

    def _record(self, lam, score, dof, z_hat):
        self.last_lambda = lam
        self.last_score = score
        self.last_dof = dof
        self.last_z_hat = z_hat

    def _hat_terms(self, lam: float, derivatives: bool) -> Optional[HatTerms]:
        raise NotImplementedError


class GCVExact(GCVEvaluator):
    """GCV with the degrees of freedom computed exactly from dense solves."""

    def _hat_terms(self, lam: float, derivatives: bool) -> Optional[HatTerms]:
        carrier = self.carrier
        psi = carrier.get_psi()
        z = carrier.get_z()
        E = carrier.get_E()
        P = carrier.get_R()
        n_nodes = E.shape[0]

        V = carrier.get_T() + lam * P
        rhs = np.hstack([E, P]) if derivatives else E
        X = self._solve(V, rhs, lam)

        F = X[:, :E.shape[1]]
        S = np.asarray(psi @ F)

        z_hat = carrier.z_hat(S)
        dof = carrier.n_covariates + np.trace(carrier.project(S))

        if not derivatives:
            return z_hat, None, None, dof, None, None

        K = X[:, E.shape[1]:E.shape[1] + n_nodes]
        KF = K @ F
        dS = -np.asarray(psi @ KF)
        d2S = 2.0 * np.asarray(psi @ (K @ KF))

        dz = carrier.project(dS @ z)
        d2z = carrier.project(d2S @ z)
        ddof = np.trace(carrier.project(dS))
        d2dof = np.trace(carrier.project(d2S))

        return z_hat, dz, d2z, dof, ddof, d2dof

    def _solve(self, V: np.ndarray, rhs: np.ndarray, lam: float) -> np.ndarray:
        with warnings.catch_warnings():
            # boundary penalties make V ill-conditioned on purpose
            warnings.simplefilter("ignore", scipy.linalg.LinAlgWarning)
            try:
                return scipy.linalg.solve(V, rhs)
            except np.linalg.LinAlgError:
                pass

        warnings.warn(
            f"Penalized system is singular at lambda={lam:.4e}, using least squares"
        )
        return scipy.linalg.lstsq(V, rhs)[0]


class GCVStochastic(GCVEvaluator):
    """
    GCV with the degrees of freedom estimated from random probes.

    The probes are drawn once, so the estimate is a smooth function of
    lambda and repeated runs with the same seed agree exactly.

    Parameters
    ----------
    carrier : Carrier
        Source of the matrices and of the sparse model solver
    n_probes : int
        Number of Rademacher probe vectors
    seed : int or numpy.random.Generator, optional
        Probe generator seed
    verbose : bool
        Print each evaluation
    """

    def __init__(self, carrier, n_probes: int = 100, seed=None, verbose: bool = False):
        super().__init__(carrier, verbose=verbose)
        if n_probes < 1:
            raise ValueError(f"n_probes must be a positive integer, got {n_probes}")

        rng = np.random.default_rng(seed)
        self.probes = rng.choice([-1.0, 1.0], size=(carrier.n_obs, n_probes))

    def _hat_terms(self, lam: float, derivatives: bool) -> Optional[HatTerms]:
        if lam <= 0:
            warnings.warn("Stochastic GCV is not defined at lambda=0")
            return None

        carrier = self.carrier
        model = carrier.get_model()
        psi = carrier.get_psi()
        z = carrier.get_z()
        E = carrier.get_E()
        U = self.probes
        m = U.shape[1]

        rhs = np.column_stack([E @ z, E @ U])
        try:
            X, G = model.solve_system(lam, rhs)
        except RuntimeError:
            return None

        SX = np.asarray(psi @ X)
        z_hat = carrier.fit_covariates(z) + carrier.project(SX[:, 0])
        dof = carrier.n_covariates + _trace_estimate(U, carrier.project(SX[:, 1:]))

        if not derivatives:
            return z_hat, None, None, dof, None, None

        # P X = R1^t G, with G = R0^-1 R1 X from the second block
        Y, GY = model.solve_system(lam, model.R1.T @ G)
        Z, _ = model.solve_system(lam, model.R1.T @ GY)

        dSX = -np.asarray(psi @ Y)
        d2SX = 2.0 * np.asarray(psi @ Z)

        dz = carrier.project(dSX[:, 0])
        d2z = carrier.project(d2SX[:, 0])
        ddof = _trace_estimate(U, carrier.project(dSX[:, 1:]))
        d2dof = _trace_estimate(U, carrier.project(d2SX[:, 1:]))

        return z_hat, dz, d2z, dof, ddof, d2dof


def _trace_estimate(U: np.ndarray, MU: np.ndarray) -> float:
    # mean of u^t M u over the probe columns; trace(A^t B) == (A * B).sum()
    return float(np.einsum('ij,ij->', U, MU) / U.shape[1])
