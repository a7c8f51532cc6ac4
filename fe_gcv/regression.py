"""
Penalized finite element regression.

This module holds the regression inputs and the model solving the
penalized system for a given smoothing parameter lambda. The mixed
formulation keeps everything sparse:

    [ T      lambda*R1^t ] [f]   [b]
    [ lambda*R1  -lambda*R0 ] [g] = [0]

where T is the data-fit block, R0 the mass matrix and R1 the stiffness
matrix. Eliminating g gives (T + lambda * R1^t R0^-1 R1) f = b.
"""

import numpy as np
from scipy import sparse
from scipy.sparse.linalg import splu
from typing import Optional, Sequence, Tuple
import warnings

from fe_gcv.exceptions import StructureError
from fe_gcv.fem import compute_fem_matrices, compute_pointwise_psi, compute_areal_psi
from fe_gcv.blocks import PENALTY


class RegressionData:
    """
    Observations, covariates and boundary conditions of a regression problem.

    Observations are located either at mesh nodes (``locations`` and
    ``incidence_matrix`` both None), at arbitrary ``locations``, or
    aggregated over regions described by ``incidence_matrix``.

    Attributes
    ----------
    observations : np.ndarray
        Observation vector z (missing values removed when located at nodes)
    covariates : np.ndarray or None
        Covariate matrix W of shape (n_obs, q)
    observation_indices : np.ndarray or None
        Node index of each observation when located at nodes
    bc_indices : np.ndarray
        Nodes carrying a Dirichlet condition
    bc_values : np.ndarray
        Values imposed at ``bc_indices``
    """

    def __init__(
        self,
        observations: np.ndarray,
        covariates: Optional[np.ndarray] = None,
        locations: Optional[np.ndarray] = None,
        observation_indices: Optional[np.ndarray] = None,
        incidence_matrix: Optional[np.ndarray] = None,
        bc_indices: Optional[Sequence[int]] = None,
        bc_values: Optional[Sequence[float]] = None
    ):
        z = np.asarray(observations, dtype=np.float64).ravel()

        if locations is not None and incidence_matrix is not None:
            raise StructureError("Give either locations or an incidence matrix, not both")

        self.locations = None if locations is None else np.asarray(locations, dtype=np.float64)
        self.incidence_matrix = None if incidence_matrix is None else np.asarray(incidence_matrix, dtype=np.float64)
        self.locations_by_nodes = self.locations is None and self.incidence_matrix is None

        keep = np.arange(len(z))
        if self.locations_by_nodes:
            if observation_indices is None:
                observation_indices = np.arange(len(z))
            observation_indices = np.asarray(observation_indices, dtype=np.intp).ravel()
            if len(observation_indices) != len(z):
                raise StructureError(
                    f"Got {len(observation_indices)} observation indices for {len(z)} observations"
                )
            # Missing observations at nodes are dropped, their nodes forgotten
            keep = np.flatnonzero(~np.isnan(z))
            self.observation_indices = observation_indices[keep]
        else:
            self.observation_indices = None
            if np.any(np.isnan(z)):
                raise StructureError("Missing observations are only supported at mesh nodes")

        self.observations = z[keep]

        if self.locations is not None and len(self.locations) != len(z):
            raise StructureError(
                f"Got {len(self.locations)} locations for {len(z)} observations"
            )
        if self.incidence_matrix is not None and self.incidence_matrix.shape[0] != len(z):
            raise StructureError(
                f"Incidence matrix has {self.incidence_matrix.shape[0]} regions for {len(z)} observations"
            )

        if covariates is None:
            self.covariates = None
        else:
            W = np.asarray(covariates, dtype=np.float64)
            if W.ndim == 1:
                W = W[:, None]
            if W.shape[0] != len(z):
                raise StructureError(
                    f"Covariates have {W.shape[0]} rows for {len(z)} observations"
                )
            self.covariates = W[keep] if W.shape[1] > 0 else None

        self.bc_indices = np.asarray([] if bc_indices is None else bc_indices, dtype=np.intp).ravel()
        self.bc_values = np.asarray([] if bc_values is None else bc_values, dtype=np.float64).ravel()
        if len(self.bc_indices) != len(self.bc_values):
            raise StructureError(
                f"Got {len(self.bc_indices)} boundary indices and {len(self.bc_values)} values"
            )

    @property
    def n_obs(self) -> int:
        return len(self.observations)

    @property
    def n_covariates(self) -> int:
        return 0 if self.covariates is None else self.covariates.shape[1]

    @property
    def n_regions(self) -> int:
        return 0 if self.incidence_matrix is None else self.incidence_matrix.shape[0]


class MixedFERegression:
    """
    Spatial regression with a Laplacian penalty discretized by linear finite elements.

    Parameters
    ----------
    regression_data : RegressionData
        Observations, covariates and boundary conditions
    vertices : np.ndarray
        Mesh vertex coordinates of shape (n_nodes, 2)
    triangles : np.ndarray
        Triangle connectivity of shape (n_tri, 3)
    verbose : bool
        Print assembly progress
    """

    def __init__(
        self,
        regression_data: RegressionData,
        vertices: np.ndarray,
        triangles: np.ndarray,
        verbose: bool = False
    ):
        self.regression_data = regression_data
        self.verbose = verbose

        self.R0, self.R1 = compute_fem_matrices(vertices, triangles, verbose=verbose)
        self.n_nodes = self.R0.shape[0]

        if regression_data.n_regions > 0:
            self.psi, self.A = compute_areal_psi(
                vertices, triangles, regression_data.incidence_matrix
            )
        else:
            self.psi = compute_pointwise_psi(
                vertices, triangles,
                locations=regression_data.locations,
                observation_indices=regression_data.observation_indices
            )
            self.A = np.ones(regression_data.n_obs)

        bc = regression_data.bc_indices
        if bc.size and (bc.min() < 0 or bc.max() >= self.n_nodes):
            raise StructureError(
                f"Boundary condition indices must lie in [0, {self.n_nodes})"
            )

        z = regression_data.observations
        W = regression_data.covariates
        if W is not None:
            WtW = W.T @ W
            self._WtW_W = np.linalg.solve(WtW, W.T)
            self.H = W @ self._WtW_W
            self.Q = np.eye(len(z)) - self.H
        else:
            self._WtW_W = None
            self.H = None
            self.Q = None

        self._T_sys = self._assemble_data_block()
        self._rhs = self._assemble_rhs(z)
        self._penalty = None
        self._factor_lambda = None
        self._factor = None
        self._beta = None
        self._solution = None

    def is_spatially_varying(self) -> bool:
        """True when covariates enter the model, i.e. the weighted configuration."""
        return self.Q is not None

    def number_of_regions(self) -> int:
        return self.regression_data.n_regions

    def get_beta(self) -> Optional[np.ndarray]:
        """Covariate coefficients of the last ``apply`` (None without covariates)."""
        return self._beta

    def get_solution(self) -> Optional[np.ndarray]:
        return self._solution

    def get_penalty(self) -> np.ndarray:
        """Dense penalty matrix P = R1^t R0^-1 R1."""
        if self._penalty is None:
            R0_lu = splu(sparse.csc_matrix(self.R0))
            R1 = self.R1.toarray()
            P = R1.T @ R0_lu.solve(R1)
            self._penalty = 0.5 * (P + P.T)
        return self._penalty

    def apply(self, lam: float) -> np.ndarray:
        """
        Solve the penalized system for one lambda.

        :param lam: Smoothing parameter, must be positive
        :return: Field coefficients f at the mesh nodes
        """
        f, _ = self.solve_system(lam, self._rhs)

        if self._WtW_W is not None:
            residual = self.regression_data.observations - self.psi @ f
            self._beta = self._WtW_W @ residual

        self._solution = f
        return f

    def solve_system(self, lam: float, rhs: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Solve the mixed system for right-hand sides of the first block.

        :param lam: Smoothing parameter, must be positive
        :param rhs: Array of shape (n_nodes,) or (n_nodes, m)
        :return: (f, g) with (T + lam*P) f = rhs and g = R0^-1 R1 f
        """
        if not np.isfinite(lam) or lam <= 0:
            raise ValueError(f"lambda must be positive and finite, got {lam}")

        factor = self._factorize(lam)
        rhs = np.asarray(rhs, dtype=np.float64)
        full = np.zeros((2 * self.n_nodes,) + rhs.shape[1:])
        full[:self.n_nodes] = rhs

        sol = factor.solve(full)
        return sol[:self.n_nodes], sol[self.n_nodes:]

    def _factorize(self, lam: float):
        if self._factor is not None and self._factor_lambda == lam:
            return self._factor

        system = sparse.bmat([
            [self._T_sys, lam * self.R1.T],
            [lam * self.R1, -lam * self.R0]
        ], format="csc")

        try:
            self._factor = splu(system)
        except RuntimeError as e:
            if "singular" in str(e):
                warnings.warn(f"Penalized system is singular at lambda={lam:.4e}")
            raise
        self._factor_lambda = lam

        if self.verbose:
            print(f"  Factorized penalized system at lambda={lam:.4e}")

        return self._factor

    def _assemble_data_block(self) -> sparse.csc_matrix:
        psi = sparse.csr_matrix(self.psi)
        if self.Q is None:
            T = psi.T @ sparse.diags(self.A) @ psi
        else:
            T = sparse.csr_matrix(psi.T @ (self.A[:, None] * (psi.T @ self.Q.T).T))

        T = sparse.lil_matrix(T)
        for node in self.regression_data.bc_indices:
            T[node, node] = PENALTY
        return sparse.csc_matrix(T)

    def _assemble_rhs(self, z: np.ndarray) -> np.ndarray:
        weighted_z = self.A * (z if self.Q is None else self.Q @ z)
        rhs = np.asarray(self.psi.T @ weighted_z).ravel()

        data = self.regression_data
        rhs[data.bc_indices] = PENALTY * data.bc_values
        return rhs
