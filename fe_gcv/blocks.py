"""
Block matrices of the penalized system used by GCV evaluation.

This module computes the data-fit block T, the cross block E and the
fitted values z_hat for the four model configurations (with or without
covariate weighting Q, pointwise or areal observations).

When observations sit on mesh nodes, Psi is a rectangular permutation-like
matrix: if k maps each observation i to its node, Psi = Indicator(i, k[i]),
hence

    Psi^t Psi   = Indicator(k[i], k[i])
    Psi^t Q Psi = q_ij * Indicator(k[i], k[j])
    Psi^t Q     = q_ij * Indicator(k[i], j)

and the blocks are obtained by scattering entries instead of forming
sparse products.

All ``build_T_*`` functions accumulate into the caller's matrix (T += ...);
pass a zeroed matrix when no accumulation is intended. ``build_E_*``
functions return a new matrix.
"""

import numpy as np
from scipy import sparse
from typing import Optional, Sequence

from fe_gcv.exceptions import StructureError

# Diagonal value enforcing Dirichlet boundary conditions
PENALTY = 1e20


def build_T_plain(
    T: np.ndarray,
    psi: sparse.spmatrix,
    bc_indices: Sequence[int] = (),
    k: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Add Psi^t Psi to T for unweighted pointwise observations.

    With the permutation map ``k`` only the diagonal entries T[k[i], k[i]]
    are touched, O(s + n_bc). A boundary node hosting an observation
    receives PENALTY - 1 so that its total is PENALTY.

    Parameters
    ----------
    T : np.ndarray
        Dense (n_nodes x n_nodes) matrix, updated in place
    psi : sparse.spmatrix
        Observation operator (n_obs x n_nodes)
    bc_indices : sequence of int
        Nodes carrying a Dirichlet condition
    k : np.ndarray, optional
        Observation to node map; when None, Psi^t Psi is formed explicitly

    Returns
    -------
    np.ndarray
        The updated T
    """
    _check_T(T, psi)
    bc = _check_bc(bc_indices, T.shape[0])

    if k is None:
        temp = _as_dense(psi.T @ psi)
        _overwrite_bc(temp, bc)
        T += temp
        return T

    k = _check_k(k, psi)
    np.add.at(T, (k, k), 1.0)

    if bc.size:
        observed = np.isin(bc, k)
        for node, hit in zip(bc, observed):
            T[node, node] += PENALTY - 1.0 if hit else PENALTY

    return T


def build_T_weighted(
    T: np.ndarray,
    psi: sparse.spmatrix,
    Q: np.ndarray,
    bc_indices: Sequence[int] = (),
    k: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Add Psi^t Q Psi to T for weighted pointwise observations.

    With ``k`` the update is T[k[i], k[j]] += Q[i, j], O(s^2). A boundary
    node hosting observation i receives PENALTY - Q[i, i], so the value
    already scattered there is not counted twice.

    :param T: Dense (n_nodes x n_nodes) matrix, updated in place
    :param psi: Observation operator (n_obs x n_nodes)
    :param Q: Dense symmetric weighting matrix (n_obs x n_obs)
    :param bc_indices: Nodes carrying a Dirichlet condition
    :param k: Observation to node map
    :return: The updated T
    """
    _check_T(T, psi)
    _check_Q(Q, psi)
    bc = _check_bc(bc_indices, T.shape[0])

    if k is None:
        temp = _as_dense(psi.T @ (psi.T @ Q.T).T)
        _overwrite_bc(temp, bc)
        T += temp
        return T

    k = _check_k(k, psi)
    np.add.at(T, (k[:, None], k[None, :]), Q)

    for node in bc:
        hosts = np.flatnonzero(k == node)
        if hosts.size:
            T[node, node] += PENALTY - Q[hosts[0], hosts[0]]
        else:
            T[node, node] += PENALTY

    return T


def build_T_areal(
    T: np.ndarray,
    psi: sparse.spmatrix,
    A: np.ndarray,
    bc_indices: Sequence[int] = ()
) -> np.ndarray:
    """Add Psi^t diag(A) Psi to T, boundary diagonal overwritten with PENALTY."""
    _check_T(T, psi)
    A = _check_A(A, psi)
    bc = _check_bc(bc_indices, T.shape[0])

    temp = _as_dense(psi.T @ sparse.diags(A) @ psi)
    _overwrite_bc(temp, bc)
    T += temp
    return T


def build_T_weighted_areal(
    T: np.ndarray,
    psi: sparse.spmatrix,
    A: np.ndarray,
    Q: np.ndarray,
    bc_indices: Sequence[int] = ()
) -> np.ndarray:
    """Add Psi^t diag(A) Q Psi to T, boundary diagonal overwritten with PENALTY."""
    _check_T(T, psi)
    A = _check_A(A, psi)
    _check_Q(Q, psi)
    bc = _check_bc(bc_indices, T.shape[0])

    temp = _as_dense(psi.T @ (A[:, None] * (psi.T @ Q.T).T))
    _overwrite_bc(temp, bc)
    T += temp
    return T


def build_E_plain(psi: sparse.spmatrix, k: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Compute E = Psi^t (n_nodes x n_obs) for unweighted pointwise observations.

    :param psi: Observation operator
    :param k: Observation to node map
    :return: Dense cross block
    """
    n_obs, n_nodes = psi.shape
    if k is None:
        return _as_dense(psi.T)

    k = _check_k(k, psi)
    E = np.zeros((n_nodes, n_obs))
    E[k, np.arange(n_obs)] = 1.0
    return E


def build_E_weighted(
    psi: sparse.spmatrix,
    Q: np.ndarray,
    k: Optional[np.ndarray] = None
) -> np.ndarray:
    """
    Compute E = Psi^t Q for weighted pointwise observations.

    With ``k`` row i of Q is added to row k[i] of E; at most s^2 entries
    are non-null.

    :param psi: Observation operator
    :param Q: Dense weighting matrix (n_obs x n_obs)
    :param k: Observation to node map
    :return: Dense cross block (n_nodes x n_obs)
    """
    _check_Q(Q, psi)
    n_obs, n_nodes = psi.shape
    if k is None:
        return _as_dense(psi.T @ Q)

    k = _check_k(k, psi)
    E = np.zeros((n_nodes, n_obs))
    np.add.at(E, k, Q)
    return E


def build_E_areal(psi: sparse.spmatrix, A: np.ndarray) -> np.ndarray:
    """Compute E = Psi^t diag(A)."""
    A = _check_A(A, psi)
    return _as_dense(psi.T @ sparse.diags(A))


def build_E_weighted_areal(psi: sparse.spmatrix, A: np.ndarray, Q: np.ndarray) -> np.ndarray:
    """Compute E = Psi^t diag(A) Q."""
    A = _check_A(A, psi)
    _check_Q(Q, psi)
    return _as_dense(psi.T @ (A[:, None] * Q))


def build_z_hat(S: np.ndarray, z: np.ndarray) -> np.ndarray:
    """Fitted values z_hat = S z."""
    return S @ z


def build_z_hat_weighted(H: np.ndarray, Q: np.ndarray, S: np.ndarray, z: np.ndarray) -> np.ndarray:
    """Fitted values z_hat = (H + Q S) z."""
    return (H + Q @ S) @ z


def _as_dense(M) -> np.ndarray:
    if sparse.issparse(M):
        return M.toarray()
    return np.asarray(M, dtype=np.float64)


def _overwrite_bc(temp: np.ndarray, bc: np.ndarray) -> None:
    if bc.size:
        temp[bc, bc] = PENALTY


def _check_T(T: np.ndarray, psi: sparse.spmatrix) -> None:
    n_nodes = psi.shape[1]
    if T.shape != (n_nodes, n_nodes):
        raise StructureError(
            f"T must be ({n_nodes}, {n_nodes}) to match Psi, got {T.shape}"
        )


def _check_Q(Q: np.ndarray, psi: sparse.spmatrix) -> None:
    n_obs = psi.shape[0]
    if Q.shape != (n_obs, n_obs):
        raise StructureError(
            f"Q must be ({n_obs}, {n_obs}) to match the observations, got {Q.shape}"
        )


def _check_A(A: np.ndarray, psi: sparse.spmatrix) -> np.ndarray:
    A = np.asarray(A, dtype=np.float64).ravel()
    if A.shape[0] != psi.shape[0]:
        raise StructureError(
            f"A must have one weight per observation ({psi.shape[0]}), got {A.shape[0]}"
        )
    return A


def _check_k(k: np.ndarray, psi: sparse.spmatrix) -> np.ndarray:
    k = np.asarray(k, dtype=np.intp)
    if k.shape != (psi.shape[0],):
        raise StructureError(
            f"Permutation map must have one entry per observation ({psi.shape[0]}), got {k.shape}"
        )
    if k.size and (k.min() < 0 or k.max() >= psi.shape[1]):
        raise StructureError("Permutation map references nodes outside the mesh")
    return k


def _check_bc(bc_indices: Sequence[int], n_nodes: int) -> np.ndarray:
    bc = np.asarray(bc_indices, dtype=np.intp).ravel()
    if bc.size and (bc.min() < 0 or bc.max() >= n_nodes):
        raise StructureError(
            f"Boundary condition indices must lie in [0, {n_nodes}), got {bc.min()}..{bc.max()}"
        )
    return bc
