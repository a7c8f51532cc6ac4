"""
Linear finite element assembly on triangular meshes.

This module computes the sparse matrices consumed by the penalized
regression model: the mass matrix R0, the stiffness matrix R1 and the
observation operator Psi, either for pointwise observations (node
indicators or barycentric interpolation) or for areal observations
aggregated over regions of mesh triangles.
"""

import numpy as np
from scipy import sparse
from typing import Tuple, Optional
import warnings

from fe_gcv.exceptions import MatrixError


def compute_fem_matrices(
    vertices: np.ndarray,
    triangles: np.ndarray,
    verbose: bool = False
) -> Tuple[sparse.csr_matrix, sparse.csr_matrix]:
    """
    Compute the mass and stiffness matrices of a P1 triangulation.

    Parameters
    ----------
    vertices : np.ndarray
        Mesh vertex coordinates of shape (n_nodes, 2)
    triangles : np.ndarray
        Triangle connectivity of shape (n_tri, 3)
    verbose : bool
        Print computation progress

    Returns
    -------
    R0 : sparse.csr_matrix
        Mass matrix (n_nodes x n_nodes)
    R1 : sparse.csr_matrix
        Stiffness matrix (n_nodes x n_nodes)
    """
    vertices = np.asarray(vertices, dtype=np.float64)
    triangles = np.asarray(triangles, dtype=np.intp)

    if vertices.ndim != 2 or vertices.shape[1] != 2:
        raise MatrixError(f"Expected vertices shape (n_nodes, 2), got {vertices.shape}")
    if triangles.ndim != 2 or triangles.shape[1] != 3:
        raise MatrixError(f"Expected triangles shape (n_tri, 3), got {triangles.shape}")
    if triangles.size and (triangles.min() < 0 or triangles.max() >= len(vertices)):
        raise MatrixError("Triangle connectivity references vertices outside the mesh")

    if verbose:
        print("Computing FEM matrices:")
        print(f"  Mesh: {len(vertices)} nodes, {len(triangles)} triangles")

    R0 = _compute_mass_matrix_vectorized(vertices, triangles)
    R1 = _compute_stiffness_matrix_vectorized(vertices, triangles)

    if verbose:
        _print_matrix_diagnostics(R0, R1)

    return R0, R1


def compute_pointwise_psi(
    vertices: np.ndarray,
    triangles: np.ndarray,
    locations: Optional[np.ndarray] = None,
    observation_indices: Optional[np.ndarray] = None
) -> sparse.csr_matrix:
    """
    Compute the pointwise observation operator Psi[i, k] = psi_k(p_i).

    When ``locations`` is None the observations sit on mesh nodes and Psi
    is the 0/1 indicator of ``observation_indices``.

    :param vertices: Mesh vertex coordinates
    :param triangles: Triangle connectivity
    :param locations: Observation coordinates of shape (n_obs, 2)
    :param observation_indices: Node index of each observation
    :return: Sparse operator of shape (n_obs, n_nodes)
    """
    n_nodes = len(vertices)

    if locations is None:
        if observation_indices is None:
            raise MatrixError("Either locations or observation_indices must be given")
        idx = np.asarray(observation_indices, dtype=np.intp)
        if idx.size and (idx.min() < 0 or idx.max() >= n_nodes):
            raise MatrixError("Observation indices reference nodes outside the mesh")
        n_obs = len(idx)
        return sparse.csr_matrix(
            (np.ones(n_obs), (np.arange(n_obs), idx)), shape=(n_obs, n_nodes)
        )

    vertices = np.asarray(vertices, dtype=np.float64)
    triangles = np.asarray(triangles, dtype=np.intp)
    locations = np.asarray(locations, dtype=np.float64)
    n_obs = len(locations)

    simplex_indices = _locate_points(locations, vertices, triangles)
    bary_coords = _compute_barycentric_vectorized(
        locations, vertices, triangles, simplex_indices
    )

    # Each observation has at most 3 non-zero entries
    obs_indices = np.repeat(np.arange(n_obs), 3)
    vertex_indices = triangles[simplex_indices].ravel()
    values = bary_coords.ravel()

    nonzero_mask = np.abs(values) > 1e-12
    # Snap to exact ones so node-coincident locations keep a 0/1 operator
    values = np.where(np.abs(values - 1.0) <= 1e-12, 1.0, values)

    psi = sparse.csr_matrix(
        (values[nonzero_mask], (obs_indices[nonzero_mask], vertex_indices[nonzero_mask])),
        shape=(n_obs, n_nodes)
    )
    return psi


def compute_areal_psi(
    vertices: np.ndarray,
    triangles: np.ndarray,
    incidence_matrix: np.ndarray
) -> Tuple[sparse.csr_matrix, np.ndarray]:
    """
    Compute the areal observation operator and the region areas.

    Row r of Psi holds the mean of each basis function over region r:
    Psi[r, k] = (1 / |D_r|) * integral over D_r of psi_k, where D_r is the
    union of the triangles weighted by ``incidence_matrix[r]``.

    Parameters
    ----------
    vertices : np.ndarray
        Mesh vertex coordinates
    triangles : np.ndarray
        Triangle connectivity
    incidence_matrix : np.ndarray
        Region membership weights of shape (n_regions, n_tri)

    Returns
    -------
    psi : sparse.csr_matrix
        Areal operator of shape (n_regions, n_nodes)
    areas : np.ndarray
        Region areas of shape (n_regions,)
    """
    vertices = np.asarray(vertices, dtype=np.float64)
    triangles = np.asarray(triangles, dtype=np.intp)
    incidence = sparse.csr_matrix(np.asarray(incidence_matrix, dtype=np.float64))

    n_nodes = len(vertices)
    n_tri = len(triangles)
    if incidence.shape[1] != n_tri:
        raise MatrixError(
            f"Incidence matrix has {incidence.shape[1]} columns, mesh has {n_tri} triangles"
        )

    tri_areas = _triangle_areas_vectorized(vertices[triangles])

    # integral of a P1 basis function over a triangle is area / 3
    node_rows = np.repeat(np.arange(n_tri), 3)
    node_cols = triangles.ravel()
    node_vals = np.repeat(tri_areas / 3.0, 3)
    tri_to_node = sparse.csr_matrix(
        (node_vals, (node_rows, node_cols)), shape=(n_tri, n_nodes)
    )

    areas = np.asarray(incidence @ tri_areas).ravel()
    if np.any(areas <= 0):
        raise MatrixError("Every region must cover a positive area")

    psi = sparse.diags(1.0 / areas) @ (incidence @ tri_to_node)
    psi = sparse.csr_matrix(psi)
    psi.eliminate_zeros()

    return psi, areas


def _compute_mass_matrix_vectorized(vertices: np.ndarray, triangles: np.ndarray) -> sparse.csr_matrix:
    """
    Compute mass matrix R0 where R0[i,j] = integral(psi_i(s) * psi_j(s) ds).

    Parameters
    ----------
    vertices : np.ndarray
        Mesh vertex coordinates
    triangles : np.ndarray
        Triangle connectivity

    Returns
    -------
    sparse.csr_matrix
        Mass matrix
    """
    n_vertices = len(vertices)
    triangles, areas = _drop_degenerate(vertices, triangles)

    # Diagonal terms: area/6, Off-diagonal terms: area/12
    rows = []
    cols = []
    data = []
    for local_i in range(3):
        for local_j in range(3):
            rows.append(triangles[:, local_i])
            cols.append(triangles[:, local_j])
            data.append(areas / 6.0 if local_i == local_j else areas / 12.0)

    R0 = sparse.coo_matrix(
        (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n_vertices, n_vertices)
    ).tocsr()
    R0.eliminate_zeros()

    return R0


def _compute_stiffness_matrix_vectorized(vertices: np.ndarray, triangles: np.ndarray) -> sparse.csr_matrix:
    """
    Compute stiffness matrix R1 where R1[i,j] = integral(grad(psi_i) . grad(psi_j) ds).

    Parameters
    ----------
    vertices : np.ndarray
        Mesh vertex coordinates
    triangles : np.ndarray
        Triangle connectivity

    Returns
    -------
    sparse.csr_matrix
        Stiffness matrix
    """
    n_vertices = len(vertices)
    triangles, areas = _drop_degenerate(vertices, triangles)

    # (n_tri, 3, 2)
    gradients = _compute_basis_gradients_vectorized(vertices[triangles])

    rows = []
    cols = []
    data = []
    for local_i in range(3):
        for local_j in range(3):
            rows.append(triangles[:, local_i])
            cols.append(triangles[:, local_j])
            dot_products = np.sum(gradients[:, local_i, :] * gradients[:, local_j, :], axis=1)
            data.append(areas * dot_products)

    R1 = sparse.coo_matrix(
        (np.concatenate(data), (np.concatenate(rows), np.concatenate(cols))),
        shape=(n_vertices, n_vertices)
    ).tocsr()
    R1.eliminate_zeros()

    return R1


def _drop_degenerate(vertices: np.ndarray, triangles: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    areas = _triangle_areas_vectorized(vertices[triangles])

    degenerate_mask = areas <= 1e-12
    if np.any(degenerate_mask):
        warnings.warn(f"Found {np.sum(degenerate_mask)} degenerate triangles, skipping")
        triangles = triangles[~degenerate_mask]
        areas = areas[~degenerate_mask]

    return triangles, areas


def _triangle_areas_vectorized(tri_coords: np.ndarray) -> np.ndarray:
    """
    Compute areas of all triangles using vectorized operations.

    Parameters
    ----------
    tri_coords : np.ndarray
        Triangle coordinates of shape (n_tri, 3, 2)

    Returns
    -------
    np.ndarray
        Triangle areas of shape (n_tri,)
    """
    v1, v2, v3 = tri_coords[:, 0], tri_coords[:, 1], tri_coords[:, 2]

    return 0.5 * np.abs(
        (v2[:, 0] - v1[:, 0]) * (v3[:, 1] - v1[:, 1]) -
        (v3[:, 0] - v1[:, 0]) * (v2[:, 1] - v1[:, 1])
    )


def _compute_basis_gradients_vectorized(tri_coords: np.ndarray) -> np.ndarray:
    """
    Compute gradients of linear basis functions for all triangles.

    Parameters
    ----------
    tri_coords : np.ndarray
        Triangle coordinates of shape (n_tri, 3, 2)

    Returns
    -------
    np.ndarray
        Basis function gradients of shape (n_tri, 3, 2)
    """
    n_tri = tri_coords.shape[0]
    v1, v2, v3 = tri_coords[:, 0], tri_coords[:, 1], tri_coords[:, 2]

    # B = [v2-v1, v3-v1] for all triangles: (n_tri, 2, 2)
    B = np.stack([v2 - v1, v3 - v1], axis=2)
    det_B = B[:, 0, 0] * B[:, 1, 1] - B[:, 0, 1] * B[:, 1, 0]

    if np.any(np.abs(det_B) < 1e-12):
        raise MatrixError(f"Found {np.sum(np.abs(det_B) < 1e-12)} degenerate triangles in gradient computation")

    B_inv = np.empty_like(B)
    B_inv[:, 0, 0] = B[:, 1, 1] / det_B
    B_inv[:, 0, 1] = -B[:, 0, 1] / det_B
    B_inv[:, 1, 0] = -B[:, 1, 0] / det_B
    B_inv[:, 1, 1] = B[:, 0, 0] / det_B

    gradients = np.empty((n_tri, 3, 2))
    gradients[:, 0, :] = -(B_inv[:, 0, :] + B_inv[:, 1, :])
    gradients[:, 1, :] = B_inv[:, 0, :]
    gradients[:, 2, :] = B_inv[:, 1, :]

    return gradients


def _signed_areas(p1: np.ndarray, p2: np.ndarray, p3: np.ndarray) -> np.ndarray:
    return 0.5 * (
        (p2[..., 0] - p1[..., 0]) * (p3[..., 1] - p1[..., 1]) -
        (p3[..., 0] - p1[..., 0]) * (p2[..., 1] - p1[..., 1])
    )


def _locate_points(points: np.ndarray, vertices: np.ndarray, triangles: np.ndarray) -> np.ndarray:
    """
    Find the triangle containing each point.

    Points outside the mesh are assigned the triangle whose smallest
    barycentric coordinate is largest, i.e. the closest one.
    """
    # (1, n_tri, 2) against (n_points, 1, 2)
    tri_verts = vertices[triangles][None, :, :, :]
    p = points[:, None, :]
    v1, v2, v3 = tri_verts[..., 0, :], tri_verts[..., 1, :], tri_verts[..., 2, :]

    total = _signed_areas(v1, v2, v3)
    with np.errstate(divide="ignore", invalid="ignore"):
        bary = np.stack([
            _signed_areas(p, v2, v3) / total,
            _signed_areas(v1, p, v3) / total,
            _signed_areas(v1, v2, p) / total,
        ], axis=-1)

    # degenerate triangles never contain a point
    worst = np.nan_to_num(bary.min(axis=-1), nan=-np.inf)
    simplex_indices = np.argmax(worst, axis=1)

    n_outside = np.sum(worst[np.arange(len(points)), simplex_indices] < -1e-10)
    if n_outside > 0:
        warnings.warn(f"{n_outside} observation points outside mesh")

    return simplex_indices


def _compute_barycentric_vectorized(
    points: np.ndarray,
    vertices: np.ndarray,
    triangles: np.ndarray,
    triangle_indices: np.ndarray
) -> np.ndarray:
    """
    Compute barycentric coordinates for all points using vectorized operations.

    Parameters
    ----------
    points : np.ndarray
        Point coordinates of shape (n_points, 2)
    vertices : np.ndarray
        Mesh vertex coordinates
    triangles : np.ndarray
        Triangle connectivity
    triangle_indices : np.ndarray
        Triangle index for each point

    Returns
    -------
    np.ndarray
        Barycentric coordinates of shape (n_points, 3)
    """
    tri_verts = vertices[triangles[triangle_indices]]
    v1, v2, v3 = tri_verts[:, 0], tri_verts[:, 1], tri_verts[:, 2]

    total_areas = _signed_areas(v1, v2, v3)
    if np.any(np.abs(total_areas) <= 1e-12):
        raise MatrixError("Degenerate triangles in barycentric coordinate computation")

    bary_coords = np.column_stack([
        _signed_areas(points, v2, v3) / total_areas,
        _signed_areas(v1, points, v3) / total_areas,
        _signed_areas(v1, v2, points) / total_areas
    ])

    return bary_coords / bary_coords.sum(axis=1, keepdims=True)


def _print_matrix_diagnostics(R0: sparse.csr_matrix, R1: sparse.csr_matrix) -> None:
    """Print matrix diagnostics for user information."""
    print("\nMatrix Diagnostics:")
    for name, M in (("R0 (mass)", R0), ("R1 (stiffness)", R1)):
        density = M.nnz / (M.shape[0] * M.shape[1]) * 100
        print(f"  {name}: {M.shape[0]}x{M.shape[1]}, {M.nnz:,} non-zeros ({density:.2f}% dense)")
