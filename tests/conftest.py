"""Shared meshes and regression problems for the fe_gcv test suite."""

import numpy as np
import pytest

from fe_gcv.regression import RegressionData


def strip_mesh(nx: int = 5, ny: int = 2):
    """Structured triangulation of [0, nx-1] x [0, ny-1] with nx * ny nodes."""
    xs, ys = np.meshgrid(np.arange(nx, dtype=float), np.arange(ny, dtype=float))
    vertices = np.column_stack([xs.ravel(), ys.ravel()])

    triangles = []
    for j in range(ny - 1):
        for i in range(nx - 1):
            a = j * nx + i
            b = a + 1
            c = a + nx + 1
            d = a + nx
            triangles.append([a, b, c])
            triangles.append([a, c, d])

    return vertices, np.array(triangles)


# Six observations on a 10-node mesh: a trend in x plus small perturbations
OBS_NODES = np.array([0, 2, 4, 6, 7, 9])
PERTURBATION = np.array([0.12, -0.08, 0.05, -0.11, 0.09, -0.06])


@pytest.fixture
def mesh():
    return strip_mesh()


@pytest.fixture
def node_data(mesh):
    vertices, _ = mesh
    z = vertices[OBS_NODES, 0] + PERTURBATION
    return RegressionData(z, observation_indices=OBS_NODES)


@pytest.fixture
def covariate_data(mesh):
    vertices, _ = mesh
    w = np.array([1.0, 0.5, -0.3, 0.8, 0.2, -0.6])
    z = vertices[OBS_NODES, 0] + 0.7 * w + PERTURBATION
    return RegressionData(z, covariates=w[:, None], observation_indices=OBS_NODES)


@pytest.fixture
def areal_data(mesh):
    _, triangles = mesh
    n_cells = len(triangles) // 2
    incidence = np.zeros((n_cells, len(triangles)))
    for r in range(n_cells):
        incidence[r, 2 * r] = 1.0
        incidence[r, 2 * r + 1] = 1.0
    z = np.arange(n_cells, dtype=float) + 0.5 + PERTURBATION[:n_cells]
    return RegressionData(z, incidence_matrix=incidence)
