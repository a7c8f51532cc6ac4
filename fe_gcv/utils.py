"""
Utility functions for observation operators and timing.
"""

import time
from typing import Optional

import numpy as np
from scipy import sparse


def permutation_map(psi: sparse.spmatrix) -> Optional[np.ndarray]:
    """
    Recover the map k: observations -> mesh nodes from a 0/1 observation operator.

    :param psi: Sparse observation operator (n_obs x n_nodes)

    :returns: Integer array k with psi[i, k[i]] == 1, or None when some row
        does not hold exactly one nonzero equal to 1
    """
    psi = sparse.csr_matrix(psi, copy=True)
    psi.eliminate_zeros()

    row_nnz = np.diff(psi.indptr)
    if np.any(row_nnz != 1):
        return None
    if not np.all(psi.data == 1.0):
        return None

    return psi.indices.astype(np.intp)


class Timer:
    """Wall-clock timer usable as a context manager."""

    def __init__(self):
        self._start = None
        self.elapsed = 0.0

    def start(self):
        self._start = time.perf_counter()

    def stop(self) -> float:
        self.elapsed = time.perf_counter() - self._start
        return self.elapsed

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()
        return False
