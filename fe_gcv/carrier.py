"""
Carriers binding a regression model to the matrices needed by GCV.

A carrier is built once per (mesh, configuration) pair and reused for
every lambda trial. There is one concrete class per configuration:

    PlainCarrier           no covariates, pointwise observations
    WeightedCarrier        covariates (Q, H), pointwise observations
    ArealCarrier           no covariates, areal observations (A)
    WeightedArealCarrier   covariates and areal observations

``build_carrier`` picks the class from the model and data; the carriers
themselves never branch on their configuration.
"""

from enum import Enum
from typing import Callable, Dict, Optional

import numpy as np
from scipy import sparse

from fe_gcv import blocks
from fe_gcv.exceptions import ConfigurationError, StructureError
from fe_gcv.utils import permutation_map


class CarrierKind(Enum):
    PLAIN = "plain"
    WEIGHTED = "weighted"
    AREAL = "areal"
    WEIGHTED_AREAL = "weighted_areal"

    @property
    def weighted(self) -> bool:
        return self in (CarrierKind.WEIGHTED, CarrierKind.WEIGHTED_AREAL)

    @property
    def areal(self) -> bool:
        return self in (CarrierKind.AREAL, CarrierKind.WEIGHTED_AREAL)

    @classmethod
    def from_flags(cls, weighted: bool, areal: bool) -> "CarrierKind":
        if weighted:
            return cls.WEIGHTED_AREAL if areal else cls.WEIGHTED
        return cls.AREAL if areal else cls.PLAIN


def _readonly(M: np.ndarray) -> np.ndarray:
    M.setflags(write=False)
    return M


class Carrier:
    """
    Operations shared by every carrier.

    Attributes
    ----------
    kind : CarrierKind
        Configuration implemented by the concrete class
    """

    kind: CarrierKind = None

    def __init__(self, model, regression_data, opt_data, T: np.ndarray, E: np.ndarray,
                 k: Optional[np.ndarray] = None):
        self._model = model
        self._regression_data = regression_data
        self._opt_data = opt_data
        self._T = _readonly(T)
        self._E = _readonly(E)
        self._k = k

    def apply(self, lam: float) -> np.ndarray:
        """Solve the penalized system at ``lam`` and return the field coefficients."""
        return self._model.apply(lam)

    def get_model(self):
        return self._model

    def get_opt_data(self):
        return self._opt_data

    def get_psi(self) -> sparse.csr_matrix:
        return self._model.psi

    def get_z(self) -> np.ndarray:
        return self._regression_data.observations

    def get_T(self) -> np.ndarray:
        return self._T

    def get_E(self) -> np.ndarray:
        return self._E

    def get_R(self) -> np.ndarray:
        """Dense penalty matrix P = R1^t R0^-1 R1."""
        return self._model.get_penalty()

    def get_bc_indices(self) -> np.ndarray:
        return self._regression_data.bc_indices

    def get_k(self) -> Optional[np.ndarray]:
        """Observation to node map, None unless observations coincide with nodes."""
        return self._k

    @property
    def n_obs(self) -> int:
        return len(self._regression_data.observations)

    @property
    def n_nodes(self) -> int:
        return self._T.shape[0]

    # Weighting hooks, overridden by the weighted carriers
    n_covariates = 0

    def project(self, X: np.ndarray) -> np.ndarray:
        return X

    def fit_covariates(self, z: np.ndarray) -> np.ndarray:
        return np.zeros_like(z)

    def z_hat(self, S: np.ndarray) -> np.ndarray:
        return blocks.build_z_hat(S, self.get_z())


class PlainCarrier(Carrier):
    kind = CarrierKind.PLAIN


class WeightedCarrier(Carrier):
    kind = CarrierKind.WEIGHTED

    def get_Q(self) -> np.ndarray:
        return _readonly(self._model.Q.view())

    def get_H(self) -> np.ndarray:
        return _readonly(self._model.H.view())

    @property
    def n_covariates(self) -> int:
        return self._regression_data.n_covariates

    def project(self, X: np.ndarray) -> np.ndarray:
        return self._model.Q @ X

    def fit_covariates(self, z: np.ndarray) -> np.ndarray:
        return self._model.H @ z

    def z_hat(self, S: np.ndarray) -> np.ndarray:
        return blocks.build_z_hat_weighted(self._model.H, self._model.Q, S, self.get_z())


class ArealCarrier(Carrier):
    kind = CarrierKind.AREAL

    def get_A(self) -> np.ndarray:
        return self._model.A


class WeightedArealCarrier(WeightedCarrier):
    kind = CarrierKind.WEIGHTED_AREAL

    def get_A(self) -> np.ndarray:
        return self._model.A


def _check_structure(regression_data, model) -> None:
    psi = model.psi
    n_obs = regression_data.n_obs

    if psi.shape[0] != n_obs:
        raise StructureError(f"Psi has {psi.shape[0]} rows for {n_obs} observations")

    bc = regression_data.bc_indices
    if bc.size and (bc.min() < 0 or bc.max() >= psi.shape[1]):
        raise StructureError(
            f"Boundary condition indices must lie in [0, {psi.shape[1]})"
        )

    if model.is_spatially_varying():
        if model.Q.shape != (n_obs, n_obs):
            raise StructureError(
                f"Q must be ({n_obs}, {n_obs}), got {model.Q.shape}"
            )

    if model.number_of_regions() > 0 and len(model.A) != n_obs:
        raise StructureError(f"A has {len(model.A)} entries for {n_obs} regions")


def build_plain_carrier(regression_data, model, opt_data) -> PlainCarrier:
    _check_structure(regression_data, model)
    psi = model.psi
    k = permutation_map(psi)

    T = np.zeros((psi.shape[1], psi.shape[1]))
    blocks.build_T_plain(T, psi, regression_data.bc_indices, k=k)
    E = blocks.build_E_plain(psi, k=k)

    return PlainCarrier(model, regression_data, opt_data, T, E, k=k)


def build_weighted_carrier(regression_data, model, opt_data) -> WeightedCarrier:
    _check_structure(regression_data, model)
    psi = model.psi
    k = permutation_map(psi)

    T = np.zeros((psi.shape[1], psi.shape[1]))
    blocks.build_T_weighted(T, psi, model.Q, regression_data.bc_indices, k=k)
    E = blocks.build_E_weighted(psi, model.Q, k=k)

    return WeightedCarrier(model, regression_data, opt_data, T, E, k=k)


def build_areal_carrier(regression_data, model, opt_data) -> ArealCarrier:
    _check_structure(regression_data, model)
    psi = model.psi

    T = np.zeros((psi.shape[1], psi.shape[1]))
    blocks.build_T_areal(T, psi, model.A, regression_data.bc_indices)
    E = blocks.build_E_areal(psi, model.A)

    return ArealCarrier(model, regression_data, opt_data, T, E)


def build_weighted_areal_carrier(regression_data, model, opt_data) -> WeightedArealCarrier:
    _check_structure(regression_data, model)
    psi = model.psi

    T = np.zeros((psi.shape[1], psi.shape[1]))
    blocks.build_T_weighted_areal(T, psi, model.A, model.Q, regression_data.bc_indices)
    E = blocks.build_E_weighted_areal(psi, model.A, model.Q)

    return WeightedArealCarrier(model, regression_data, opt_data, T, E)


_CARRIER_BUILDERS: Dict[CarrierKind, Callable] = {
    CarrierKind.PLAIN: build_plain_carrier,
    CarrierKind.WEIGHTED: build_weighted_carrier,
    CarrierKind.AREAL: build_areal_carrier,
    CarrierKind.WEIGHTED_AREAL: build_weighted_areal_carrier,
}


def build_carrier(regression_data, model, opt_data, verbose: bool = False) -> Carrier:
    """
    Build the carrier matching the model configuration.

    :param regression_data: RegressionData of the problem
    :param model: Model exposing is_spatially_varying() and number_of_regions()
    :param opt_data: OptimizationData
    :param verbose: Print the selected configuration
    :return: One of the four concrete carriers
    """
    kind = CarrierKind.from_flags(
        weighted=model.is_spatially_varying(),
        areal=model.number_of_regions() > 0
    )

    builder = _CARRIER_BUILDERS.get(kind)
    if builder is None:
        raise ConfigurationError(f"No carrier builder for configuration {kind}")

    if verbose:
        print(f"Building {kind.value} carrier")

    return builder(regression_data, model, opt_data)
