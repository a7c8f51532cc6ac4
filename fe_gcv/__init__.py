"""
FE_GCV: smoothing parameter selection by GCV for finite element spatial regression
"""

__version__ = "0.1.0"

# Main API
from .skeleton import (
    regression_skeleton,
    optimizer_method_selection,
    optimizer_strategy_selection,
)
from .regression import RegressionData, MixedFERegression
from .optimization_data import OptimizationData, OptimizationOutput

# Core components (for advanced users)
from .carrier import (
    CarrierKind,
    PlainCarrier,
    WeightedCarrier,
    ArealCarrier,
    WeightedArealCarrier,
    build_carrier,
)
from .evaluators import GCVExact, GCVStochastic
from .optimizers import (
    Checker,
    TerminationState,
    NewtonOptimizer,
    NewtonFDOptimizer,
    BatchEvaluator,
    create_optimizer,
)
from .fem import compute_fem_matrices

# Exceptions
from .exceptions import (
    FEGCVError,
    ConfigurationError,
    StructureError,
    MatrixError,
)

__all__ = [
    # Main API
    'regression_skeleton',
    'optimizer_method_selection',
    'optimizer_strategy_selection',
    'RegressionData',
    'MixedFERegression',
    'OptimizationData',
    'OptimizationOutput',

    # Core components
    'CarrierKind',
    'PlainCarrier',
    'WeightedCarrier',
    'ArealCarrier',
    'WeightedArealCarrier',
    'build_carrier',
    'GCVExact',
    'GCVStochastic',
    'Checker',
    'TerminationState',
    'NewtonOptimizer',
    'NewtonFDOptimizer',
    'BatchEvaluator',
    'create_optimizer',
    'compute_fem_matrices',

    # Exceptions
    'FEGCVError',
    'ConfigurationError',
    'StructureError',
    'MatrixError',
]
