"""
torchmoments: GMM estimation of the mean and variance of a scalar series.

Exactly identified and overidentified estimation, fixed and iterated
efficient weighting, Newey-West HAC covariances and sandwich standard errors,
with scipy and PyTorch backends.
"""

__version__ = "0.1.0"

from .config import GMMConfig
from .exceptions import (
    GMMError,
    InvalidInputError,
    DimensionMismatchError,
    SingularMatrixError,
    NonConvergenceError,
)
from .moments import gmm_2mom, gmm_4mom, jacobian_2mom, jacobian_4mom, numerical_jacobian
from .hac import newey_west, default_lags
from .variance import efficient_vcov, sandwich_vcov, combination_vcov, standard_errors
from .gmm import GMMEstimator, IteratedGMM

__all__ = [
    "GMMConfig",
    "GMMError",
    "InvalidInputError",
    "DimensionMismatchError",
    "SingularMatrixError",
    "NonConvergenceError",
    "gmm_2mom",
    "gmm_4mom",
    "jacobian_2mom",
    "jacobian_4mom",
    "numerical_jacobian",
    "newey_west",
    "default_lags",
    "efficient_vcov",
    "sandwich_vcov",
    "combination_vcov",
    "standard_errors",
    "GMMEstimator",
    "IteratedGMM",
]
