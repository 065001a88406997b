"""
Generalized method of moments (GMM) estimators.

The module exports the backend-dispatching `GMMEstimator`, the pure loss and
moment-combination functions it optimises, and the iterated efficient
weighting controller.
"""

from .gmm import GMMEstimator, gmm_loss, combined_moments
from .iterated import IteratedGMM, IteratedGMMResult, IterationState, Status

__all__ = [
    "GMMEstimator",
    "gmm_loss",
    "combined_moments",
    "IteratedGMM",
    "IteratedGMMResult",
    "IterationState",
    "Status",
]
