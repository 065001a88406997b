"""
Asymptotic covariance of GMM parameter estimates.

All functions return ``V`` such that ``sqrt(T) (theta_hat - theta)`` is
asymptotically ``N(0, V)``; standard errors are ``sqrt(diag(V) / T)``.
"""

import numpy as np
from scipy.linalg import inv

from .exceptions import DimensionMismatchError, SingularMatrixError

_STAGE = "covariance inversion"


def invert(M: np.ndarray, name: str, stage: str = _STAGE) -> np.ndarray:
    try:
        M_inv = inv(M)
    except (np.linalg.LinAlgError, ValueError) as e:
        raise SingularMatrixError(f"{name} is not invertible: {e}", stage=stage) from e
    if not np.all(np.isfinite(M_inv)):
        raise SingularMatrixError(f"{name} is not invertible", stage=stage)
    return M_inv


def _symmetric(V: np.ndarray) -> np.ndarray:
    return (V + V.T) / 2


def _check_square(M: np.ndarray, q: int, name: str) -> None:
    if M.shape != (q, q):
        raise DimensionMismatchError(
            f"{name} must be {q}x{q}, got {M.shape}", stage=_STAGE
        )


def efficient_vcov(D: np.ndarray, S: np.ndarray) -> np.ndarray:
    """``(D' S^-1 D)^-1``, valid when exactly identified or ``W = S^-1``."""
    D, S = np.atleast_2d(D), np.atleast_2d(S)
    _check_square(S, D.shape[0], "S")
    S_inv = invert(S, "S")
    return _symmetric(invert(D.T @ S_inv @ D, "D' S^-1 D"))


def sandwich_vcov(D: np.ndarray, W: np.ndarray, S: np.ndarray) -> np.ndarray:
    """``(D'WD)^-1 D'W S W'D (D'WD)^-1`` for an arbitrary weighting matrix."""
    D, W, S = np.atleast_2d(D), np.atleast_2d(W), np.atleast_2d(S)
    q = D.shape[0]
    _check_square(W, q, "W")
    _check_square(S, q, "S")
    DWD_inv = invert(D.T @ W @ D, "D' W D")
    middle = D.T @ W @ S @ W.T @ D
    return _symmetric(DWD_inv @ middle @ DWD_inv.T)


def combination_vcov(D: np.ndarray, A: np.ndarray, S: np.ndarray) -> np.ndarray:
    """``(AD)^-1 A S A' (AD)^-T`` for estimates solving ``A gbar = 0``."""
    D, A, S = np.atleast_2d(D), np.atleast_2d(A), np.atleast_2d(S)
    q, k = D.shape
    if A.shape != (k, q):
        raise DimensionMismatchError(
            f"combination matrix must be {k}x{q}, got {A.shape}", stage=_STAGE
        )
    _check_square(S, q, "S")
    AD_inv = invert(A @ D, "A D")
    return _symmetric(AD_inv @ A @ S @ A.T @ AD_inv.T)


def standard_errors(V: np.ndarray, n: int) -> np.ndarray:
    return np.sqrt(np.diag(V) / n)
