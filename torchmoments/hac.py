"""
Newey-West (Bartlett kernel) long-run covariance of moment conditions.
"""

import numpy as np

from .exceptions import InvalidInputError


def default_lags(n: int) -> int:
    """Newey-West rule-of-thumb bandwidth ``floor(4 (n/100)^(2/9))``."""
    return int(np.floor(4 * (n / 100) ** (2 / 9)))


def newey_west(moments: np.ndarray, lags: int = 0, stage: str = "weighting update") -> np.ndarray:
    """
    HAC estimate of ``Var(sqrt(T) * gbar)``.

    Args:
        moments: Moment matrix of shape (T, q).
        lags: Number of autocovariance lags ``m``; 0 gives the iid covariance.
        stage: Estimation stage reported by any error raised here.

    Returns:
        Symmetric (q, q) matrix
        ``Gamma_0 + sum_{v=1}^{m} (1 - v/(m+1)) (Gamma_v + Gamma_v')``.

    Raises:
        InvalidInputError: if ``moments`` is not 2-D, ``lags < 0`` or
            ``lags >= T``.
    """
    moments = np.asarray(moments, dtype=np.float64)
    if moments.ndim != 2:
        raise InvalidInputError(
            "moment matrix must be 2-D",
            stage=stage,
            context={"shape": moments.shape},
        )
    n, _ = moments.shape
    lags = int(lags)
    if lags < 0 or lags >= n:
        raise InvalidInputError(
            f"lag count must satisfy 0 <= lags < T, got lags={lags}",
            stage=stage,
            context={"T": n},
        )

    moments_centered = moments - moments.mean(axis=0)

    Omega = moments_centered.T @ moments_centered / n

    for lag in range(1, lags + 1):
        weight = 1 - lag / (lags + 1)
        gamma_lag = moments_centered[lag:].T @ moments_centered[:-lag] / n
        Omega += weight * (gamma_lag + gamma_lag.T)

    return (Omega + Omega.T) / 2
