"""
Moment conditions for the mean and variance of a scalar series.

Each moment function maps ``(params, x)`` with ``params = (mu, sigma2)`` to the
per-observation moment matrix ``g`` (T x q) and its column means ``gbar``.
They accept either numpy arrays or torch tensors and return the same kind,
so the torch backend can differentiate through them with autograd.
"""

from typing import Callable, Dict, Tuple, Union

import numpy as np
import torch

from .exceptions import InvalidInputError

Array = Union[np.ndarray, torch.Tensor]
MomentFn = Callable[[Array, Array], Tuple[Array, Array]]


def _unpack(params: Array, x: Array) -> Tuple[Array, Array]:
    if x.ndim != 1 or x.shape[0] < 1:
        raise InvalidInputError(
            "series must be a non-empty 1-D array",
            stage="moment evaluation",
            context={"shape": tuple(x.shape)},
        )
    if params.ndim != 1 or params.shape[0] != 2:
        raise InvalidInputError(
            "parameter vector must be (mu, sigma2)",
            stage="moment evaluation",
            context={"shape": tuple(params.shape)},
        )
    return params[0], params[1]


def _stack(cols, like: Array) -> Tuple[Array, Array]:
    if isinstance(like, torch.Tensor):
        g = torch.stack(cols, dim=1)
        return g, g.mean(dim=0)
    g = np.column_stack(cols)
    return g, g.mean(axis=0)


def gmm_2mom(params: Array, x: Array) -> Tuple[Array, Array]:
    """Mean and variance conditions: ``x - mu`` and ``(x - mu)^2 - sigma2``."""
    mu, s2 = _unpack(params, x)
    e = x - mu
    return _stack([e, e**2 - s2], x)


def gmm_4mom(params: Array, x: Array) -> Tuple[Array, Array]:
    """
    Mean, variance, skewness and kurtosis conditions under normality.

    The first two columns equal `gmm_2mom`; the last two are ``(x - mu)^3`` and
    ``(x - mu)^4 - 3 sigma2^2``, both evaluated at the current ``sigma2``.
    """
    mu, s2 = _unpack(params, x)
    e = x - mu
    return _stack([e, e**2 - s2, e**3, e**4 - 3 * s2**2], x)


def jacobian_2mom(params: np.ndarray, x: np.ndarray) -> np.ndarray:
    """
    Closed-form d gbar / d (mu, sigma2) of `gmm_2mom`, shape (2, 2).

    Equals ``-I`` wherever the sample mean of ``x - mu`` is zero, in
    particular at the exactly identified estimate.
    """
    params, x = np.asarray(params, dtype=np.float64), np.asarray(x, dtype=np.float64)
    mu, _ = _unpack(params, x)
    return np.array([[-1.0, 0.0], [-2 * (x - mu).mean(), -1.0]])


def jacobian_4mom(params: np.ndarray, x: np.ndarray) -> np.ndarray:
    """Closed-form d gbar / d (mu, sigma2) of `gmm_4mom`, shape (4, 2)."""
    params, x = np.asarray(params, dtype=np.float64), np.asarray(x, dtype=np.float64)
    mu, s2 = _unpack(params, x)
    e = x - mu
    return np.array(
        [
            [-1.0, 0.0],
            [-2 * e.mean(), -1.0],
            [-3 * (e**2).mean(), 0.0],
            [-4 * (e**3).mean(), -6 * s2],
        ]
    )


def numerical_jacobian(
    moment_cond: MomentFn, params: np.ndarray, x: np.ndarray, eps: float = 1e-6
) -> np.ndarray:
    """Central finite-difference Jacobian of the moment means."""
    params = np.asarray(params, dtype=np.float64)
    q = moment_cond(params, x)[1].shape[0]
    G = np.zeros((q, params.shape[0]))
    for j in range(params.shape[0]):
        step = eps * max(1.0, abs(params[j]))
        theta_plus = params.copy()
        theta_minus = params.copy()
        theta_plus[j] += step
        theta_minus[j] -= step
        G[:, j] = (moment_cond(theta_plus, x)[1] - moment_cond(theta_minus, x)[1]) / (
            2 * step
        )
    return G


def autograd_jacobian(moment_cond: MomentFn, params: torch.Tensor, x: torch.Tensor) -> np.ndarray:
    """Jacobian of the moment means through torch autograd."""
    params = params.detach().clone()
    G = torch.autograd.functional.jacobian(lambda p: moment_cond(p, x)[1], params)
    return G.detach().cpu().numpy()


MOMENT_CONDITIONS: Dict[str, Tuple[MomentFn, Callable]] = {
    "2mom": (gmm_2mom, jacobian_2mom),
    "4mom": (gmm_4mom, jacobian_4mom),
}
