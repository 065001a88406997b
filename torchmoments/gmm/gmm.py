import logging
from abc import ABC, abstractmethod
from functools import partial
from typing import Callable, Optional, Tuple, Union

import numpy as np
import pandas as pd
import scipy
import scipy.optimize
import scipy.stats
import torch
import torchmin

from ..config import GMMConfig
from ..exceptions import DimensionMismatchError, InvalidInputError, NonConvergenceError
from ..hac import default_lags, newey_west
from ..moments import MOMENT_CONDITIONS, MomentFn, autograd_jacobian, numerical_jacobian
from ..variance import (
    combination_vcov,
    efficient_vcov,
    invert,
    sandwich_vcov,
    standard_errors,
)
from .iterated import IteratedGMM

logger = logging.getLogger(__name__)

PARAM_NAMES = ("mu", "sigma2")

# scipy default optimizer tolerances
_NELDER_MEAD_OPTIONS = {"xatol": 1e-8, "fatol": 1e-12, "maxiter": 20000, "maxfev": 40000}


def gmm_loss(params, x, moment_cond: MomentFn, W=None):
    """
    GMM loss ``1 + gbar' W gbar``.

    The additive constant does not move the minimiser. ``W`` defaults to the
    identity; numpy and torch inputs are both accepted.
    """
    _, gbar = moment_cond(params, x)
    q = gbar.shape[0]
    if q < 2:
        raise DimensionMismatchError(
            f"need at least 2 moment conditions, got {q}", stage="estimation"
        )
    if W is None:
        if isinstance(gbar, torch.Tensor):
            W = torch.eye(q, dtype=gbar.dtype, device=gbar.device)
        else:
            W = np.eye(q)
    elif tuple(W.shape) != (q, q):
        raise DimensionMismatchError(
            f"weighting matrix must be {q}x{q}, got {tuple(W.shape)}",
            stage="estimation",
        )
    return 1 + gbar @ W @ gbar


def combined_moments(params, x, moment_cond: MomentFn, L):
    """``L @ gbar(params)``; exactly identified fits drive this to zero."""
    return L @ moment_cond(params, x)[1]


def combined_jacobian(params, x, jacobian_fn: Callable, L):
    return L @ jacobian_fn(params, x)


def _resolve_moment_cond(
    moment_cond: Union[str, MomentFn, Tuple[MomentFn, Callable]]
) -> Tuple[MomentFn, Optional[Callable]]:
    if isinstance(moment_cond, str):
        spec = MOMENT_CONDITIONS.get(moment_cond)
        if spec is None:
            raise ValueError(
                f"Moment condition {moment_cond} is not supported. "
                f"Supported moment conditions are: {list(MOMENT_CONDITIONS.keys())}"
            )
        return spec
    if isinstance(moment_cond, tuple):
        return moment_cond
    return moment_cond, None


class GMMEstimator(ABC):
    """
    GMM estimator of the mean and variance of a scalar series.

    Instantiating `GMMEstimator` returns the backend implementation selected
    by ``backend``: "scipy" solves with ``scipy.optimize`` and differentiates
    by finite differences, "torch" solves with ``torchmin`` and differentiates
    with autograd. Variances and HAC covariances are computed in numpy for
    both.

    Args:
        moment_cond: "2mom", "4mom", a moment function
            ``f(params, x) -> (g, gbar)`` or a ``(moment_fn, jacobian_fn)`` pair.
        config: Estimation settings, see `GMMConfig`.
        backend: "scipy" or "torch".

    Examples:
        >>> est = GMMEstimator("4mom", GMMConfig(lags=1))
        >>> est.fit_exact(x, start=[0.0, 1.0], combination=np.eye(2, 4))
        >>> est.summary()
    """

    def __new__(
        cls,
        moment_cond: Union[str, MomentFn] = "2mom",
        config: Optional[GMMConfig] = None,
        backend: str = "scipy",
        **kwargs,
    ):
        if cls is not GMMEstimator:
            return super(GMMEstimator, cls).__new__(cls)
        backend = backend.lower()
        estimator = _BACKENDS.get(backend)
        if estimator is None:
            raise ValueError(
                f"Backend {backend} is not supported. "
                f"Supported backends are: {list(_BACKENDS.keys())}"
            )
        unexpected = set(kwargs) - _BACKEND_KWARGS[backend]
        if unexpected:
            raise TypeError(
                f"Backend {backend} does not accept {sorted(unexpected)}. "
                f"Accepted extra arguments are: {sorted(_BACKEND_KWARGS[backend])}"
            )
        return super(GMMEstimator, cls).__new__(estimator)

    def __init__(
        self,
        moment_cond: Union[str, MomentFn] = "2mom",
        config: Optional[GMMConfig] = None,
        backend: str = "scipy",
    ):
        self.moment_cond, self.jacobian_fn = _resolve_moment_cond(moment_cond)
        self.config = (config if config is not None else GMMConfig()).validate()
        self.x_: Optional[np.ndarray] = None
        self.n_: Optional[int] = None
        self.theta_: Optional[np.ndarray] = None
        self.W_: Optional[np.ndarray] = None
        self.Gamma_: Optional[np.ndarray] = None
        self.Omega_: Optional[np.ndarray] = None
        self.vtheta_: Optional[np.ndarray] = None
        self.std_errors_: Optional[np.ndarray] = None
        self.moment_mean_: Optional[np.ndarray] = None
        self.j_stat_: Optional[float] = None
        self.j_pvalue_: Optional[float] = None

    @abstractmethod
    def _root(self, L: np.ndarray, start: np.ndarray) -> Tuple[np.ndarray, Optional[str]]:
        """
        Find ``p`` with ``L @ gbar(p) = 0`` starting at ``start``.

        Returns the solver's final point and its failure message, or None
        when it reported success. `fit_exact` judges the point by its residual.
        """

    @abstractmethod
    def _minimize(self, W: np.ndarray, start: np.ndarray) -> np.ndarray:
        """Minimise `gmm_loss` under ``W`` starting at ``start``."""

    @abstractmethod
    def _numerical_jacobian(self, params: np.ndarray) -> np.ndarray:
        pass

    def _prepare(self, x) -> None:
        x = np.array(x, dtype=np.float64)
        if x.ndim != 1:
            raise InvalidInputError(
                "series must be one-dimensional",
                stage="moment evaluation",
                context={"shape": x.shape},
            )
        if x.shape[0] < 2:
            raise InvalidInputError(
                f"series needs at least 2 observations, got {x.shape[0]}",
                stage="moment evaluation",
            )
        if not np.all(np.isfinite(x)):
            raise InvalidInputError("series contains non-finite values", stage="moment evaluation")
        x.flags.writeable = False
        self.x_ = x
        self.n_ = x.shape[0]

    @staticmethod
    def _start(start) -> np.ndarray:
        start = np.array(start, dtype=np.float64)
        if start.shape != (len(PARAM_NAMES),):
            raise InvalidInputError(
                "start must be (mu, sigma2)",
                stage="estimation",
                context={"shape": start.shape},
            )
        return start

    def moment_matrix(self, params: np.ndarray) -> np.ndarray:
        return np.asarray(self.moment_cond(np.asarray(params, dtype=np.float64), self.x_)[0])

    def moment_mean(self, params: np.ndarray) -> np.ndarray:
        return np.asarray(self.moment_cond(np.asarray(params, dtype=np.float64), self.x_)[1])

    def jacobian_moment_cond(self, params: np.ndarray) -> np.ndarray:
        """``d gbar / d params`` at ``params``, shape (q, 2)."""
        try:
            if self.config.jacobian == "analytic" and self.jacobian_fn is not None:
                D = self.jacobian_fn(params, self.x_)
            else:
                D = self._numerical_jacobian(params)
        except InvalidInputError:
            raise
        except (ValueError, TypeError, RuntimeError) as e:
            raise InvalidInputError(
                f"could not differentiate moment conditions: {e}", stage="differentiation"
            ) from e
        D = np.asarray(D, dtype=np.float64)
        if not np.all(np.isfinite(D)):
            raise InvalidInputError("Jacobian is not finite", stage="differentiation")
        return D

    def hac_covariance(self, params: np.ndarray, stage: str = "covariance inversion") -> np.ndarray:
        lags = self.config.lags if self.config.lags is not None else default_lags(self.n_)
        return newey_west(self.moment_matrix(params), lags, stage=stage)

    def optimal_weighting_matrix(self, params: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """``(S^-1, S)`` with ``S`` the HAC covariance of the moments at ``params``."""
        S = self.hac_covariance(params, stage="weighting update")
        return invert(S, "HAC covariance", stage="weighting update"), S

    def _check_variance(self, theta: np.ndarray) -> None:
        if theta[1] < 0:
            logger.warning("negative variance estimate sigma2=%.6g", theta[1])

    def _store(self, theta, W, D, S, V) -> None:
        self.theta_ = theta.copy()
        self.W_ = None if W is None else np.array(W)
        self.Gamma_ = D
        self.Omega_ = S
        self.vtheta_ = V
        self.std_errors_ = standard_errors(V, self.n_)
        self.moment_mean_ = self.moment_mean(theta)
        self._check_variance(self.theta_)

    def fit_exact(self, x, start, combination=None) -> "GMMEstimator":
        """
        Exactly identified GMM: solve ``A @ gbar(p) = 0``.

        Args:
            x: Observed series.
            start: Initial guess for (mu, sigma2).
            combination: (2, q) matrix ``A`` combining the q moment conditions
                into 2 equations. Defaults to the identity, which requires
                q = 2.

        Raises:
            DimensionMismatchError: If ``A`` is not (2, q).
            NonConvergenceError: If the root finder fails.
            SingularMatrixError: If ``A @ D`` is singular.
        """
        self._prepare(x)
        start = self._start(start)
        q = self.moment_mean(start).shape[0]
        L = np.eye(q) if combination is None else np.atleast_2d(np.asarray(combination, dtype=np.float64))
        if L.shape != (len(PARAM_NAMES), q):
            raise DimensionMismatchError(
                f"combination matrix must be {len(PARAM_NAMES)}x{q}, got {L.shape}",
                stage="estimation",
            )

        theta, solver_message = self._root(L, start)
        theta = np.asarray(theta, dtype=np.float64)
        # the residual decides convergence; solvers may flag slow progress at an exact root
        residual = float(np.max(np.abs(L @ self.moment_mean(theta))))
        if not np.isfinite(residual) or residual > self.config.root_tol:
            raise NonConvergenceError(
                "root finder did not zero the moment conditions",
                stage="estimation",
                context={
                    "residual": residual,
                    "root_tol": self.config.root_tol,
                    "solver": solver_message or "converged",
                },
            )
        if solver_message:
            logger.debug(
                "root finder reported %r but residual %.3g is within tolerance",
                solver_message,
                residual,
            )
        logger.debug("exact GMM solution %s (residual %.3g)", theta, residual)

        D = self.jacobian_moment_cond(theta)
        S = self.hac_covariance(theta)
        self._store(theta, None, D, S, combination_vcov(D, L, S))
        self.combination_ = L
        self.j_stat_ = None
        self.j_pvalue_ = None
        return self

    def fit_weighted(self, x, start, weighting_matrix=None) -> "GMMEstimator":
        """
        GMM with a fixed weighting matrix: minimise ``1 + gbar' W gbar``.

        Stores the sandwich covariance in ``vtheta_`` and the covariance that
        would hold under efficient weighting in ``vtheta_efficient_``.
        """
        self._prepare(x)
        start = self._start(start)
        q = self.moment_mean(start).shape[0]
        W = np.eye(q) if weighting_matrix is None else np.asarray(weighting_matrix, dtype=np.float64)
        if q < 2 or W.shape != (q, q):
            raise DimensionMismatchError(
                f"weighting matrix must be {q}x{q}, got {W.shape}", stage="estimation"
            )

        theta = np.asarray(self._minimize(W, start), dtype=np.float64)
        D = self.jacobian_moment_cond(theta)
        S = self.hac_covariance(theta)
        self._store(theta, W, D, S, sandwich_vcov(D, W, S))
        self.vtheta_efficient_ = efficient_vcov(D, S)
        self.j_stat_ = None
        self.j_pvalue_ = None
        return self

    def fit_iterated(self, x, start, weighting_matrix=None) -> "GMMEstimator":
        """
        Iterated efficient GMM.

        Starts from ``weighting_matrix`` (default: inverse HAC covariance at
        ``start``) and alternates estimation and ``W = S^-1`` updates until the
        largest parameter change is below ``config.tol``.

        Raises:
            NonConvergenceError: If ``config.max_iter`` rounds are exceeded.
        """
        self._prepare(x)
        start = self._start(start)
        q = self.moment_mean(start).shape[0]
        if weighting_matrix is None:
            W0, _ = self.optimal_weighting_matrix(start)
        else:
            W0 = np.asarray(weighting_matrix, dtype=np.float64)
            if W0.shape != (q, q):
                raise DimensionMismatchError(
                    f"weighting matrix must be {q}x{q}, got {W0.shape}",
                    stage="weighting update",
                )

        controller = IteratedGMM(
            estimate=self._minimize,
            update_weight=self.optimal_weighting_matrix,
            jacobian=self.jacobian_moment_cond,
            tol=self.config.tol,
            max_iter=self.config.max_iter,
        )
        result = controller.run(start, W0)

        self._store(result.params, result.W, result.D, result.S, result.vcov)
        self.vtheta_sandwich_ = result.vcov_sandwich
        self.n_iter_ = result.n_iter
        self.history_ = result.history
        self.controller_ = controller
        self.result_ = result
        self._j_test(q)
        return self

    def _j_test(self, q: int) -> None:
        df = q - len(PARAM_NAMES)
        if df <= 0:
            self.j_stat_ = None
            self.j_pvalue_ = None
            return
        gbar = self.moment_mean_
        self.j_stat_ = float(self.n_ * gbar @ invert(self.Omega_, "S") @ gbar)
        self.j_pvalue_ = float(1 - scipy.stats.chi2.cdf(self.j_stat_, df))

    def summary(self, prec: int = 4, alpha: float = 0.05) -> pd.DataFrame:
        if self.theta_ is None or self.std_errors_ is None:
            raise ValueError(
                "Estimator not fitted yet. Make sure you call a `fit_*` method before `summary()`."
            )
        z = scipy.stats.norm.ppf(1 - alpha / 2)
        t = self.theta_ / self.std_errors_
        return pd.DataFrame(
            {
                "coef": np.round(self.theta_, prec),
                "std err": np.round(self.std_errors_, prec),
                "t": np.round(t, prec),
                "p-value": np.round(2 * (1 - scipy.stats.norm.cdf(np.abs(t))), prec),
                f"[{alpha / 2}": np.round(self.theta_ - z * self.std_errors_, prec),
                f"{1 - alpha / 2}]": np.round(self.theta_ + z * self.std_errors_, prec),
            },
            index=list(PARAM_NAMES),
        )


class GMMEstimatorScipy(GMMEstimator):
    """GMM estimator solved with scipy.optimize."""

    def _root(self, L: np.ndarray, start: np.ndarray) -> Tuple[np.ndarray, Optional[str]]:
        f = partial(combined_moments, x=self.x_, moment_cond=self.moment_cond, L=L)
        jac = None
        if self.config.jacobian == "analytic" and self.jacobian_fn is not None:
            jac = partial(combined_jacobian, x=self.x_, jacobian_fn=self.jacobian_fn, L=L)
        sol = scipy.optimize.root(f, x0=start, jac=jac, method=self.config.root_method)
        return sol.x, None if sol.success else str(sol.message)

    def _minimize(self, W: np.ndarray, start: np.ndarray) -> np.ndarray:
        fit_method = self.config.fit_method or "Nelder-Mead"
        options = {"disp": self.config.verbose}
        if fit_method == "Nelder-Mead":
            options.update(_NELDER_MEAD_OPTIONS)
        options.update(self.config.optimizer_options)

        objective = partial(gmm_loss, x=self.x_, moment_cond=self.moment_cond, W=W)
        result = scipy.optimize.minimize(objective, x0=start, method=fit_method, options=options)
        if not result.success:
            raise NonConvergenceError(
                f"optimizer failed: {result.message}",
                stage="estimation",
                context={"method": fit_method},
            )
        logger.debug("minimised loss %.10g at %s (%d evaluations)", result.fun, result.x, result.nfev)
        return result.x

    def _numerical_jacobian(self, params: np.ndarray) -> np.ndarray:
        return numerical_jacobian(self.moment_cond, params, self.x_, eps=self.config.eps)


class GMMEstimatorTorch(GMMEstimator):
    """GMM estimator solved with torchmin, differentiated with autograd."""

    def __init__(
        self,
        moment_cond: Union[str, MomentFn] = "2mom",
        config: Optional[GMMConfig] = None,
        backend: str = "torch",
        device: Optional[Union[torch.device, str]] = None,
    ):
        super().__init__(moment_cond, config, backend)
        if device is None:
            device = "cuda" if torch.cuda.is_available() else "cpu"
        self.device = torch.device(device) if isinstance(device, str) else device
        self.x_t_: Optional[torch.Tensor] = None

    def _prepare(self, x) -> None:
        super()._prepare(x)
        self.x_t_ = torch.tensor(self.x_, dtype=torch.float64, device=self.device)

    def _tensor(self, a: np.ndarray) -> torch.Tensor:
        return torch.tensor(np.asarray(a), dtype=torch.float64, device=self.device)

    def _run_torchmin(self, objective, start: np.ndarray):
        fit_method = self.config.fit_method or "newton-exact"
        return torchmin.minimize(
            objective,
            self._tensor(start),
            method=fit_method,
            tol=1e-8,
            options=self.config.optimizer_options or None,
            disp=int(self.config.verbose),
        )

    def _root(self, L: np.ndarray, start: np.ndarray) -> Tuple[np.ndarray, Optional[str]]:
        f = partial(combined_moments, x=self.x_t_, moment_cond=self.moment_cond, L=self._tensor(L))
        result = self._run_torchmin(lambda p: 0.5 * (f(p) ** 2).sum(), start)
        return result.x.detach().cpu().numpy(), None if result.success else str(result.message)

    def _minimize(self, W: np.ndarray, start: np.ndarray) -> np.ndarray:
        objective = partial(gmm_loss, x=self.x_t_, moment_cond=self.moment_cond, W=self._tensor(W))
        result = self._run_torchmin(objective, start)
        if not result.success:
            raise NonConvergenceError(
                f"optimizer failed: {result.message}",
                stage="estimation",
                context={"method": self.config.fit_method or "newton-exact"},
            )
        return result.x.detach().cpu().numpy()

    def _numerical_jacobian(self, params: np.ndarray) -> np.ndarray:
        return autograd_jacobian(self.moment_cond, self._tensor(params), self.x_t_)


_BACKENDS = {
    "scipy": GMMEstimatorScipy,
    "torch": GMMEstimatorTorch,
}

_BACKEND_KWARGS = {
    "scipy": set(),
    "torch": {"device"},
}
