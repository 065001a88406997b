from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .exceptions import InvalidInputError

_JACOBIAN_MODES = ("analytic", "numerical")


@dataclass
class GMMConfig:
    """
    Settings shared by every GMM fit.

    Attributes:
        lags: Number of Newey-West lags in the HAC covariance. ``0`` gives the
            iid covariance; ``None`` picks ``floor(4 (T/100)^(2/9))``.
        tol: Convergence tolerance of the iterated weighting loop, measured as
            the largest absolute parameter change between iterations.
        max_iter: Cap on iterated weighting rounds before giving up. At least 2,
            since convergence needs two completed rounds.
        fit_method: Optimizer used by the loss minimizer. ``None`` selects the
            backend default ("Nelder-Mead" for scipy, "newton-exact" for torch).
        root_method: ``scipy.optimize.root`` method for exactly identified fits.
        root_tol: Largest admissible ``|L @ gbar|`` at an exact solution.
        jacobian: "analytic" to use the closed form when one exists,
            "numerical" to differentiate the moment means.
        eps: Step size of the central finite difference Jacobian.
        optimizer_options: Extra options forwarded to the optimizer.
        verbose: Forwarded as ``disp`` to the underlying routines.
    """

    lags: Optional[int] = 0
    tol: float = 1e-3
    max_iter: int = 50
    fit_method: Optional[str] = None
    root_method: str = "hybr"
    root_tol: float = 1e-6
    jacobian: str = "analytic"
    eps: float = 1e-6
    optimizer_options: Dict[str, Any] = field(default_factory=dict)
    verbose: bool = False

    def validate(self) -> "GMMConfig":
        if self.lags is not None and self.lags < 0:
            raise InvalidInputError(f"lags must be non-negative, got {self.lags}")
        if self.tol <= 0:
            raise InvalidInputError(f"tol must be positive, got {self.tol}")
        if self.max_iter < 2:
            raise InvalidInputError(f"max_iter must be at least 2, got {self.max_iter}")
        if self.root_tol <= 0 or self.eps <= 0:
            raise InvalidInputError("root_tol and eps must be positive")
        if self.jacobian not in _JACOBIAN_MODES:
            raise InvalidInputError(
                f"jacobian must be one of {_JACOBIAN_MODES}, got {self.jacobian!r}"
            )
        return self
