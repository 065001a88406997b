"""
Exception hierarchy for torchmoments.

Every error raised by the estimation core derives from `GMMError` and records
the stage that failed (moment evaluation, differentiation, estimation,
weighting update or covariance inversion). The concrete classes also derive
from the builtin exception a caller would naturally catch, so
`except ValueError` keeps working for bad inputs.
"""

from typing import Any, Dict, Optional

import numpy as np


class GMMError(Exception):
    """Base class for all torchmoments errors."""

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.context = context or {}

    def __str__(self) -> str:
        msg = self.message
        if self.stage:
            msg = f"[{self.stage}] {msg}"
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            msg += f" (Context: {ctx})"
        return msg


class InvalidInputError(GMMError, ValueError):
    """Wrong parameter arity, too short a series, or an invalid lag."""


class DimensionMismatchError(GMMError, ValueError):
    """Weighting or combination matrix incompatible with the moment count."""


class SingularMatrixError(GMMError, np.linalg.LinAlgError):
    """A Jacobian, covariance or sandwich term could not be inverted."""


class NonConvergenceError(GMMError, RuntimeError):
    """
    The solver, optimizer or iterated weighting loop did not converge.

    ``state`` holds the last iterate when the failure comes from the iterated
    weighting loop.
    """

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        state: Any = None,
    ):
        super().__init__(message, stage=stage, context=context)
        self.state = state
