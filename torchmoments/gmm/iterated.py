"""
Iterated efficient GMM.

The controller alternates between minimising the GMM loss under the current
weighting matrix and replacing that matrix with the inverse HAC covariance of
the new moments, until the largest parameter change falls below ``tol``.
Each round produces a fresh `IterationState`; nothing is mutated in place.
"""

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, Optional, Tuple

import numpy as np

from ..exceptions import NonConvergenceError
from ..variance import efficient_vcov, sandwich_vcov

logger = logging.getLogger(__name__)

EstimateFn = Callable[[np.ndarray, np.ndarray], np.ndarray]
WeightUpdateFn = Callable[[np.ndarray], Tuple[np.ndarray, np.ndarray]]
JacobianFn = Callable[[np.ndarray], np.ndarray]


class Status(str, Enum):
    INITIALIZING = "initializing"
    ESTIMATING = "estimating"
    UPDATING_WEIGHT = "updating-weight"
    CONVERGED = "converged"
    DIVERGED = "diverged"


@dataclass(frozen=True)
class IterationState:
    """
    Snapshot of the iterated GMM loop after ``iteration`` estimation rounds.

    Attributes:
        params: Current parameter estimate.
        W: Weighting matrix for the next estimation round.
        S: HAC covariance behind ``W`` (None before the first update).
        W_used: Weighting matrix that produced ``params``.
        iteration: Completed estimation rounds.
        delta: ``max |params - previous params|``.
        status: Position in the state machine.
    """

    params: np.ndarray
    W: np.ndarray
    S: Optional[np.ndarray] = None
    W_used: Optional[np.ndarray] = None
    iteration: int = 0
    delta: float = np.inf
    status: Status = Status.INITIALIZING


@dataclass(frozen=True)
class IteratedGMMResult:
    params: np.ndarray
    W: np.ndarray
    S: np.ndarray
    D: np.ndarray
    vcov: np.ndarray
    vcov_sandwich: np.ndarray
    n_iter: int
    state: IterationState
    history: List[IterationState]


class IteratedGMM:
    """
    Fixed-point loop over (parameters, weighting matrix).

    Args:
        estimate: ``estimate(W, params0) -> params1``, the loss minimiser.
        update_weight: ``update_weight(params) -> (W, S)`` with ``W = S^-1``.
        jacobian: ``jacobian(params) -> D`` used for the final covariances.
        tol: Convergence threshold on the largest absolute parameter change.
        max_iter: Estimation rounds allowed before raising
            `NonConvergenceError`.
    """

    def __init__(
        self,
        estimate: EstimateFn,
        update_weight: WeightUpdateFn,
        jacobian: JacobianFn,
        tol: float = 1e-3,
        max_iter: int = 50,
    ):
        self.estimate = estimate
        self.update_weight = update_weight
        self.jacobian = jacobian
        self.tol = tol
        self.max_iter = max_iter

    def initial_state(self, params0: np.ndarray, W0: np.ndarray) -> IterationState:
        return IterationState(
            params=np.array(params0, dtype=np.float64),
            W=np.array(W0, dtype=np.float64),
        )

    def estimate_step(self, state: IterationState) -> IterationState:
        params = np.asarray(self.estimate(state.W, state.params), dtype=np.float64)
        return IterationState(
            params=params,
            W=state.W,
            S=state.S,
            W_used=state.W,
            iteration=state.iteration + 1,
            delta=float(np.max(np.abs(params - state.params))),
            status=Status.UPDATING_WEIGHT,
        )

    def update_step(self, state: IterationState) -> IterationState:
        W, S = self.update_weight(state.params)
        # the seed weighting matrix is never trusted, so at least two rounds
        converged = state.delta <= self.tol and state.iteration >= 2
        return replace(
            state,
            W=W,
            S=S,
            status=Status.CONVERGED if converged else Status.ESTIMATING,
        )

    def step(self, state: IterationState) -> IterationState:
        """One estimation round followed by one weighting update."""
        return self.update_step(self.estimate_step(state))

    def run(self, params0: np.ndarray, W0: np.ndarray) -> IteratedGMMResult:
        state = self.initial_state(params0, W0)
        history = [state]
        while state.status is not Status.CONVERGED:
            if state.iteration >= self.max_iter:
                raise NonConvergenceError(
                    f"iterated GMM did not converge in {self.max_iter} iterations",
                    stage="weighting update",
                    context={"delta": state.delta, "tol": self.tol},
                    state=replace(state, status=Status.DIVERGED),
                )
            state = self.step(state)
            history.append(state)
            logger.debug(
                "iteration %d: params=%s delta=%.3g",
                state.iteration,
                state.params,
                state.delta,
            )

        logger.info(
            "iterated GMM converged after %d iterations (delta=%.3g)",
            state.iteration,
            state.delta,
        )
        D = self.jacobian(state.params)
        return IteratedGMMResult(
            params=state.params.copy(),
            W=state.W.copy(),
            S=state.S.copy(),
            D=D,
            vcov=efficient_vcov(D, state.S),
            vcov_sandwich=sandwich_vcov(D, state.W_used, state.S),
            n_iter=state.iteration,
            state=state,
            history=history,
        )
