"""
Tests for iterated efficient GMM
"""
import numpy as np
import pytest

from torchmoments import GMMConfig, GMMEstimator, InvalidInputError, NonConvergenceError
from torchmoments.gmm import IteratedGMM, IterationState, Status


def _fixed_point_controller(target, tol=1e-3, max_iter=10):
    return IteratedGMM(
        estimate=lambda W, params: np.array(target, dtype=float),
        update_weight=lambda params: (np.eye(2), np.eye(2)),
        jacobian=lambda params: -np.eye(2),
        tol=tol,
        max_iter=max_iter,
    )


class TestController:
    def test_at_least_two_iterations(self):
        controller = _fixed_point_controller([1.0, 2.0])
        result = controller.run(np.array([1.0, 2.0]), np.eye(2))
        assert result.n_iter == 2
        assert result.history[1].delta == 0.0
        assert result.history[1].status is Status.ESTIMATING
        assert result.state.status is Status.CONVERGED
        np.testing.assert_allclose(result.vcov, np.eye(2))
        np.testing.assert_allclose(result.vcov_sandwich, np.eye(2))

    def test_step_returns_fresh_state(self):
        controller = _fixed_point_controller([1.0, 2.0])
        state = controller.initial_state(np.array([0.0, 0.0]), 2 * np.eye(2))
        new = controller.step(state)
        assert new is not state
        np.testing.assert_array_equal(state.params, [0.0, 0.0])
        assert state.iteration == 0
        assert state.status is Status.INITIALIZING
        assert new.iteration == 1
        assert new.delta == 2.0
        np.testing.assert_array_equal(new.W_used, 2 * np.eye(2))

    def test_estimate_then_update(self):
        controller = _fixed_point_controller([1.0, 2.0])
        state = controller.initial_state(np.array([0.0, 0.0]), 2 * np.eye(2))
        estimated = controller.estimate_step(state)
        assert estimated.status is Status.UPDATING_WEIGHT
        np.testing.assert_array_equal(estimated.W, 2 * np.eye(2))
        updated = controller.update_step(estimated)
        np.testing.assert_array_equal(updated.W, np.eye(2))

    def test_state_is_frozen(self):
        state = IterationState(params=np.zeros(2), W=np.eye(2))
        with pytest.raises(AttributeError):
            state.iteration = 3

    def test_iteration_cap(self):
        targets = iter([[float(i), 0.0] for i in range(1, 100)])
        controller = IteratedGMM(
            estimate=lambda W, params: np.array(next(targets)),
            update_weight=lambda params: (np.eye(2), np.eye(2)),
            jacobian=lambda params: -np.eye(2),
            tol=1e-3,
            max_iter=5,
        )
        with pytest.raises(NonConvergenceError) as exc:
            controller.run(np.zeros(2), np.eye(2))
        assert exc.value.stage == "weighting update"
        assert exc.value.state.status is Status.DIVERGED
        assert exc.value.state.iteration == 5


class TestIteratedEstimator:
    @pytest.fixture
    def fitted(self, long_series):
        start = GMMEstimator("2mom").fit_exact(long_series, [0.0, 1.0]).theta_
        est = GMMEstimator("4mom", GMMConfig(lags=1, tol=1e-3))
        return est.fit_iterated(long_series, start)

    def test_converges(self, fitted, long_series):
        assert 2 <= fitted.n_iter_ <= 10
        assert fitted.history_[-1].status is Status.CONVERGED
        assert fitted.history_[-1].delta <= 1e-3
        assert abs(fitted.theta_[0] - long_series.mean()) < 0.5
        assert fitted.theta_[1] == pytest.approx(long_series.var(), rel=0.1)

    def test_idempotent_at_convergence(self, fitted):
        again = fitted.controller_.step(fitted.result_.state)
        assert again.delta <= fitted.config.tol

    def test_final_weight_is_inverse_hac(self, fitted):
        np.testing.assert_allclose(fitted.W_ @ fitted.Omega_, np.eye(4), atol=1e-8)
        np.testing.assert_allclose(fitted.Omega_, fitted.hac_covariance(fitted.theta_))

    def test_covariances(self, fitted):
        for V in (fitted.vtheta_, fitted.vtheta_sandwich_):
            assert np.array_equal(V, V.T)
            assert np.all(np.linalg.eigvalsh(V) > 0)
        np.testing.assert_allclose(fitted.vtheta_sandwich_, fitted.vtheta_, rtol=0.05)

    def test_j_statistic(self, fitted):
        assert fitted.j_stat_ >= 0
        assert 0.0 <= fitted.j_pvalue_ <= 1.0

    def test_iteration_cap_on_estimator(self, long_series):
        est = GMMEstimator("4mom", GMMConfig(max_iter=2, tol=1e-12))
        with pytest.raises(NonConvergenceError) as exc:
            est.fit_iterated(long_series, [0.5, 16.0])
        assert exc.value.state.iteration == 2
        assert exc.value.state.delta > 1e-12

    def test_single_round_cap_is_rejected(self):
        """Convergence needs two rounds, so max_iter=1 could never succeed."""
        with pytest.raises(InvalidInputError, match="max_iter"):
            GMMEstimator("4mom", GMMConfig(max_iter=1))

    def test_user_supplied_seed_weight(self, long_series):
        est = GMMEstimator("4mom", GMMConfig(lags=1))
        est.fit_iterated(long_series, [0.5, 16.0], weighting_matrix=np.diag([1.0, 1.0, 0.0, 0.0]))
        assert est.n_iter_ >= 2
        assert np.all(np.isfinite(est.std_errors_))
