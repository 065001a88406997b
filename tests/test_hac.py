"""
Tests for the Newey-West HAC covariance
"""
import numpy as np
import pytest

from torchmoments import InvalidInputError
from torchmoments.hac import default_lags, newey_west


def _loop_newey_west(moments, max_lags):
    n, k = moments.shape
    centered = moments - moments.mean(axis=0)
    Omega = centered.T @ centered / n
    for lag in range(1, max_lags + 1):
        weight = 1 - lag / (max_lags + 1)
        gamma_lag = np.zeros((k, k))
        for t in range(lag, n):
            gamma_lag += np.outer(centered[t], centered[t - lag])
        gamma_lag /= n
        Omega += weight * (gamma_lag + gamma_lag.T)
    return Omega


def test_lag_zero_is_sample_covariance(moment_matrix):
    S = newey_west(moment_matrix, 0)
    np.testing.assert_allclose(S, np.cov(moment_matrix.T, bias=True), rtol=1e-12)


@pytest.mark.parametrize("lags", [1, 2, 5])
def test_matches_explicit_sum(moment_matrix, lags):
    np.testing.assert_allclose(
        newey_west(moment_matrix, lags), _loop_newey_west(moment_matrix, lags), rtol=1e-10
    )


def test_output_is_symmetric(moment_matrix):
    S = newey_west(moment_matrix, 3)
    assert np.array_equal(S, S.T)


def test_serial_correlation_inflates_variance(ar_series):
    g = (ar_series - ar_series.mean())[:, None]
    assert newey_west(g, 4)[0, 0] > newey_west(g, 0)[0, 0]


@pytest.mark.parametrize("lags", [-1, 200, 500])
def test_invalid_lags_raise(moment_matrix, lags):
    with pytest.raises(InvalidInputError) as exc:
        newey_west(moment_matrix, lags)
    assert exc.value.stage == "weighting update"


def test_error_stage_follows_caller(moment_matrix):
    with pytest.raises(InvalidInputError) as exc:
        newey_west(moment_matrix, -1, stage="covariance inversion")
    assert exc.value.stage == "covariance inversion"


def test_one_dimensional_input_raises():
    with pytest.raises(InvalidInputError):
        newey_west(np.ones(10), 0)


def test_default_lags():
    assert default_lags(100) == 4
    assert default_lags(388) == 5
