"""
Pytest configuration and fixtures for torchmoments tests
"""
import numpy as np
import pytest


@pytest.fixture
def returns():
    """T=388 series rescaled to sample mean 0.602 and variance 21.142"""
    rng = np.random.default_rng(1234)
    z = rng.standard_normal(388)
    z = (z - z.mean()) / z.std()
    return 0.602 + np.sqrt(21.142) * z


@pytest.fixture
def long_series():
    """Long iid normal series for the iterated estimator"""
    rng = np.random.default_rng(42)
    return 0.5 + 4.0 * rng.standard_normal(2000)


@pytest.fixture
def ar_series():
    """AR(1) series with serially correlated moments"""
    rng = np.random.default_rng(7)
    n = 500
    e = rng.standard_normal(n)
    x = np.zeros(n)
    for t in range(1, n):
        x[t] = 0.6 * x[t - 1] + e[t]
    return x


@pytest.fixture
def moment_matrix():
    """Random (T, 3) moment matrix"""
    rng = np.random.default_rng(0)
    return rng.standard_normal((200, 3))
