import numpy as np
import pytest


@pytest.fixture
def rng():
    return np.random.default_rng(0)


@pytest.fixture
def gaussian_2d():
    """Prior N(0, 9 I), correlated Gaussian likelihood around (1, -0.5)."""
    m0 = np.zeros(2)
    S0 = 9.0 * np.eye(2)
    y = np.array([1.0, -0.5])
    Sy = np.array([[1.0, 0.4], [0.4, 0.5]])
    return m0, S0, y, Sy
