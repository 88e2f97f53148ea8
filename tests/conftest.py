import numpy as np
import pytest

from iactunfold import Unfolder


def banded_response(n: int, weights) -> np.ndarray:
    """Square response with ``weights`` centred on the diagonal (not normalized)."""
    weights = np.asarray(weights, dtype=float)
    half = len(weights) // 2
    M = np.zeros((n, n))
    for j in range(n):
        for k, w in enumerate(weights):
            i = j + k - half
            if 0 <= i < n:
                M[i, j] = w
    return M


@pytest.fixture
def identity_unfolder():
    """Identity response, 10 bins of 10 counts, unit covariance"""
    n = 10
    return Unfolder(np.full(n, 10.0), np.eye(n), np.eye(n))


@pytest.fixture
def triangular_response():
    """Triangular kernel of half-width 2 on 20 bins"""
    return banded_response(20, [1.0, 2.0, 3.0, 2.0, 1.0])


@pytest.fixture
def smooth_problem():
    """Noise-free smooth bump folded with a triangular kernel"""
    n = 10
    j = np.arange(n)
    b_true = 100.0 * np.exp(-0.5 * (j - 4.5) ** 2 / 4.0) + 10.0
    M = banded_response(n, [1.0, 2.0, 1.0])
    M = M / M.sum(axis=0)
    a = M @ b_true
    return a, np.diag(a), M, b_true
