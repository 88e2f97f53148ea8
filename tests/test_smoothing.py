import logging

import numpy as np
import pytest

from iactunfold import SmoothingError, Unfolder
from iactunfold.constants import SMOOTHING_PARAMETER_NAMES
from iactunfold.unfolding_helpers import (
    column_sums_valid,
    smoothing_model,
    smoothing_start_values,
)

TRUE_PARAMETERS = (0.3, 0.02, 0.0, 0.8, 0.05, 0.0)
N_BINS = 15


@pytest.fixture
def gaussian_counts():
    """Response histogram generated from the Gaussian model, 1e6 events per true bin"""
    return smoothing_model(TRUE_PARAMETERS, N_BINS, N_BINS) * 1e6


@pytest.fixture
def unfolder(gaussian_counts):
    a = np.full(N_BINS, 100.0)
    return Unfolder(a, np.diag(a), gaussian_counts)


def test_model_columns_normalized():
    model = smoothing_model(TRUE_PARAMETERS, N_BINS, 12)
    assert model.shape == (N_BINS, 12)
    assert column_sums_valid(model)
    assert np.all(model >= 0)


def test_model_rejects_non_positive_rms():
    assert smoothing_model((0.0, 0.0, 0.0, 0.5, -0.1, 0.0), N_BINS, N_BINS) is None


def test_model_mean_follows_diagonal():
    """With a zero offset the mean of column j sits at the bin centre j + 0.5"""
    model = smoothing_model((0.0, 0.0, 0.0, 0.5, 0.0, 0.0), 20, 20)
    centres = np.arange(20) + 0.5
    mean = centres @ model
    np.testing.assert_allclose(mean[5:15], centres[5:15], atol=1e-6)


def test_start_values_close(gaussian_counts):
    response = gaussian_counts / gaussian_counts.sum(axis=0)
    start = smoothing_start_values(response)
    assert start[0] == pytest.approx(TRUE_PARAMETERS[0], abs=0.3)
    assert start[3] == pytest.approx(TRUE_PARAMETERS[3], abs=0.5)
    assert start[2] == 0.0
    assert start[5] == 0.0


def test_start_values_skip_truncated_columns(gaussian_counts):
    """Columns cut by the matrix border do not bias the mean regression"""
    response = gaussian_counts / gaussian_counts.sum(axis=0)
    start = smoothing_start_values(response)
    assert start[0] == pytest.approx(TRUE_PARAMETERS[0], abs=0.05)
    assert start[1] == pytest.approx(TRUE_PARAMETERS[1], abs=0.01)
    assert start[3] == pytest.approx(TRUE_PARAMETERS[3], abs=0.1)


def test_start_values_all_columns_truncated():
    """A matrix too narrow for any contained column falls back to all columns"""
    response = smoothing_model((0.0, 0.0, 0.0, 1.5, 0.0, 0.0), 4, 4)
    start = smoothing_start_values(response)
    assert np.all(np.isfinite(start))
    assert start[3] > 0


def test_fit_recovers_parameters(unfolder):
    """The fit to a noise-free model histogram returns the generating parameters"""
    result = unfolder.smooth_response()

    assert result.converged, result.message
    assert list(result.parameters) == list(SMOOTHING_PARAMETER_NAMES)
    fitted = np.array(list(result.parameters.values()))
    np.testing.assert_allclose(fitted, TRUE_PARAMETERS, atol=1e-3)
    assert result.chi_square == pytest.approx(0.0, abs=1e-3)
    assert result.ndf == result.n_points - 6
    assert result.covariance.shape == (6, 6)
    assert np.all(result.response_err2 >= 0)


def test_fit_replaces_response(unfolder):
    gram_before = unfolder.gram
    result = unfolder.smooth_response()

    assert unfolder.is_smoothed
    assert column_sums_valid(unfolder.response)
    np.testing.assert_allclose(unfolder.response, result.response, atol=1e-12)
    assert unfolder.gram is not gram_before


def test_fit_without_apply_keeps_response(unfolder):
    raw = unfolder.response.copy()
    result = unfolder.smooth_response(apply=False)

    assert result.converged
    np.testing.assert_array_equal(unfolder.response, raw)
    assert not unfolder.is_smoothed


def test_use_raw_response(unfolder):
    unfolder.smooth_response()
    gram_smoothed = unfolder.gram
    unfolder.use_raw_response()

    np.testing.assert_array_equal(unfolder.response, unfolder.response_raw)
    assert unfolder.gram is not gram_smoothed


@pytest.fixture
def noisy_unfolder(gaussian_counts):
    """Every cell has a relative error far above the fit threshold"""
    a = np.full(N_BINS, 100.0)
    return Unfolder(a, np.diag(a), gaussian_counts, response_errors=gaussian_counts * 10.0)


def test_failed_fit_is_not_fatal(noisy_unfolder, caplog):
    raw = noisy_unfolder.response.copy()
    with caplog.at_level(logging.WARNING, logger="iactunfold.unfolder"):
        result = noisy_unfolder.smooth_response()

    assert not result.converged
    assert result.n_points == 0
    np.testing.assert_array_equal(noisy_unfolder.response, raw)
    assert "smoothing failed" in caplog.text


def test_failed_fit_strict(noisy_unfolder):
    with pytest.raises(SmoothingError):
        noisy_unfolder.smooth_response(strict=True)
