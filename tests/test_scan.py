import logging

import numpy as np
import pytest

from iactunfold import ConvergenceError, ScanPoint, UnfoldingError
from iactunfold import unfolder as unfolder_module
from iactunfold.unfolding_helpers import (
    alternative_indices,
    chi2_probability,
    select_best_index,
    strength_grid,
)


def make_point(strength, covariance_trace, converged=True, chi_square=1.0):
    return ScanPoint(
        strength=strength,
        converged=converged,
        chi_square=chi_square,
        covariance_trace=covariance_trace,
    )


class TestStrengthGrid:
    """Log-spaced regularization strengths"""

    def test_default_grid(self):
        grid = strength_grid(30, 1e-5, 1e5)

        assert len(grid) == 30
        assert grid[0] == pytest.approx(1e-5)
        # upper bound is not part of the grid
        assert grid[-1] == pytest.approx(10 ** (-5 + 29 * 10 / 30))
        np.testing.assert_allclose(grid[1:] / grid[:-1], 10 ** (1 / 3))

    def test_initial_weight_scales_grid(self):
        np.testing.assert_allclose(
            strength_grid(5, 1e-2, 1e2, 3.0), 3.0 * strength_grid(5, 1e-2, 1e2)
        )

    @pytest.mark.parametrize(
        "n_points, lo, hi, w0",
        [(0, 1e-5, 1e5, 1.0), (30, 0.0, 1e5, 1.0), (30, 1e5, 1e-5, 1.0), (30, 1e-5, 1e5, -1.0)],
    )
    def test_invalid_grid(self, n_points, lo, hi, w0):
        with pytest.raises(ValueError):
            strength_grid(n_points, lo, hi, w0)


class TestSelection:
    """Best-strength selection by the covariance trace ratio"""

    def test_closest_ratio_wins(self):
        points = [make_point(1.0, 2.0), make_point(2.0, 9.0), make_point(3.0, 30.0)]
        assert select_best_index(points, 10.0) == 1

    def test_ties_go_to_lowest_index(self):
        points = [make_point(1.0, 4.0), make_point(2.0, 10.0), make_point(3.0, 6.0)]
        assert select_best_index(points, 8.0) == 1
        points = [make_point(1.0, 6.0), make_point(2.0, 10.0)]
        assert select_best_index(points, 8.0) == 0

    def test_failed_points_excluded(self):
        points = [
            make_point(1.0, 10.0, converged=False),
            make_point(2.0, 15.0),
            ScanPoint.failed(3.0),
        ]
        assert select_best_index(points, 10.0) == 1

    def test_nothing_converged(self):
        points = [ScanPoint.failed(1.0), ScanPoint.failed(2.0)]
        assert select_best_index(points, 10.0) == -1

    def test_selection_idempotent(self, identity_unfolder):
        """Re-running the selection on a finished scan gives the same index"""
        scan = identity_unfolder.unfold_schmelling().scan
        assert scan.select() == scan.best_index
        assert scan.select() == scan.select()

    def test_alternatives(self):
        points = [
            make_point(1.0, 1.0, chi_square=50.0),
            make_point(2.0, 2.0, chi_square=12.0),
            make_point(3.0, 10.0, chi_square=5.0),
            make_point(4.0, 11.0, chi_square=1.0),
            ScanPoint.failed(5.0),
        ]
        alt = alternative_indices(points, n_significant=6, rank=1)

        assert alt["chi_square_significant"] == 2
        assert alt["chi_square_rank"] == 3
        assert alt["steepest_covariance_growth"] == 2
        assert alt["least_squares"] == 3
        assert alt["reference_distance"] == -1

    def test_alternatives_without_rank(self):
        points = [make_point(1.0, 1.0, chi_square=3.0), make_point(2.0, 2.0, chi_square=1.0)]
        alt = alternative_indices(points, n_significant=3, rank=None)

        assert alt["chi_square_rank"] == -1
        assert alt["chi_square_significant"] == 0

    def test_scan_does_not_compute_gram(self, identity_unfolder):
        """Solvers without eigen-decomposition leave the Gram system uncomputed"""
        result = identity_unfolder.unfold_schmelling()

        assert identity_unfolder._gram is None
        assert result.scan.alternatives["chi_square_rank"] == -1

    def test_scan_uses_cached_rank(self, identity_unfolder):
        result = identity_unfolder.unfold_bertero()
        assert identity_unfolder._gram is not None
        assert result.scan.alternatives["chi_square_rank"] >= 0


class TestScanResult:
    """Scan container and its table export"""

    def test_to_frame(self, identity_unfolder):
        scan = identity_unfolder.unfold_bertero().scan
        df = scan.to_frame()

        assert len(df) == len(scan) == 30
        for column in ("strength", "chi_square", "covariance_trace", "covariance_ratio", "selected"):
            assert column in df.columns
        assert df["selected"].sum() == 1
        assert bool(df.loc[scan.best_index, "selected"])
        np.testing.assert_allclose(df["strength"], scan.strengths)

    def test_result_frame(self, identity_unfolder):
        result = identity_unfolder.unfold_bertero()
        df = result.to_frame()
        assert list(df.columns) == ["bin", "value", "error"]
        np.testing.assert_allclose(df["error"], np.ones(10))


class TestGlobalFailure:
    """No converged strength aborts the run"""

    def test_no_point_converged(self, identity_unfolder, monkeypatch, caplog):
        def always_fails(strength, *args, **kwargs):
            raise ConvergenceError("Bertero", strength, "forced")

        monkeypatch.setattr(unfolder_module, "bertero_point", always_fails)
        with caplog.at_level(logging.WARNING):
            with pytest.raises(UnfoldingError, match="no regularization strength converged"):
                identity_unfolder.unfold_bertero()

        assert caplog.text.count("forced") == 30
        assert identity_unfolder.list_results() == []

    def test_partial_failure_is_skipped(self, identity_unfolder, monkeypatch):
        real_point = unfolder_module.bertero_point

        def fails_first(strength, *args, **kwargs):
            if strength < 2e-5:
                raise ConvergenceError("Bertero", strength, "forced")
            return real_point(strength, *args, **kwargs)

        monkeypatch.setattr(unfolder_module, "bertero_point", fails_first)
        result = identity_unfolder.unfold_bertero()

        assert not result.scan.points[0].converged
        assert result.best_index == 1


class TestProbability:
    def test_zero_degrees_of_freedom(self):
        assert chi2_probability(3.0, 0.4) == 0.0

    def test_rounds_ndf(self):
        assert chi2_probability(0.0, 2.6) == pytest.approx(1.0)
        assert chi2_probability(2.0, 1.6) == pytest.approx(np.exp(-1.0))


class TestHistory:
    """Results are kept under timestamped keys"""

    def test_save_and_get(self, identity_unfolder):
        first = identity_unfolder.unfold_bertero()
        second = identity_unfolder.unfold_schmelling()
        keys = identity_unfolder.list_results()

        assert len(keys) == 2
        assert identity_unfolder.get_result() is second
        assert identity_unfolder.get_result(first.extras["saved_key"]) is first
        assert first.extras["saved_key"].endswith("_bertero")
        assert identity_unfolder.get_result("missing") is None

    def test_same_method_twice(self, identity_unfolder):
        identity_unfolder.unfold_bertero()
        identity_unfolder.unfold_bertero()
        assert len(identity_unfolder.list_results()) == 2

    def test_clear(self, identity_unfolder):
        identity_unfolder.unfold_bertero()
        identity_unfolder.clear_results()
        assert identity_unfolder.list_results() == []
        assert identity_unfolder.get_result() is None
