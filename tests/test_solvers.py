import numpy as np
import pytest

from iactunfold import Normalization, Unfolder
from iactunfold.constants import N_SCAN_POINTS, STRENGTH_MAX, STRENGTH_MIN
from iactunfold.unfolding_helpers import strength_grid

from conftest import banded_response

LEAST_REGULARIZED = strength_grid(N_SCAN_POINTS, STRENGTH_MIN, STRENGTH_MAX)[-1]


class TestIdentityScenario:
    """Identity response, a = 10 in every bin, unit covariance"""

    @pytest.mark.parametrize("method", ["tikhonov", "bertero", "schmelling"])
    def test_recovers_measured(self, identity_unfolder, method):
        result = getattr(identity_unfolder, f"unfold_{method}")()

        assert result.values == pytest.approx(np.full(10, 10.0), rel=1e-3)
        assert result.chi_square == pytest.approx(0.0, abs=1e-6)
        assert result.ndf == pytest.approx(10.0, abs=1e-3)
        assert result.chi2_contributions.shape == (10,)
        assert result.covariance.shape == (10, 10)
        assert result.method.lower() == method

    def test_bertero_selects_first_point(self, identity_unfolder):
        """Covariance traces tie at every strength; the lowest index wins"""
        result = identity_unfolder.unfold_bertero()

        assert result.best_index == 0
        assert result.strength == pytest.approx(STRENGTH_MIN)
        np.testing.assert_allclose(result.covariance, np.eye(10), atol=1e-12)

    def test_schmelling_rank_counts_normalization(self, identity_unfolder):
        """Na - tr(Cov H^-1) + 1 tends to Na for weak regularization"""
        solution = identity_unfolder.evaluate_schmelling(LEAST_REGULARIZED)
        w = LEAST_REGULARIZED
        assert solution.point.effective_rank == pytest.approx(10.0 - 9.0 / (1.0 + 10.0 * w))
        assert solution.extras["normalization"] == pytest.approx(100.0)


class TestSpikeScenario:
    """Single spike folded with a triangular kernel and 5% noise"""

    @pytest.fixture
    def spike_unfolder(self, triangular_response):
        M = triangular_response / triangular_response.sum(axis=0)
        b_true = np.zeros(20)
        b_true[10] = 1000.0
        rng = np.random.default_rng(42)
        a_true = M @ b_true
        a = a_true + rng.normal(0.0, 0.05 * a_true)
        cov = np.diag(np.maximum((0.05 * a) ** 2, 1.0))
        return Unfolder(a, cov, triangular_response)

    @pytest.mark.parametrize("method", ["tikhonov", "bertero", "schmelling"])
    def test_spike_recovery(self, spike_unfolder, method):
        result = getattr(spike_unfolder, f"unfold_{method}")()

        assert abs(int(np.argmax(result.values)) - 10) <= 1
        assert result.integral == pytest.approx(1000.0, rel=0.1)


class TestLeastRegularizedLimit:
    """Identity response: the least regularized point reproduces the data"""

    @pytest.fixture
    def unfolder(self):
        a = np.linspace(5.0, 15.0, 10)
        return Unfolder(a, np.diag(a), np.eye(10))

    def test_bertero(self, unfolder):
        solution = unfolder.evaluate_bertero(LEAST_REGULARIZED)
        assert solution.values == pytest.approx(unfolder.measured, rel=1e-9)

    def test_schmelling(self, unfolder):
        solution = unfolder.evaluate_schmelling(LEAST_REGULARIZED)
        assert solution.values == pytest.approx(unfolder.measured, rel=1e-2)

    def test_tikhonov(self, unfolder):
        solution = unfolder.evaluate_tikhonov(LEAST_REGULARIZED)
        assert solution.values == pytest.approx(unfolder.measured, rel=1e-2)


class TestBertero:
    """Truncated-eigenspectrum iterative solution"""

    @pytest.fixture
    def well_conditioned(self):
        M = banded_response(8, [0.1, 0.8, 0.1])
        b_true = np.array([20.0, 40.0, 60.0, 80.0, 70.0, 50.0, 30.0, 10.0])
        unfolder = Unfolder(np.ones(8), np.eye(8), M)
        a = unfolder.response @ b_true
        return Unfolder(a, np.diag(a), M), b_true

    @pytest.mark.parametrize("warm_start", [True, False])
    def test_round_trip(self, well_conditioned, warm_start):
        """Many iterations converge to the least-squares inverse"""
        unfolder, b_true = well_conditioned
        solution = unfolder.evaluate_bertero(LEAST_REGULARIZED, warm_start=warm_start)

        expected = np.linalg.solve(unfolder.response, unfolder.measured)
        np.testing.assert_allclose(solution.values, expected, rtol=1e-6)
        np.testing.assert_allclose(solution.values, b_true, rtol=1e-6)
        assert solution.point.resolution_asymmetry == pytest.approx(0.0, abs=1e-10)

    def test_reference_distance(self, well_conditioned):
        unfolder, b_true = well_conditioned
        with_reference = unfolder.evaluate_bertero(LEAST_REGULARIZED, reference=b_true)
        without = unfolder.evaluate_bertero(LEAST_REGULARIZED)

        assert with_reference.point.distance_to_reference == pytest.approx(0.0, abs=1e-6)
        assert np.isnan(without.point.distance_to_reference)

    def test_reference_length_checked(self, well_conditioned):
        unfolder, _ = well_conditioned
        with pytest.raises(ValueError, match="Reference"):
            unfolder.unfold_bertero(reference=np.ones(3))


class TestTikhonov:
    """Second-derivative regularization with a bounded minimizer"""

    def test_penalty_monotonic_over_scan(self, smooth_problem):
        """Over the scan, weaker regularization never gives a smoother solution"""
        a, cov, M, _ = smooth_problem
        result = Unfolder(a, cov, M).unfold_tikhonov()
        penalties = [pt.second_derivative_penalty for pt in result.scan.points if pt.converged]

        assert len(penalties) >= 2
        tol = 1e-3 * max(penalties) + 1e-9
        for smaller, larger in zip(penalties[:-1], penalties[1:]):
            assert smaller <= larger + tol

    def test_moves_away_from_flat_prior(self, smooth_problem):
        """The fit leaves the flat start point on a peaked problem"""
        a, cov, M, _ = smooth_problem
        solution = Unfolder(a, cov, M).evaluate_tikhonov(0.1)

        assert int(np.argmax(solution.values)) in (4, 5)
        assert solution.values.max() > 2.0 * solution.values.min()

    def test_round_trip(self):
        """Weak regularization converges to the least-squares inverse"""
        M = banded_response(8, [0.1, 0.8, 0.1])
        b_true = np.array([20.0, 40.0, 60.0, 80.0, 70.0, 50.0, 30.0, 10.0])
        a = Unfolder(np.ones(8), np.eye(8), M).response @ b_true
        unfolder = Unfolder(a, np.diag(a), M)

        solution = unfolder.evaluate_tikhonov(LEAST_REGULARIZED)
        expected = np.linalg.solve(unfolder.response, unfolder.measured)
        np.testing.assert_allclose(solution.values, expected, rtol=1e-2)
        assert solution.point.chi_square == pytest.approx(0.0, abs=1e-2)

    def test_asymmetric_errors(self, identity_unfolder):
        result = identity_unfolder.unfold_tikhonov()

        assert result.extras["errors_plus"].shape == (10,)
        assert np.all(result.extras["errors_plus"] >= 0)
        assert np.all(result.extras["errors_minus"] <= 0)
        assert result.extras["parameter_errors"].shape == (10,)

    def test_fixed_normalization(self, identity_unfolder):
        result = identity_unfolder.unfold_tikhonov(normalization=Normalization.fixed(50.0))
        assert result.integral == pytest.approx(50.0)

    def test_needs_three_bins(self):
        unfolder = Unfolder(np.ones(2), np.eye(2), np.eye(2))
        with pytest.raises(ValueError, match="at least 3"):
            unfolder.unfold_tikhonov()


class TestSchmelling:
    """Maximum-entropy Gauss-Newton solution"""

    def test_fixed_normalization(self, identity_unfolder):
        result = identity_unfolder.unfold_schmelling(normalization=Normalization.fixed(50.0))
        assert result.integral == pytest.approx(50.0)
        # the fixed scale does not count as a fitted degree of freedom
        assert result.ndf < 10.0

    def test_data_driven_weight(self, identity_unfolder):
        result = identity_unfolder.unfold_schmelling(initial_weight=None)
        expected_w0 = 1.0 / np.sqrt(1000.0)
        assert result.scan.strengths[0] == pytest.approx(STRENGTH_MIN * expected_w0)

    def test_smooth_problem(self, smooth_problem):
        a, cov, M, b_true = smooth_problem
        result = Unfolder(a, cov, M).unfold_schmelling()

        assert result.integral == pytest.approx(b_true.sum(), rel=0.1)
        assert np.all(result.values > 0)
        assert "gamma" in result.extras

    def test_invalid_fixed_normalization(self):
        with pytest.raises(ValueError, match="positive"):
            Normalization.fixed(-1.0)
