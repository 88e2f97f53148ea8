"""Unfolder class with the regularized unfolding methods."""
from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np

from .constants import (
    EPS_GAMMA,
    EPS_LAMBDA,
    INITIAL_WEIGHT,
    MAX_GAUSS_NEWTON_ITERATIONS,
    MAX_MINIMIZER_ITERATIONS,
    N_SCAN_POINTS,
    STRENGTH_MAX,
    STRENGTH_MIN,
)
from .exceptions import SetupError, SmoothingError, UnfoldingError
from .results import (
    GramSystem,
    Normalization,
    PointSolution,
    ScanResult,
    SmoothingResult,
    UnfoldedSpectrum,
)
from .unfolding_helpers import (
    alternative_indices,
    bertero_point,
    calculate_gram_system,
    chi2_probability,
    count_significant,
    fit_smoothing_model,
    invert_covariance,
    normalize_columns,
    power_law_prior,
    rebin_distribution,
    scan_strengths,
    schmelling_point,
    select_best_index,
    strength_grid,
    tikhonov_point,
)

logger = logging.getLogger(__name__)


class Unfolder:
    """
    Unfolding of a measured distribution smeared by a known response.

    The measured distribution ``a`` (Na bins) is related to the true
    distribution ``b`` (Nb bins) by ``a = M b`` with the column-normalized
    response matrix ``M``. Three regularized solutions are available, each
    scanning its regularization strength on a log grid and selecting the
    point at which the trace of the unfolded covariance best matches the
    trace of the measured covariance.

    Parameters
    ----------
    measured : np.ndarray
        Measured distribution a, shape (Na,)
    covariance : np.ndarray
        Covariance of a, symmetric positive-definite, shape (Na, Na)
    response : np.ndarray
        Response (migration) matrix, measured x true, shape (Na, Nb).
        Need not be normalized.
    response_errors : Optional[np.ndarray], optional
        Absolute errors of the response cells. Default: Poisson errors,
        i.e. the response is taken as a histogram of counts.
    true_edges : Optional[np.ndarray], optional
        Edges of the true bins, shape (Nb + 1,). Used by the rebinned and
        power-law priors. Default: bin index axis ``0..Nb``.
    measured_edges : Optional[np.ndarray], optional
        Edges of the measured bins, shape (Na + 1,). Default: ``0..Na``.

    Attributes
    ----------
    measured : np.ndarray
        Copy of a
    covariance : np.ndarray
        Copy of the covariance of a
    cov_inv : np.ndarray
        Inverse covariance
    trace_cov_a : float
        Trace of the covariance of a
    n_significant : int
        Number of measured bins with ``a_i > 0`` and ``cov_ii < a_i**2``
    response_raw : np.ndarray
        Column-normalized input response
    response : np.ndarray
        Response currently used by the solvers (raw or smoothed)
    prior : np.ndarray
        Prior shape of the true distribution, sums to 1

    Raises
    ------
    SetupError
        On dimension mismatch or if the covariance is not symmetric
        positive-definite

    Examples
    --------
    >>> import numpy as np
    >>> from iactunfold import Unfolder
    >>> unfolder = Unfolder(a, np.diag(a), migration)
    >>> spectrum = unfolder.unfold_bertero()
    >>> spectrum.values, spectrum.errors
    """

    def __init__(
        self,
        measured,
        covariance,
        response,
        response_errors=None,
        true_edges=None,
        measured_edges=None,
    ):
        a = np.array(measured, dtype=float)
        cov = np.array(covariance, dtype=float)
        M = np.array(response, dtype=float)

        if a.ndim != 1 or len(a) < 1:
            raise SetupError("Measured distribution must be a non-empty 1D array")
        n_measured = len(a)
        if cov.shape != (n_measured, n_measured):
            raise SetupError(
                f"Covariance shape {cov.shape} does not match {n_measured} measured bins"
            )
        if M.ndim != 2 or M.shape[0] != n_measured or M.shape[1] < 1:
            raise SetupError(
                f"Response shape {M.shape} does not match {n_measured} measured bins"
            )
        if not (np.all(np.isfinite(a)) and np.all(np.isfinite(M))):
            raise SetupError("Measured distribution and response must be finite")

        if response_errors is None:
            err2 = np.abs(M)
        else:
            errors = np.array(response_errors, dtype=float)
            if errors.shape != M.shape:
                raise SetupError(
                    f"Response errors shape {errors.shape} does not match response {M.shape}"
                )
            err2 = errors**2

        self.measured = a
        self.covariance = cov
        self.cov_inv = invert_covariance(cov)
        self.trace_cov_a = float(np.trace(cov))
        self.n_significant = count_significant(a, cov)

        self.response_raw, self.response_raw_err2 = normalize_columns(M, err2)
        self.response = self.response_raw.copy()
        self.response_err2 = self.response_raw_err2.copy()
        self.smoothing: Optional[SmoothingResult] = None
        self._gram: Optional[GramSystem] = None
        self._smoothed = False

        n_true = M.shape[1]
        self.true_edges = self._validate_edges(true_edges, n_true, "true_edges")
        self.measured_edges = self._validate_edges(measured_edges, n_measured, "measured_edges")
        self.prior = np.full(n_true, 1.0 / n_true)

        # Initialize results storage
        self.results_history: Dict[str, UnfoldedSpectrum] = {}
        self.current_result: Optional[UnfoldedSpectrum] = None

        logger.info(
            "Unfolder set up: Na=%d, Nb=%d, trace(Cov_a)=%g, significant bins=%d",
            n_measured, n_true, self.trace_cov_a, self.n_significant,
        )

    def __str__(self) -> str:
        return (
            f"Unfolder(measured bins: {self.n_measured}, "
            f"true bins: {self.n_true}, "
            f"response: {'smoothed' if self.is_smoothed else 'raw'})"
        )

    def __repr__(self) -> str:
        return f"Unfolder(measured={self.measured.tolist()}, n_true={self.n_true})"

    @property
    def n_measured(self) -> int:
        """Number of measured bins (Na)."""
        return len(self.measured)

    @property
    def n_true(self) -> int:
        """Number of true bins (Nb)."""
        return self.response.shape[1]

    @property
    def is_smoothed(self) -> bool:
        """True if the solvers use the smoothed response."""
        return self._smoothed

    @property
    def gram(self) -> GramSystem:
        """Eigen-decomposition of ``M M^T`` for the current response (cached)."""
        if self._gram is None:
            self._gram = calculate_gram_system(self.response, EPS_LAMBDA)
            logger.debug(
                "Gram system: rank=%d, lambda_max=%g, tau=%g",
                self._gram.rank, self._gram.eigenvalues[0], self._gram.tau,
            )
        return self._gram

    @staticmethod
    def _validate_edges(edges, n_bins: int, name: str) -> np.ndarray:
        if edges is None:
            return np.arange(n_bins + 1, dtype=float)
        edges = np.array(edges, dtype=float)
        if edges.shape != (n_bins + 1,):
            raise SetupError(f"{name} must have {n_bins + 1} entries, got {edges.shape}")
        if np.any(np.diff(edges) <= 0):
            raise SetupError(f"{name} must be strictly increasing")
        return edges

    # ------------------------------------------------------------------
    # results history
    # ------------------------------------------------------------------

    def _save_result(self, result: UnfoldedSpectrum) -> str:
        """
        Save unfolding result to history with timestamp.

        Parameters
        ----------
        result : UnfoldedSpectrum
            Unfolding result

        Returns
        -------
        str
            Key under which result was saved (timestamp + method)
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        key = f"{timestamp}_{result.method.lower()}"
        suffix = 1
        while key in self.results_history:
            suffix += 1
            key = f"{timestamp}_{result.method.lower()}_{suffix}"

        result.extras["saved_key"] = key
        self.results_history[key] = result
        self.current_result = result

        logger.info("Result saved with key: %s", key)
        return key

    def get_result(self, key: Optional[str] = None) -> Optional[UnfoldedSpectrum]:
        """
        Get unfolding result from history.

        Parameters
        ----------
        key : Optional[str], optional
            Result key. If None, returns current result

        Returns
        -------
        Optional[UnfoldedSpectrum]
            Unfolding result or None if not found

        Examples
        --------
        >>> result = unfolder.get_result('20240115_143022_bertero')
        >>> unfolder.get_result()  # Returns current result
        """
        if key is None:
            return self.current_result
        return self.results_history.get(key)

    def list_results(self) -> List[str]:
        """List all saved result keys, sorted by timestamp."""
        return sorted(self.results_history.keys())

    def clear_results(self) -> None:
        """Clear all saved results."""
        self.results_history.clear()
        self.current_result = None
        logger.info("All results cleared.")

    # ------------------------------------------------------------------
    # prior distribution
    # ------------------------------------------------------------------

    def _set_prior(self, values: np.ndarray, source: str) -> np.ndarray:
        values = np.asarray(values, dtype=float)
        if values.shape != (self.n_true,):
            logger.warning("Prior (%s) rejected: wrong length %s", source, values.shape)
            raise ValueError(
                f"Prior length ({values.shape}) must match number of true bins ({self.n_true})"
            )
        total = float(np.sum(values))
        if not np.all(np.isfinite(values)) or np.any(values < 0) or total <= 0:
            logger.warning("Prior (%s) rejected: sum=%g", source, total)
            raise ValueError(
                f"Prior ({source}) must be finite and non-negative with a positive sum"
            )
        self.prior = values / total
        logger.info("Prior set from %s", source)
        return self.prior.copy()

    def set_prior_constant(self) -> np.ndarray:
        """Use a uniform prior ``1 / Nb`` (the default)."""
        return self._set_prior(np.ones(self.n_true), "constant")

    def set_prior_input(self, values) -> np.ndarray:
        """
        Use an explicit prior shape.

        Parameters
        ----------
        values : array_like
            Prior contents per true bin, shape (Nb,); normalized to unit sum

        Returns
        -------
        np.ndarray
            The normalized prior

        Raises
        ------
        ValueError
            If the length is wrong or the sum is not positive; the current
            prior is kept
        """
        return self._set_prior(values, "input")

    def set_prior_rebin(self, values, edges) -> np.ndarray:
        """
        Use a histogram with arbitrary binning as prior.

        Contents are redistributed onto ``true_edges`` by linear overlap
        fractions.

        Raises
        ------
        ValueError
            If the histogram does not overlap the true bins
        """
        try:
            rebinned = rebin_distribution(values, edges, self.true_edges)
        except ValueError:
            logger.warning("Prior (rebin) rejected: invalid histogram")
            raise
        return self._set_prior(rebinned, "rebinned histogram")

    def set_prior_power(self, index: float) -> np.ndarray:
        """
        Use a power law ``dN/dE ~ E**-index`` as prior.

        ``true_edges`` are taken as ``log10(E)`` bin edges.
        """
        return self._set_prior(power_law_prior(self.true_edges, index), f"power law {index:g}")

    # ------------------------------------------------------------------
    # response smoothing
    # ------------------------------------------------------------------

    def smooth_response(self, apply: bool = True, strict: bool = False) -> SmoothingResult:
        """
        Fit a Gaussian model to the raw response matrix.

        The measured position of each true bin is described by a mean and an
        RMS, each quadratic in the true-bin coordinate. See
        :func:`iactunfold.unfolding_helpers.smoothing_model`.

        Parameters
        ----------
        apply : bool, optional
            If True and the fit converged, the smoothed matrix replaces the
            current response
        strict : bool, optional
            If True, raise :class:`SmoothingError` when the fit fails
            instead of returning a non-converged result

        Returns
        -------
        SmoothingResult
            Fitted parameters, smoothed matrix and fit quality
        """
        result = fit_smoothing_model(self.response_raw, self.response_raw_err2)
        self.smoothing = result

        if not result.converged:
            logger.warning("Response smoothing failed: %s", result.message)
            if strict:
                raise SmoothingError(f"Response smoothing failed: {result.message}")
            return result

        logger.info(
            "Response smoothed: chi2/ndf=%g/%d, prob=%g, parameters=%s",
            result.chi_square, result.ndf, result.probability,
            ", ".join(f"{k}={v:.4g}" for k, v in result.parameters.items()),
        )
        if apply:
            self.response, self.response_err2 = normalize_columns(
                result.response, result.response_err2
            )
            self._gram = None
            self._smoothed = True
        return result

    def use_raw_response(self) -> None:
        """Switch the solvers back to the column-normalized raw response."""
        self.response = self.response_raw.copy()
        self.response_err2 = self.response_raw_err2.copy()
        self._gram = None
        self._smoothed = False

    # ------------------------------------------------------------------
    # scan and selection
    # ------------------------------------------------------------------

    def _validate_reference(self, reference) -> Optional[np.ndarray]:
        if reference is None:
            return None
        reference = np.asarray(reference, dtype=float)
        if reference.shape != (self.n_true,):
            raise ValueError(
                f"Reference length ({reference.shape}) must match number of true bins ({self.n_true})"
            )
        return reference

    def _scan(
        self,
        method: str,
        evaluate: Callable[[float], PointSolution],
        strengths: np.ndarray,
    ) -> Tuple[ScanResult, List[Optional[PointSolution]]]:
        """
        Evaluate ``method`` on all strengths and select the best point.

        Raises
        ------
        UnfoldingError
            If no strength converged
        """
        logger.info(
            "%s: start scan over %d strengths (%.3g .. %.3g)",
            method, len(strengths), strengths[0], strengths[-1],
        )
        points, solutions = scan_strengths(evaluate, strengths, method)
        scan = ScanResult(method=method, points=tuple(points), trace_cov_a=self.trace_cov_a)
        scan.best_index = select_best_index(scan.points, self.trace_cov_a)
        rank = self._gram.rank if self._gram is not None else None
        scan.alternatives = alternative_indices(scan.points, self.n_significant, rank)

        n_ok = sum(pt.converged for pt in points)
        if scan.best_index < 0:
            raise UnfoldingError(f"{method}: no regularization strength converged")

        best = scan.best_point
        logger.info(
            "%s: %d/%d points converged, best index %d (w=%.4g, chisq=%.4g, "
            "covtrace/trace(Cov_a)=%.4g)",
            method, n_ok, len(points), scan.best_index, best.strength,
            best.chi_square, best.covariance_trace / self.trace_cov_a,
        )
        logger.debug("%s: alternative selections %s", method, scan.alternatives)
        return scan, solutions

    def _finish(
        self, method: str, solution: PointSolution, scan: ScanResult
    ) -> UnfoldedSpectrum:
        point = solution.point
        result = UnfoldedSpectrum(
            method=method,
            values=solution.values,
            covariance=solution.covariance,
            chi2_contributions=solution.chi2_contributions,
            chi_square=point.chi_square,
            ndf=point.effective_rank,
            probability=chi2_probability(point.chi_square, point.effective_rank),
            strength=point.strength,
            scan=scan,
            response=self.response.copy(),
            extras=dict(solution.extras),
        )
        logger.info(
            "%s: chisq=%.4g, ndf=%.4g, prob=%.4g, integral=%.4g",
            method, result.chi_square, result.ndf, result.probability, result.integral,
        )
        self._save_result(result)
        return result

    # ------------------------------------------------------------------
    # unfolding methods
    # ------------------------------------------------------------------

    def evaluate_tikhonov(
        self,
        strength: float,
        normalization: Normalization = Normalization.by_integral(),
        max_iterations: int = MAX_MINIMIZER_ITERATIONS,
        reference=None,
        asymmetric_errors: bool = False,
    ) -> PointSolution:
        """Tikhonov solution at a single strength (no scan)."""
        if self.n_true < 3:
            raise ValueError(f"Tikhonov unfolding needs at least 3 true bins, got {self.n_true}")
        return tikhonov_point(
            strength,
            self.response,
            self.measured,
            self.cov_inv,
            self.prior,
            normalization,
            max_iterations=max_iterations,
            reference=self._validate_reference(reference),
            asymmetric_errors=asymmetric_errors,
        )

    def unfold_tikhonov(
        self,
        reference=None,
        initial_weight: float = INITIAL_WEIGHT,
        normalization: Normalization = Normalization.by_integral(),
        n_points: int = N_SCAN_POINTS,
        strength_min: float = STRENGTH_MIN,
        strength_max: float = STRENGTH_MAX,
        max_iterations: int = MAX_MINIMIZER_ITERATIONS,
    ) -> UnfoldedSpectrum:
        """
        Unfold with the Tikhonov second-derivative regularization.

        For each strength ``w`` the function ``w * chi2 / 2 + R(b)`` is
        minimized over the shape of b, with ``R`` the scale-invariant squared
        second derivative. The best strength is minimized once more to give
        the result, including asymmetric errors.

        Parameters
        ----------
        reference : array_like, optional
            Known true distribution, used for the distance diagnostic only
        initial_weight : float, optional
            Factor applied to the whole strength grid
        normalization : Normalization, optional
            Fitted by the integral (default) or fixed total content
        n_points, strength_min, strength_max : optional
            Strength grid, see :func:`iactunfold.unfolding_helpers.strength_grid`
        max_iterations : int, optional
            Iteration limit of the minimizer

        Returns
        -------
        UnfoldedSpectrum
            Result at the selected strength. ``extras`` holds
            ``parameter_errors``, ``errors_plus`` and ``errors_minus``.

        Raises
        ------
        ValueError
            If there are fewer than 3 true bins
        UnfoldingError
            If the minimization failed for every strength
        """
        reference = self._validate_reference(reference)
        strengths = strength_grid(n_points, strength_min, strength_max, initial_weight)
        method = "Tikhonov"

        def evaluate(w: float) -> PointSolution:
            return self.evaluate_tikhonov(w, normalization, max_iterations, reference)

        scan, _ = self._scan(method, evaluate, strengths)
        best = self.evaluate_tikhonov(
            scan.best_point.strength, normalization, max_iterations, reference,
            asymmetric_errors=True,
        )
        return self._finish(method, best, scan)

    def evaluate_bertero(self, strength: float, warm_start: bool = True, reference=None) -> PointSolution:
        """Bertero solution for a single number of iterations (no scan)."""
        return bertero_point(
            strength,
            self.response,
            self.measured,
            self.covariance,
            self.cov_inv,
            self.gram,
            warm_start=warm_start,
            reference=self._validate_reference(reference),
        )

    def unfold_bertero(
        self,
        reference=None,
        warm_start: bool = True,
        n_points: int = N_SCAN_POINTS,
        strength_min: float = STRENGTH_MIN,
        strength_max: float = STRENGTH_MAX,
    ) -> UnfoldedSpectrum:
        """
        Unfold with the Bertero iterative method.

        The regularization strength is the (continuous) number of Landweber
        iterations. Only eigenvalues of ``M M^T`` above EPS_LAMBDA contribute.

        Parameters
        ----------
        reference : array_like, optional
            Known true distribution for the distance diagnostic
        warm_start : bool, optional
            Start the iteration from ``M^T a`` instead of zero
        n_points, strength_min, strength_max : optional
            Iteration-number grid

        Returns
        -------
        UnfoldedSpectrum
            Result at the selected number of iterations
        """
        reference = self._validate_reference(reference)
        strengths = strength_grid(n_points, strength_min, strength_max)
        method = "Bertero"

        def evaluate(n: float) -> PointSolution:
            return self.evaluate_bertero(n, warm_start, reference)

        scan, solutions = self._scan(method, evaluate, strengths)
        return self._finish(method, solutions[scan.best_index], scan)

    def default_schmelling_weight(self) -> float:
        """Data-driven initial weight ``1 / sqrt(a^T C^-1 a)``."""
        quad = float(self.measured @ self.cov_inv @ self.measured)
        if quad <= 0:
            raise ValueError("Cannot derive an initial weight from an empty measurement")
        return 1.0 / np.sqrt(quad)

    def evaluate_schmelling(
        self,
        strength: float,
        normalization: Normalization = Normalization.by_integral(),
        gamma_start: Optional[np.ndarray] = None,
        max_iterations: int = MAX_GAUSS_NEWTON_ITERATIONS,
        eps_gamma: float = EPS_GAMMA,
        reference=None,
    ) -> PointSolution:
        """Schmelling solution at a single strength (no scan)."""
        return schmelling_point(
            strength,
            self.response,
            self.measured,
            self.covariance,
            self.cov_inv,
            self.prior,
            normalization,
            gamma_start=gamma_start,
            max_iterations=max_iterations,
            eps_gamma=eps_gamma,
            reference=self._validate_reference(reference),
        )

    def unfold_schmelling(
        self,
        reference=None,
        initial_weight: Optional[float] = INITIAL_WEIGHT,
        normalization: Normalization = Normalization.by_integral(),
        n_points: int = N_SCAN_POINTS,
        strength_min: float = STRENGTH_MIN,
        strength_max: float = STRENGTH_MAX,
        max_iterations: int = MAX_GAUSS_NEWTON_ITERATIONS,
        eps_gamma: float = EPS_GAMMA,
    ) -> UnfoldedSpectrum:
        """
        Unfold with Schmelling's maximum-entropy method.

        The true shape is ``p ~ prior * exp(w M^T gamma)``; the Lagrange
        multipliers ``gamma`` are found by Gauss-Newton iteration, warm
        started from the previous strength of the scan.

        Parameters
        ----------
        reference : array_like, optional
            Known true distribution for the distance diagnostic
        initial_weight : Optional[float], optional
            Factor applied to the strength grid. None derives it from the
            data as ``1 / sqrt(a^T C^-1 a)``.
        normalization : Normalization, optional
            Fitted by the integral (default) or fixed total content
        n_points, strength_min, strength_max : optional
            Strength grid
        max_iterations : int, optional
            Gauss-Newton iteration limit per strength
        eps_gamma : float, optional
            Convergence threshold on ``|dgamma|**2``

        Returns
        -------
        UnfoldedSpectrum
            Result at the selected strength; ``extras["gamma"]`` holds the
            Lagrange multipliers
        """
        reference = self._validate_reference(reference)
        if initial_weight is None:
            initial_weight = self.default_schmelling_weight()
            logger.info("Schmelling: data-driven initial weight %g", initial_weight)
        strengths = strength_grid(n_points, strength_min, strength_max, initial_weight)
        method = "Schmelling"
        gamma: Dict[str, Any] = {"last": None}

        def evaluate(w: float) -> PointSolution:
            solution = self.evaluate_schmelling(
                w, normalization, gamma["last"], max_iterations, eps_gamma, reference
            )
            gamma["last"] = solution.extras["gamma"]
            return solution

        scan, solutions = self._scan(method, evaluate, strengths)
        return self._finish(method, solutions[scan.best_index], scan)
