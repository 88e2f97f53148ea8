"""
Helper implementations for the unfolding algorithms, the response smoothing
and the regularization scan.
"""
from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from scipy.optimize import least_squares
from scipy.stats import chi2, norm

from .constants import (
    COLUMN_SUM_TOLERANCE,
    EPS_GAMMA,
    EPS_LAMBDA,
    MAX_GAUSS_NEWTON_ITERATIONS,
    MAX_MINIMIZER_ITERATIONS,
    PARAMETER_BOUND,
    PENALTY_VALUE,
    SMOOTHING_B0_BOUNDS,
    SMOOTHING_CONTAINMENT,
    SMOOTHING_MAX_RELATIVE_ERROR,
    SMOOTHING_MIN_PROBABILITY,
    SMOOTHING_PARAMETER_NAMES,
    SYMMETRY_RTOL,
)
from .exceptions import ConvergenceError, SetupError
from .minimizer import Minimizer
from .results import GramSystem, Normalization, PointSolution, ScanPoint, SmoothingResult

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# problem setup
# ---------------------------------------------------------------------------


def normalize_columns(
    matrix: np.ndarray, err2: Optional[np.ndarray] = None
) -> Tuple[np.ndarray, Optional[np.ndarray]]:
    """
    Normalize every column of ``matrix`` to unit sum.

    Columns summing to zero are left at zero (true bins which never reach
    the measured axis). Squared errors are scaled by ``1 / sum**2``.

    Parameters
    ----------
    matrix : np.ndarray
        Matrix of shape (Na, Nb)
    err2 : Optional[np.ndarray], optional
        Squared per-cell errors of the same shape

    Returns
    -------
    Tuple[np.ndarray, Optional[np.ndarray]]
        Normalized matrix and normalized squared errors
    """
    matrix = np.asarray(matrix, dtype=float)
    sums = matrix.sum(axis=0)
    nonzero = sums != 0
    scale = np.zeros_like(sums)
    scale[nonzero] = 1.0 / sums[nonzero]
    normalized = matrix * scale[np.newaxis, :]
    if err2 is None:
        return normalized, None
    return normalized, np.asarray(err2, dtype=float) * (scale**2)[np.newaxis, :]


def column_sums_valid(matrix: np.ndarray, tol: float = COLUMN_SUM_TOLERANCE) -> bool:
    """True if each column sums to 1 or to 0 within ``tol``."""
    sums = np.asarray(matrix, dtype=float).sum(axis=0)
    return bool(np.all((np.abs(sums - 1.0) <= tol) | (np.abs(sums) <= tol)))


def invert_covariance(covariance: np.ndarray, rtol: float = SYMMETRY_RTOL) -> np.ndarray:
    """
    Invert a symmetric positive-definite covariance by Cholesky decomposition.

    Raises
    ------
    SetupError
        If the matrix is not symmetric or not positive-definite
    """
    cov = np.asarray(covariance, dtype=float)
    scale = max(float(np.max(np.abs(cov))), np.finfo(float).tiny)
    if not np.all(np.isfinite(cov)):
        raise SetupError("Covariance of the measured distribution contains non-finite values")
    if np.max(np.abs(cov - cov.T)) > rtol * scale:
        raise SetupError("Covariance of the measured distribution is not symmetric")
    try:
        factor = cho_factor(cov)
    except LinAlgError as exc:
        raise SetupError(
            "Covariance of the measured distribution is not positive-definite"
        ) from exc
    inverse = cho_solve(factor, np.eye(cov.shape[0]))
    return 0.5 * (inverse + inverse.T)


def count_significant(measured: np.ndarray, covariance: np.ndarray) -> int:
    """Number of measured bins with ``a_i > 0`` and ``cov[i, i] < a_i**2``."""
    a = np.asarray(measured, dtype=float)
    var = np.diag(covariance)
    return int(np.count_nonzero((a > 0) & (var < a**2)))


# ---------------------------------------------------------------------------
# priors
# ---------------------------------------------------------------------------


def rebin_distribution(
    values: np.ndarray, edges: np.ndarray, target_edges: np.ndarray
) -> np.ndarray:
    """
    Redistribute histogram contents onto new bin edges.

    The content of each source bin is shared among the target bins in
    proportion to the overlap of the bin ranges (uniform density within a
    source bin).

    Parameters
    ----------
    values : np.ndarray
        Source contents, shape (n,)
    edges : np.ndarray
        Source bin edges, increasing, shape (n + 1,)
    target_edges : np.ndarray
        Target bin edges, increasing

    Returns
    -------
    np.ndarray
        Contents per target bin, shape (len(target_edges) - 1,)

    Raises
    ------
    ValueError
        If the shapes do not match or the edges are not increasing
    """
    values = np.asarray(values, dtype=float)
    edges = np.asarray(edges, dtype=float)
    target_edges = np.asarray(target_edges, dtype=float)
    if values.ndim != 1 or edges.shape != (len(values) + 1,):
        raise ValueError(
            f"Expected {len(values) + 1} edges for {len(values)} values, got {edges.shape}"
        )
    if np.any(np.diff(edges) <= 0) or np.any(np.diff(target_edges) <= 0):
        raise ValueError("Bin edges must be strictly increasing")

    lo = np.maximum(edges[:-1, np.newaxis], target_edges[np.newaxis, :-1])
    hi = np.minimum(edges[1:, np.newaxis], target_edges[np.newaxis, 1:])
    overlap = np.clip(hi - lo, 0.0, None)
    fraction = overlap / np.diff(edges)[:, np.newaxis]
    return values @ fraction


def power_law_prior(log_edges: np.ndarray, index: float) -> np.ndarray:
    """
    Content of ``dN/dE ~ E**-index`` in bins of ``log10(E)``.

    With ``y = log10(E)`` the content of a bin is proportional to
    ``integral 10**(y * (1 - index)) dy``, evaluated analytically.
    The result is not normalized.
    """
    y = np.asarray(log_edges, dtype=float)
    if np.any(np.diff(y) <= 0):
        raise ValueError("Bin edges must be strictly increasing")
    k = 1.0 - float(index)
    if abs(k) < 1e-12:
        return np.diff(y)
    ln10 = np.log(10.0)
    return np.diff(np.power(10.0, k * y)) / (k * ln10)


# ---------------------------------------------------------------------------
# penalties and goodness of fit
# ---------------------------------------------------------------------------


def second_derivative_penalty(b: np.ndarray) -> float:
    """
    Scale-invariant squared second derivative of ``b``.

    ``sum_j [2 (b[j+1]-b[j]) / (b[j+1]+b[j]) - 2 (b[j]-b[j-1]) / (b[j]+b[j-1])]**2``.
    Bin pairs summing to zero contribute a zero slope.
    """
    b = np.asarray(b, dtype=float)
    if len(b) < 3:
        return 0.0
    num = 2.0 * np.diff(b)
    den = b[1:] + b[:-1]
    slope = np.divide(num, den, out=np.zeros_like(num), where=den != 0)
    return float(np.sum(np.diff(slope) ** 2))


def zero_derivative_penalty(b: np.ndarray) -> float:
    return float(np.sum(np.asarray(b, dtype=float) ** 2))


def entropy(b: np.ndarray) -> float:
    """``sum p ln p`` of the normalized distribution (positive entries only)."""
    b = np.asarray(b, dtype=float)
    total = np.sum(b)
    if total == 0 or not np.isfinite(total):
        return 0.0
    p = b / total
    p = p[p > 0]
    return float(np.sum(p * np.log(p)))


def chi2_contributions(
    measured: np.ndarray, fitted: np.ndarray, cov_inv: np.ndarray
) -> np.ndarray:
    """Per-bin terms ``r_i (C^-1 r)_i`` with ``r = a - fitted``."""
    r = np.asarray(measured, dtype=float) - np.asarray(fitted, dtype=float)
    return r * (cov_inv @ r)


def chi2_probability(chi_square: float, ndf: float) -> float:
    """Upper tail probability for ``round(ndf)`` degrees of freedom, 0 if that is 0."""
    indf = int(ndf + 0.5)
    if indf <= 0:
        return 0.0
    return float(chi2.sf(chi_square, indf))


def distance_to_reference(b: np.ndarray, reference: Optional[np.ndarray]) -> float:
    if reference is None:
        return float("nan")
    return float(np.sum((np.asarray(b) - np.asarray(reference)) ** 2))


def fitted_normalization(
    alpha: np.ndarray, measured: np.ndarray, cov_inv: np.ndarray, normalization: Normalization
) -> float:
    """
    Total content of the unfolded distribution for the shape ``alpha = M p``.

    Returns NaN if the least-squares factor is undefined.
    """
    if not normalization.is_fitted:
        return float(normalization.value)
    w = cov_inv @ alpha
    den = float(alpha @ w)
    if den <= 0 or not np.isfinite(den):
        return float("nan")
    return float(w @ measured) / den


# ---------------------------------------------------------------------------
# response smoothing
# ---------------------------------------------------------------------------


def smoothing_model(parameters: Sequence[float], n_measured: int, n_true: int) -> Optional[np.ndarray]:
    """
    Gaussian response model.

    The measured position of true bin ``j`` (centre ``y = j + 0.5``) is
    distributed with ``mean = a0 + a1 y + a2 y**2 + y`` and
    ``rms = b0 + b1 y + b2 y**2``. Cell contents below
    SMOOTHING_MIN_PROBABILITY are dropped and each column renormalized.

    Returns
    -------
    Optional[np.ndarray]
        Model matrix of shape (n_measured, n_true), or None if the RMS is
        not positive for every column
    """
    a0, a1, a2, b0, b1, b2 = (float(v) for v in parameters)
    y = np.arange(n_true) + 0.5
    mean = a0 + a1 * y + a2 * y**2 + y
    rms = b0 + b1 * y + b2 * y**2
    if np.any(rms <= 0) or not np.all(np.isfinite(mean)):
        return None
    edges = np.arange(n_measured + 1, dtype=float)
    cdf = norm.cdf((edges[:, np.newaxis] - mean[np.newaxis, :]) / rms[np.newaxis, :])
    model = np.diff(cdf, axis=0)
    model[model < SMOOTHING_MIN_PROBABILITY] = 0.0
    normalized, _ = normalize_columns(model)
    return normalized


def smoothing_mask(
    response: np.ndarray, err2: np.ndarray, max_relative_error: float = SMOOTHING_MAX_RELATIVE_ERROR
) -> np.ndarray:
    """Cells used in the smoothing fit: nonzero content and error, small relative error."""
    usable = (response != 0) & (err2 != 0)
    rel2 = np.divide(err2, response**2, out=np.full_like(err2, np.inf), where=response != 0)
    return usable & (rel2 <= max_relative_error**2)


def smoothing_start_values(response: np.ndarray, mask: Optional[np.ndarray] = None) -> np.ndarray:
    """
    Start values for the smoothing fit.

    Mean and RMS of every non-empty column are regressed linearly against
    the column coordinate, weighted by the number of fitted cells of the
    column. The identity term is removed from the slope of the mean.
    Columns whose ``mean +- SMOOTHING_CONTAINMENT * rms`` leaves the
    measured range are truncated by the matrix border and left out, unless
    fewer than two columns would remain.
    """
    response = np.asarray(response, dtype=float)
    n_measured, n_true = response.shape
    x = np.arange(n_measured) + 0.5
    y = np.arange(n_true) + 0.5
    sums = response.sum(axis=0)
    with np.errstate(invalid="ignore", divide="ignore"):
        mean = (x @ response) / sums
        rms = np.sqrt(np.clip((x**2 @ response) / sums - mean**2, 0.0, None))
    weights = (mask if mask is not None else response != 0).sum(axis=0).astype(float)
    good = (sums > 0) & (weights > 0) & np.isfinite(mean)
    with np.errstate(invalid="ignore"):
        contained = (mean - SMOOTHING_CONTAINMENT * rms > 0) & (
            mean + SMOOTHING_CONTAINMENT * rms < n_measured
        )
    if np.count_nonzero(good & contained) >= 2:
        good = good & contained

    start = np.zeros(6)
    if np.count_nonzero(good) >= 2:
        sw = np.sqrt(weights[good])
        a1, a0 = np.polyfit(y[good], mean[good], 1, w=sw)
        b1, b0 = np.polyfit(y[good], rms[good], 1, w=sw)
        start[:] = [a0, a1 - 1.0, 0.0, b0, b1, 0.0]
    elif np.count_nonzero(good) == 1:
        start[0] = float(mean[good][0] - y[good][0])
        start[3] = float(rms[good][0])
    else:
        start[3] = 1.0
    start[3] = np.clip(start[3], *SMOOTHING_B0_BOUNDS)
    return start


def _model_jacobian(parameters: np.ndarray, n_measured: int, n_true: int) -> Optional[np.ndarray]:
    """Central-difference derivative of the model, shape (Na*Nb, 6)."""
    base = np.asarray(parameters, dtype=float)
    columns = []
    for k in range(len(base)):
        h = 1e-6 * max(abs(base[k]), 1e-3)
        up = base.copy()
        dn = base.copy()
        up[k] += h
        dn[k] -= h
        if k == 3:
            dn[k] = max(dn[k], SMOOTHING_B0_BOUNDS[0])
        m_up = smoothing_model(up, n_measured, n_true)
        m_dn = smoothing_model(dn, n_measured, n_true)
        if m_up is None or m_dn is None:
            return None
        columns.append(((m_up - m_dn) / (up[k] - dn[k])).ravel())
    return np.column_stack(columns)


def fit_smoothing_model(
    response: np.ndarray,
    err2: np.ndarray,
    max_relative_error: float = SMOOTHING_MAX_RELATIVE_ERROR,
    start: Optional[np.ndarray] = None,
) -> SmoothingResult:
    """
    Fit the Gaussian response model to a column-normalized response matrix.

    Parameters
    ----------
    response : np.ndarray
        Column-normalized raw response, shape (Na, Nb)
    err2 : np.ndarray
        Squared errors of the normalized response
    max_relative_error : float, optional
        Cells with a larger relative error are left out of the fit
    start : Optional[np.ndarray], optional
        Start values; default from :func:`smoothing_start_values`

    Returns
    -------
    SmoothingResult
        Fit result. ``converged`` is False if the fit failed, in which case
        ``response`` is a copy of the input matrix.
    """
    response = np.asarray(response, dtype=float)
    err2 = np.asarray(err2, dtype=float)
    n_measured, n_true = response.shape
    n_par = len(SMOOTHING_PARAMETER_NAMES)
    mask = smoothing_mask(response, err2, max_relative_error)
    n_points = int(np.count_nonzero(mask))

    def failed(message: str) -> SmoothingResult:
        return SmoothingResult(
            parameters={},
            parameter_errors={},
            covariance=np.full((n_par, n_par), np.nan),
            response=response.copy(),
            response_err2=err2.copy(),
            chi2_cells=np.zeros_like(response),
            chi_square=0.0,
            n_points=n_points,
            ndf=n_points - n_par,
            probability=0.0,
            converged=False,
            message=message,
        )

    if n_points < n_par:
        return failed(f"only {n_points} usable cells for {n_par} parameters")

    x0 = smoothing_start_values(response, mask) if start is None else np.asarray(start, dtype=float)
    lower = np.full(n_par, -np.inf)
    upper = np.full(n_par, np.inf)
    lower[3], upper[3] = SMOOTHING_B0_BOUNDS
    x0 = np.clip(x0, lower, upper)
    sigma = np.sqrt(err2[mask])
    target = response[mask]

    def residuals(theta: np.ndarray) -> np.ndarray:
        model = smoothing_model(theta, n_measured, n_true)
        if model is None:
            return np.full(n_points, 1e10)
        return (target - model[mask]) / sigma

    try:
        res = least_squares(residuals, x0, bounds=(lower, upper), method="trf")
    except (ValueError, LinAlgError) as exc:
        return failed(str(exc))

    model = smoothing_model(res.x, n_measured, n_true)
    if not res.success or model is None:
        return failed(str(res.message))

    try:
        covariance = np.linalg.inv(res.jac.T @ res.jac)
    except LinAlgError:
        return failed("singular fit Jacobian")
    errors = np.sqrt(np.clip(np.diag(covariance), 0.0, None))

    jac = _model_jacobian(res.x, n_measured, n_true)
    if jac is None:
        model_err2 = np.zeros_like(model)
    else:
        model_err2 = np.clip(
            np.einsum("ik,kl,il->i", jac, covariance, jac), 0.0, None
        ).reshape(model.shape)

    chi2_cells = np.zeros_like(response)
    chi2_cells[mask] = ((target - model[mask]) / sigma) ** 2
    chi_square = float(chi2_cells.sum())
    ndf = n_points - n_par
    return SmoothingResult(
        parameters=dict(zip(SMOOTHING_PARAMETER_NAMES, map(float, res.x))),
        parameter_errors=dict(zip(SMOOTHING_PARAMETER_NAMES, map(float, errors))),
        covariance=covariance,
        response=model,
        response_err2=model_err2,
        chi2_cells=chi2_cells,
        chi_square=chi_square,
        n_points=n_points,
        ndf=ndf,
        probability=float(chi2.sf(chi_square, ndf)) if ndf > 0 else 0.0,
        converged=True,
        message=str(res.message),
    )


# ---------------------------------------------------------------------------
# spectral decomposition
# ---------------------------------------------------------------------------


def calculate_gram_system(response: np.ndarray, eps_lambda: float = EPS_LAMBDA) -> GramSystem:
    """
    Eigen-decomposition of ``G = M M^T``.

    Raises
    ------
    SetupError
        If G has no positive eigenvalue
    """
    M = np.asarray(response, dtype=float)
    G = M @ M.T
    eigenvalues, eigenvectors = np.linalg.eigh(G)
    order = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[order]
    eigenvectors = eigenvectors[:, order]
    if not np.isfinite(eigenvalues[0]) or eigenvalues[0] <= 0:
        raise SetupError("Response matrix is degenerate: M M^T has no positive eigenvalue")
    return GramSystem(
        gram=G,
        eigenvalues=eigenvalues,
        eigenvectors=eigenvectors,
        tau=1.0 / float(eigenvalues[0]),
        rank=int(np.count_nonzero(eigenvalues >= eps_lambda)),
        eps_lambda=float(eps_lambda),
    )


# ---------------------------------------------------------------------------
# solvers (one regularization strength each)
# ---------------------------------------------------------------------------


def _scan_point(
    strength: float,
    b: np.ndarray,
    cov_b: np.ndarray,
    chi2_terms: np.ndarray,
    effective_rank: float,
    resolution_asymmetry: float,
    reference: Optional[np.ndarray],
) -> ScanPoint:
    return ScanPoint(
        strength=float(strength),
        converged=True,
        chi_square=float(np.sum(chi2_terms)),
        effective_rank=float(effective_rank),
        covariance_trace=float(np.trace(cov_b)),
        second_derivative_penalty=second_derivative_penalty(b),
        zero_derivative_penalty=zero_derivative_penalty(b),
        entropy=entropy(b),
        resolution_asymmetry=float(resolution_asymmetry),
        distance_to_reference=distance_to_reference(b, reference),
    )


def bertero_point(
    strength: float,
    response: np.ndarray,
    measured: np.ndarray,
    covariance: np.ndarray,
    cov_inv: np.ndarray,
    gram: GramSystem,
    warm_start: bool = True,
    reference: Optional[np.ndarray] = None,
) -> PointSolution:
    """
    Truncated-eigenspectrum iterative solution for ``strength`` iterations.

    With ``q = 1 - tau * lambda`` the filter factor of each retained
    eigenvalue is ``1 - q**n``; the warm start adds ``lambda * q**n``.

    Raises
    ------
    ConvergenceError
        If the solution is not finite
    """
    keep = gram.retained
    lam = gram.eigenvalues[keep]
    vec = gram.eigenvectors[:, keep]
    q = np.clip(1.0 - gram.tau * lam, 0.0, 1.0)
    qn = np.power(q, strength)
    f = 1.0 - qn
    if warm_start:
        f = f + lam * qn

    g_inv_n = (vec * (f / lam)) @ vec.T
    g_inv = (vec / lam) @ vec.T
    a_tilde = response.T @ g_inv_n
    b = a_tilde @ measured
    cov_b = a_tilde @ covariance @ a_tilde.T
    resolution = a_tilde @ response
    resolution_plus = response.T @ g_inv @ response
    diff_ar2 = float(np.sum((resolution - resolution_plus) ** 2))

    if not (np.all(np.isfinite(b)) and np.all(np.isfinite(cov_b))):
        raise ConvergenceError("Bertero", strength, "non-finite solution")

    terms = chi2_contributions(measured, response @ b, cov_inv)
    point = _scan_point(strength, b, cov_b, terms, np.sum(f), diff_ar2, reference)
    return PointSolution(point=point, values=b, covariance=cov_b, chi2_contributions=terms)


def tikhonov_point(
    strength: float,
    response: np.ndarray,
    measured: np.ndarray,
    cov_inv: np.ndarray,
    prior: np.ndarray,
    normalization: Normalization,
    max_iterations: int = MAX_MINIMIZER_ITERATIONS,
    reference: Optional[np.ndarray] = None,
    asymmetric_errors: bool = False,
) -> PointSolution:
    """
    Minimize ``w chi2 / 2 + R(b)`` for one regularization strength ``w``.

    The shape ``p`` is parametrized by the log-ratios
    ``x_j = ln(p_j / p_last)`` of its first ``Nb - 1`` components, so every
    component stays positive and ``sum(p) = 1`` holds for any ``x``.

    Raises
    ------
    ConvergenceError
        If the minimizer fails or the Hessian is not positive-definite
    """
    n_true = response.shape[1]
    n_free = n_true - 1
    state: Dict[str, object] = {}

    def shape(x: np.ndarray) -> np.ndarray:
        u = np.append(x, 0.0)
        e = np.exp(u - np.max(u))
        return e / np.sum(e)

    def objective(x: np.ndarray, final: bool = False) -> float:
        p = shape(x)
        alpha = response @ p
        scale = fitted_normalization(alpha, measured, cov_inv, normalization)
        if not np.isfinite(scale):
            return PENALTY_VALUE
        b = scale * p
        terms = chi2_contributions(measured, scale * alpha, cov_inv)
        penalty = second_derivative_penalty(b)
        value = strength * float(np.sum(terms)) / 2.0 + penalty
        if final:
            state.update(p=p, alpha=alpha, norm=scale, b=b, terms=terms)
        return value

    floor = np.max(prior) * 1e-12
    log_prior = np.log(np.maximum(prior, floor))
    minimizer = Minimizer(
        objective,
        names=[f"x{j}" for j in range(n_free)],
        start=np.clip(log_prior[:n_free] - log_prior[-1], -PARAMETER_BOUND, PARAMETER_BOUND),
        steps=np.full(n_free, 0.1),
        bounds=[(-PARAMETER_BOUND, PARAMETER_BOUND)] * n_free,
        max_iterations=max_iterations,
    )
    result = minimizer.minimize()
    if not result.converged or "b" not in state:
        raise ConvergenceError("Tikhonov", strength, result.message)

    p = state["p"]
    alpha = state["alpha"]
    scale = state["norm"]
    b = state["b"]
    terms = state["terms"]

    # dp/dx, shape (Nb, Nb - 1), then b = norm(p) * p through the chain rule
    dp_dx = (np.diag(p) - np.outer(p, p))[:, :n_free]
    if normalization.is_fitted:
        w_alpha = cov_inv @ alpha
        den = float(alpha @ w_alpha)
        dnorm_dp = (response.T @ (cov_inv @ measured) - 2.0 * scale * (response.T @ w_alpha)) / den
        dnorm_dx = dnorm_dp @ dp_dx
    else:
        dnorm_dx = np.zeros(n_free)
    jac = scale * dp_dx + np.outer(p, dnorm_dx)
    cov_b = jac @ result.covariance @ jac.T
    cov_p = dp_dx @ result.covariance @ dp_dx.T

    extras: Dict[str, object] = {
        "normalization": scale,
        "parameter_errors": np.sqrt(np.clip(np.diag(cov_p), 0.0, None)) * scale,
        "minimizer_calls": result.n_calls,
    }
    if asymmetric_errors:
        eplus, eminus = minimizer.asymmetric_errors(result)

        def shifted(k: int, delta: float) -> float:
            x = result.values.copy()
            x[k] += delta
            return shape(x)[k] - p[k]

        extras["errors_plus"] = np.append([shifted(k, e) for k, e in enumerate(eplus)], 0.0) * scale
        extras["errors_minus"] = np.append([shifted(k, e) for k, e in enumerate(eminus)], 0.0) * scale

    n_measured = response.shape[0]
    point = _scan_point(strength, b, cov_b, terms, n_measured, 0.0, reference)
    return PointSolution(
        point=point, values=b, covariance=cov_b, chi2_contributions=terms, extras=extras
    )


def schmelling_step(
    gamma: np.ndarray,
    strength: float,
    response: np.ndarray,
    measured: np.ndarray,
    covariance: np.ndarray,
    cov_inv: np.ndarray,
    prior: np.ndarray,
    normalization: Normalization,
) -> Dict[str, np.ndarray]:
    """
    One Gauss-Newton step for the Lagrange multipliers ``gamma``.

    Returns
    -------
    Dict[str, np.ndarray]
        ``p``, ``alpha``, ``norm``, ``hessian`` and the step ``dgamma``

    Raises
    ------
    LinAlgError
        If the Gauss-Newton matrix is singular
    FloatingPointError
        If the normalization is undefined
    """
    d = response.T @ gamma
    d = d - np.max(d)
    e = prior * np.exp(strength * d)
    p = e / np.sum(e)
    alpha = response @ p
    scale = fitted_normalization(alpha, measured, cov_inv, normalization)
    if not np.isfinite(scale):
        raise FloatingPointError("normalization undefined")
    zp = scale * alpha - measured + covariance @ gamma
    q = (response * p[np.newaxis, :]) @ response.T - np.outer(alpha, alpha)
    hessian = strength * scale * q + covariance
    dgamma = -np.linalg.solve(hessian, zp)
    return {"p": p, "alpha": alpha, "norm": scale, "hessian": hessian, "dgamma": dgamma}


def _gauss_newton(
    gamma: np.ndarray,
    step: Callable[[np.ndarray], Dict[str, np.ndarray]],
    max_iterations: int,
    eps_gamma: float,
) -> Tuple[np.ndarray, float, int]:
    dga2 = 1e20
    iterations = 0
    while True:
        previous = dga2
        try:
            dgamma = step(gamma)["dgamma"]
        except (LinAlgError, FloatingPointError):
            return gamma, float("inf"), iterations
        gamma = gamma + dgamma
        dga2 = float(dgamma @ dgamma)
        iterations += 1
        if not np.isfinite(dga2) or dga2 < eps_gamma:
            break
        if iterations > max_iterations:
            break
        if abs(dga2 - previous) < eps_gamma / 100.0:
            break
    return gamma, dga2, iterations


def schmelling_point(
    strength: float,
    response: np.ndarray,
    measured: np.ndarray,
    covariance: np.ndarray,
    cov_inv: np.ndarray,
    prior: np.ndarray,
    normalization: Normalization,
    gamma_start: Optional[np.ndarray] = None,
    max_iterations: int = MAX_GAUSS_NEWTON_ITERATIONS,
    eps_gamma: float = EPS_GAMMA,
    reference: Optional[np.ndarray] = None,
) -> PointSolution:
    """
    Maximum-entropy solution for one strength by Gauss-Newton iteration.

    ``gamma_start`` warm-starts the Lagrange multipliers; if that does not
    converge the iteration is repeated once from zero. The converged
    multipliers are returned in ``extras["gamma"]``.

    Raises
    ------
    ConvergenceError
        If neither attempt converges
    """
    n_measured = len(measured)

    def step(g: np.ndarray) -> Dict[str, np.ndarray]:
        return schmelling_step(
            g, strength, response, measured, covariance, cov_inv, prior, normalization
        )

    zero = np.zeros(n_measured)
    start = zero if gamma_start is None else np.asarray(gamma_start, dtype=float)
    gamma, dga2, iterations = _gauss_newton(start.copy(), step, max_iterations, eps_gamma)
    if not dga2 < eps_gamma and np.any(start != 0):
        logger.debug("Schmelling: retry from gamma = 0 at strength %g", strength)
        gamma, dga2, iterations = _gauss_newton(zero.copy(), step, max_iterations, eps_gamma)
    if not dga2 < eps_gamma:
        raise ConvergenceError(
            "Schmelling", strength, f"dgamma^2 = {dga2:.3g} after {iterations} iterations"
        )

    try:
        full = step(gamma)
        h_inv = np.linalg.inv(full["hessian"])
    except (LinAlgError, FloatingPointError) as exc:
        raise ConvergenceError("Schmelling", strength, str(exc)) from exc

    p = full["p"]
    alpha = full["alpha"]
    scale = full["norm"]
    b = scale * p

    terms = gamma * (covariance @ gamma)
    cov_h = covariance @ h_inv
    # +1 for the fitted normalization, which is a fitted parameter on top of Na - tr(Cov_a H^-1)
    effective_rank = n_measured - np.trace(cov_h) + (1.0 if normalization.is_fitted else 0.0)
    diff_ar2 = float(np.sum(cov_h**2))

    t = strength * p[:, np.newaxis] * ((response - alpha[:, np.newaxis]).T @ h_inv)
    if normalization.is_fitted:
        g = (cov_inv @ alpha) / float(alpha @ cov_inv @ alpha)
    else:
        g = np.zeros(n_measured)
    jac = scale * t + np.outer(p, g)
    cov_b = jac @ covariance @ jac.T

    point = _scan_point(strength, b, cov_b, terms, effective_rank, diff_ar2, reference)
    return PointSolution(
        point=point,
        values=b,
        covariance=cov_b,
        chi2_contributions=terms,
        extras={"gamma": gamma, "normalization": scale, "iterations": iterations},
    )


# ---------------------------------------------------------------------------
# regularization scan and selection
# ---------------------------------------------------------------------------


def strength_grid(
    n_points: int, strength_min: float, strength_max: float, initial_weight: float = 1.0
) -> np.ndarray:
    """
    Log-spaced strengths ``w0 * 10**(log10(min) + k * d)``, ``k = 0..n-1``.

    ``d = (log10(max) - log10(min)) / n``, so ``max`` itself is excluded.
    """
    if n_points < 1:
        raise ValueError(f"n_points must be positive, got {n_points}")
    if not (0 < strength_min < strength_max):
        raise ValueError(
            f"Need 0 < strength_min < strength_max, got {strength_min}, {strength_max}"
        )
    if not initial_weight > 0:
        raise ValueError(f"initial_weight must be positive, got {initial_weight}")
    lo = np.log10(strength_min)
    step = (np.log10(strength_max) - lo) / n_points
    return initial_weight * np.power(10.0, lo + np.arange(n_points) * step)


def scan_strengths(
    evaluate: Callable[[float], PointSolution],
    strengths: Sequence[float],
    method: str,
) -> Tuple[List[ScanPoint], List[Optional[PointSolution]]]:
    """
    Evaluate a solver on every strength.

    Points raising :class:`ConvergenceError` are logged and recorded as
    failed; the scan continues.
    """
    points: List[ScanPoint] = []
    solutions: List[Optional[PointSolution]] = []
    for ix, strength in enumerate(strengths):
        try:
            solution = evaluate(float(strength))
        except ConvergenceError as exc:
            logger.warning("%s: grid point %d skipped: %s", method, ix, exc)
            points.append(ScanPoint.failed(strength))
            solutions.append(None)
            continue
        pt = solution.point
        logger.debug(
            "%s: ix=%d w=%.4g chisq=%.4g rank=%.4g covtrace=%.4g secderiv=%.4g "
            "zerderiv=%.4g entropy=%.4g diffAR2=%.4g d2bar=%.4g",
            method, ix, pt.strength, pt.chi_square, pt.effective_rank,
            pt.covariance_trace, pt.second_derivative_penalty,
            pt.zero_derivative_penalty, pt.entropy, pt.resolution_asymmetry,
            pt.distance_to_reference,
        )
        points.append(pt)
        solutions.append(solution)
    return points, solutions


def select_best_index(points: Sequence[ScanPoint], trace_cov_a: float) -> int:
    """
    Index of the converged point whose covariance trace is closest to
    ``trace_cov_a`` in ratio; the lowest index wins ties, -1 if no point
    converged.
    """
    best = -1
    best_diff = np.inf
    for ix, pt in enumerate(points):
        if not pt.converged:
            continue
        diff = abs(pt.covariance_trace / trace_cov_a - 1.0)
        if diff < best_diff:
            best, best_diff = ix, diff
    return best


def alternative_indices(
    points: Sequence[ScanPoint], n_significant: int, rank: Optional[int]
) -> Dict[str, int]:
    """
    Indices preferred by the secondary selection heuristics.

    These are diagnostics only: chi-square closest to the number of
    significant measurements or to the rank of G, steepest growth of the
    covariance trace, the least regularized converged point and the point
    closest to the reference distribution.

    The rank heuristic is -1 when ``rank`` is None (Gram system not computed).
    """
    converged = [ix for ix, pt in enumerate(points) if pt.converged]

    def argmin(key: Callable[[int], float]) -> int:
        values = [(key(ix), ix) for ix in converged if np.isfinite(key(ix))]
        return min(values)[1] if values else -1

    growth = [
        (points[ix].covariance_trace - points[ix - 1].covariance_trace, ix)
        for ix in converged
        if ix > 0 and points[ix - 1].converged
    ]
    return {
        "chi_square_significant": argmin(lambda ix: abs(points[ix].chi_square - n_significant)),
        "chi_square_rank": (
            argmin(lambda ix: abs(points[ix].chi_square - rank)) if rank is not None else -1
        ),
        "steepest_covariance_growth": max(growth, key=lambda t: (t[0], -t[1]))[1] if growth else -1,
        "least_squares": converged[-1] if converged else -1,
        "reference_distance": argmin(lambda ix: points[ix].distance_to_reference),
    }
