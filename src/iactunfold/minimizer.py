"""
Bounded nonlinear minimizer used by the Tikhonov method.

Thin layer over :func:`scipy.optimize.minimize` providing what the solvers
need from a MINUIT-like fitter: positional parameters with cosmetic names,
start values, steps and bounds, a covariance matrix from the numerical
Hessian, a quality flag and a final evaluation pass.
"""
from __future__ import annotations

from dataclasses import dataclass, field
import logging
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.linalg import LinAlgError, cho_factor, cho_solve
from scipy.optimize import brentq, minimize

from .constants import (
    MAX_MINIMIZER_ITERATIONS,
    MINIMIZER_FTOL,
    MINIMIZER_GTOL,
    MINIMIZER_STALL_GRADIENT,
)

logger = logging.getLogger(__name__)

# covariance quality levels (same meaning as MINUIT's istat)
QUALITY_NONE = 0
QUALITY_NOT_POSDEF = 2
QUALITY_ACCURATE = 3


@dataclass
class MinimizerResult:
    """
    Result of :meth:`Minimizer.minimize`.

    Attributes
    ----------
    values : np.ndarray
        Parameter values at the minimum
    fval : float
        Objective value at the minimum
    converged : bool
        True if the minimization converged and the covariance is accurate
    status : int
        0 no covariance, 2 Hessian not positive-definite, 3 accurate
    covariance : Optional[np.ndarray]
        Parameter covariance ``2 * up * H^-1`` (None unless quality is 3)
    errors : Optional[np.ndarray]
        Parabolic errors (sqrt of the covariance diagonal)
    n_calls : int
        Number of objective evaluations
    message : str
        Message of the underlying scipy method
    names : List[str]
        Parameter names, for logging
    """

    values: np.ndarray
    fval: float
    converged: bool
    status: int
    covariance: Optional[np.ndarray]
    errors: Optional[np.ndarray]
    n_calls: int
    message: str
    names: List[str] = field(default_factory=list)


class Minimizer:
    """
    Minimize ``objective(values, final)`` within box bounds.

    Parameters
    ----------
    objective : Callable[[np.ndarray, bool], float]
        Function to minimize. ``final`` is False during minimization and
        True for the single evaluation done after convergence.
    names : Sequence[str]
        Parameter names (logging only)
    start : np.ndarray
        Start values
    steps : np.ndarray
        Typical step sizes, used to scale the Hessian differences
    bounds : Sequence[Tuple[Optional[float], Optional[float]]]
        Lower and upper bound per parameter, None for unbounded
    max_iterations : int, optional
        Iteration limit, default: MAX_MINIMIZER_ITERATIONS
    up : float, optional
        Error definition: objective change defining one standard deviation
    """

    def __init__(
        self,
        objective: Callable[[np.ndarray, bool], float],
        names: Sequence[str],
        start: np.ndarray,
        steps: np.ndarray,
        bounds: Sequence[Tuple[Optional[float], Optional[float]]],
        max_iterations: int = MAX_MINIMIZER_ITERATIONS,
        up: float = 1.0,
    ):
        start = np.asarray(start, dtype=float)
        if start.ndim != 1:
            raise ValueError("start must be a 1D array")
        if not (len(names) == len(start) == len(steps) == len(bounds)):
            raise ValueError(
                "names, start, steps and bounds must have the same length, got "
                f"{len(names)}, {len(start)}, {len(steps)}, {len(bounds)}"
            )
        self.objective = objective
        self.names = list(names)
        self.start = start.copy()
        self.steps = np.abs(np.asarray(steps, dtype=float))
        self.bounds = list(bounds)
        self.max_iterations = int(max_iterations)
        self.up = float(up)
        self.n_calls = 0

    @property
    def n_parameters(self) -> int:
        return len(self.start)

    def _fcn(self, x: np.ndarray) -> float:
        self.n_calls += 1
        return float(self.objective(np.asarray(x, dtype=float), False))

    def _clip(self, x: np.ndarray) -> np.ndarray:
        lo = np.array([-np.inf if b[0] is None else b[0] for b in self.bounds])
        hi = np.array([np.inf if b[1] is None else b[1] for b in self.bounds])
        return np.minimum(np.maximum(x, lo), hi)

    def hessian(self, x: np.ndarray) -> np.ndarray:
        """Central-difference Hessian of the objective at ``x``."""
        n = len(x)
        h = 1e-4 * np.maximum(np.abs(x), 1.0)
        h = np.minimum(h, np.where(self.steps > 0, self.steps, h))
        f0 = self._fcn(x)
        H = np.zeros((n, n))
        for i in range(n):
            ei = np.zeros(n)
            ei[i] = h[i]
            fp = self._fcn(x + ei)
            fm = self._fcn(x - ei)
            H[i, i] = (fp - 2.0 * f0 + fm) / h[i] ** 2
            for j in range(i):
                ej = np.zeros(n)
                ej[j] = h[j]
                fpp = self._fcn(x + ei + ej)
                fpm = self._fcn(x + ei - ej)
                fmp = self._fcn(x - ei + ej)
                fmm = self._fcn(x - ei - ej)
                H[i, j] = H[j, i] = (fpp - fpm - fmp + fmm) / (4.0 * h[i] * h[j])
        return H

    def projected_gradient(self, x: np.ndarray, gradient: np.ndarray) -> np.ndarray:
        """Gradient with the components pushing out of an active bound set to zero."""
        x = np.asarray(x, dtype=float)
        g = np.array(gradient, dtype=float)
        for i, (lo, hi) in enumerate(self.bounds):
            if lo is not None and x[i] <= lo and g[i] > 0:
                g[i] = 0.0
            if hi is not None and x[i] >= hi and g[i] < 0:
                g[i] = 0.0
        return g

    def stalled(self, res, x0: np.ndarray) -> bool:
        """
        True if L-BFGS-B stopped at ``x0`` with a non-negligible gradient there.

        This happens when every line-search trial hits a penalty region; scipy
        then reports success with a relative-reduction message.
        """
        if not np.array_equal(np.asarray(res.x, dtype=float), x0):
            return False
        jac = getattr(res, "jac", None)
        if jac is None:
            return False
        limit = MINIMIZER_STALL_GRADIENT * max(1.0, abs(float(res.fun)))
        return bool(np.max(np.abs(self.projected_gradient(x0, jac))) > limit)

    def minimize(self) -> MinimizerResult:
        """
        Run the minimization.

        L-BFGS-B is tried first; if it fails, Nelder-Mead is started from its
        end point (the way MINIMIZE falls back to SIMPLEX). On success the
        Hessian is evaluated, the covariance derived and the objective called
        once more with ``final=True``.
        """
        self.n_calls = 0
        x0 = self._clip(self.start)
        options = {
            "maxiter": self.max_iterations,
            "maxfun": self.max_iterations,
            "ftol": MINIMIZER_FTOL,
            "gtol": MINIMIZER_GTOL,
        }
        res = minimize(
            self._fcn, x0, method="L-BFGS-B", jac="3-point", bounds=self.bounds, options=options
        )
        if res.success and self.stalled(res, x0):
            res.success = False
            res.message = f"stalled at the start point ({res.message})"
        if not res.success:
            logger.debug("L-BFGS-B failed (%s), switching to Nelder-Mead", res.message)
            res = minimize(
                self._fcn,
                self._clip(res.x),
                method="Nelder-Mead",
                bounds=self.bounds,
                options={"maxiter": self.max_iterations, "xatol": 1e-12, "fatol": 1e-14},
            )

        x = np.asarray(res.x, dtype=float)
        fval = float(res.fun)
        covariance = None
        errors = None
        quality = QUALITY_NONE
        if res.success and np.isfinite(fval):
            H = self.hessian(x)
            try:
                factor = cho_factor(0.5 * (H + H.T))
                covariance = 2.0 * self.up * cho_solve(factor, np.eye(len(x)))
                errors = np.sqrt(np.diag(covariance))
                quality = QUALITY_ACCURATE
            except LinAlgError:
                quality = QUALITY_NOT_POSDEF

        converged = bool(res.success) and quality == QUALITY_ACCURATE
        if converged:
            self.objective(x, True)
        else:
            logger.debug(
                "Minimization failed: fmin=%g, quality=%d, message=%s",
                fval, quality, res.message,
            )

        return MinimizerResult(
            values=x,
            fval=fval,
            converged=converged,
            status=quality,
            covariance=covariance,
            errors=errors,
            n_calls=self.n_calls,
            message=str(res.message),
            names=self.names,
        )

    def asymmetric_errors(self, result: MinimizerResult) -> Tuple[np.ndarray, np.ndarray]:
        """
        Positive and negative errors from the ``fmin + up`` crossings.

        Each parameter is moved alone (the others fixed at the minimum) until
        the objective rises by ``up``. Where no crossing exists inside the
        bounds the error is reported as 0.

        Returns
        -------
        Tuple[np.ndarray, np.ndarray]
            ``eplus`` (>= 0) and ``eminus`` (<= 0)
        """
        x0 = result.values
        target = result.fval + self.up
        n = len(x0)
        eplus = np.zeros(n)
        eminus = np.zeros(n)
        for i in range(n):
            sigma = result.errors[i] if result.errors is not None else self.steps[i]
            sigma = sigma if sigma > 0 else 1e-3
            lo, hi = self.bounds[i]

            def g(t, i=i):
                x = x0.copy()
                x[i] = t
                return self._fcn(x) - target

            for sign, out in ((1.0, eplus), (-1.0, eminus)):
                limit = hi if sign > 0 else lo
                edge = x0[i]
                for _ in range(30):
                    trial = edge + sign * sigma
                    if limit is not None and sign * (trial - limit) > 0:
                        trial = limit
                    if g(trial) > 0:
                        out[i] = brentq(g, edge, trial, xtol=1e-12) - x0[i]
                        break
                    if limit is not None and trial == limit:
                        break
                    edge = trial
                    sigma *= 2.0
        return eplus, eminus
