"""
Data containers shared by the unfolding methods.

All arrays are plain ``numpy`` arrays owned by the container; the
containers themselves are created by :class:`iactunfold.Unfolder` and handed
to the caller.
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Dict, Optional, Tuple

import numpy as np
import pandas as pd


class NormalizationMode(Enum):
    """How the total content of the unfolded distribution is obtained."""

    BY_INTEGRAL = "integral"
    FIXED = "fixed"


@dataclass(frozen=True)
class Normalization:
    """
    Normalization option for the Tikhonov and Schmelling methods.

    ``Normalization.by_integral()`` fits the scale analytically as the
    least-squares factor ``(alpha C^-1 a) / (alpha C^-1 alpha)`` with
    ``alpha = M p``; ``Normalization.fixed(value)`` pins the total content.
    """

    mode: NormalizationMode = NormalizationMode.BY_INTEGRAL
    value: Optional[float] = None

    def __post_init__(self):
        if self.mode is NormalizationMode.FIXED:
            if self.value is None or not np.isfinite(self.value) or self.value <= 0:
                raise ValueError(
                    f"Fixed normalization needs a positive value, got {self.value}"
                )

    @classmethod
    def by_integral(cls) -> "Normalization":
        return cls(NormalizationMode.BY_INTEGRAL)

    @classmethod
    def fixed(cls, value: float) -> "Normalization":
        return cls(NormalizationMode.FIXED, float(value))

    @property
    def is_fitted(self) -> bool:
        return self.mode is NormalizationMode.BY_INTEGRAL


@dataclass(frozen=True)
class GramSystem:
    """
    Eigen-decomposition of ``G = M M^T``.

    Attributes
    ----------
    gram : np.ndarray
        Matrix G, shape (Na, Na)
    eigenvalues : np.ndarray
        Eigenvalues sorted in descending order, shape (Na,)
    eigenvectors : np.ndarray
        Orthonormal eigenvectors as columns, shape (Na, Na)
    tau : float
        Step size 1 / lambda_max
    rank : int
        Number of eigenvalues above ``eps_lambda``
    eps_lambda : float
        Threshold below which eigenvalues are treated as zero
    """

    gram: np.ndarray
    eigenvalues: np.ndarray
    eigenvectors: np.ndarray
    tau: float
    rank: int
    eps_lambda: float

    @property
    def retained(self) -> np.ndarray:
        """Boolean mask of the eigenvalues above threshold."""
        return self.eigenvalues >= self.eps_lambda


@dataclass(frozen=True)
class ScanPoint:
    """One row of a regularization-strength scan."""

    strength: float
    converged: bool
    chi_square: float = 0.0
    effective_rank: float = 0.0
    covariance_trace: float = 0.0
    second_derivative_penalty: float = 0.0
    zero_derivative_penalty: float = 0.0
    entropy: float = 0.0
    resolution_asymmetry: float = 0.0
    distance_to_reference: float = float("nan")

    @classmethod
    def failed(cls, strength: float) -> "ScanPoint":
        """Point marking a strength where the solver did not converge."""
        return cls(strength=float(strength), converged=False)

    def as_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class PointSolution:
    """Solution of a solver at a single strength, with its scan summary."""

    point: ScanPoint
    values: np.ndarray
    covariance: np.ndarray
    chi2_contributions: np.ndarray
    extras: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ScanResult:
    """
    Complete scan of the regularization strength.

    Attributes
    ----------
    method : str
        Name of the solver which produced the scan
    points : Tuple[ScanPoint, ...]
        Scan points, ordered by increasing strength
    trace_cov_a : float
        Trace of the covariance of the measured distribution
    best_index : int
        Index of the selected point, -1 if none converged
    alternatives : Dict[str, int]
        Indices preferred by the other (diagnostic only) heuristics
    """

    method: str
    points: Tuple[ScanPoint, ...]
    trace_cov_a: float
    best_index: int = -1
    alternatives: Dict[str, int] = field(default_factory=dict)

    def __len__(self) -> int:
        return len(self.points)

    @property
    def strengths(self) -> np.ndarray:
        return np.array([p.strength for p in self.points], dtype=float)

    @property
    def best_point(self) -> Optional[ScanPoint]:
        if self.best_index < 0:
            return None
        return self.points[self.best_index]

    def select(self) -> int:
        """Run the best-strength selection on the stored points."""
        from .unfolding_helpers import select_best_index

        return select_best_index(self.points, self.trace_cov_a)

    def to_frame(self) -> pd.DataFrame:
        """
        Export the scan as a DataFrame, one row per strength.

        The column ``covariance_ratio`` is ``covariance_trace / trace_cov_a``
        and ``selected`` flags the chosen point.
        """
        df = pd.DataFrame([p.as_dict() for p in self.points])
        if self.trace_cov_a > 0:
            df["covariance_ratio"] = df["covariance_trace"] / self.trace_cov_a
        else:
            df["covariance_ratio"] = np.nan
        df["selected"] = False
        if self.best_index >= 0:
            df.loc[self.best_index, "selected"] = True
        return df


@dataclass
class UnfoldedSpectrum:
    """
    Final result of an unfolding run.

    Attributes
    ----------
    method : str
        Solver name ('Tikhonov', 'Bertero' or 'Schmelling')
    values : np.ndarray
        Unfolded distribution b, shape (Nb,)
    covariance : np.ndarray
        Covariance of b, shape (Nb, Nb)
    chi2_contributions : np.ndarray
        Per measured bin chi-square contributions, shape (Na,)
    chi_square : float
        Total chi-square
    ndf : float
        Effective number of degrees of freedom
    probability : float
        Chi-square probability for ``round(ndf)`` degrees of freedom
    strength : float
        Selected regularization strength
    scan : ScanResult
        The regularization scan the strength was selected from
    response : np.ndarray
        Response matrix used by the solver
    extras : Dict[str, Any]
        Method specific output (e.g. asymmetric errors, Lagrange multipliers)
    """

    method: str
    values: np.ndarray
    covariance: np.ndarray
    chi2_contributions: np.ndarray
    chi_square: float
    ndf: float
    probability: float
    strength: float
    scan: ScanResult
    response: np.ndarray
    extras: Dict[str, Any] = field(default_factory=dict)

    @property
    def errors(self) -> np.ndarray:
        """Square roots of the covariance diagonal."""
        return np.sqrt(np.clip(np.diag(self.covariance), 0.0, None))

    @property
    def best_index(self) -> int:
        return self.scan.best_index

    @property
    def integral(self) -> float:
        return float(np.sum(self.values))

    def to_frame(self) -> pd.DataFrame:
        """Unfolded values and errors per true bin."""
        return pd.DataFrame(
            {"bin": np.arange(len(self.values)), "value": self.values, "error": self.errors}
        )


@dataclass
class SmoothingResult:
    """
    Outcome of the parametric fit to the response matrix.

    Attributes
    ----------
    parameters : Dict[str, float]
        Fitted a0, a1, a2 (mean) and b0, b1, b2 (RMS) parameters
    parameter_errors : Dict[str, float]
        Parabolic errors of the parameters
    covariance : np.ndarray
        Parameter covariance, shape (6, 6)
    response : np.ndarray
        Smoothed, column-normalized response, shape (Na, Nb)
    response_err2 : np.ndarray
        Propagated squared errors of the smoothed response
    chi2_cells : np.ndarray
        Chi-square contribution of each cell (zero for excluded cells)
    chi_square : float
        Total chi-square of the fit
    n_points : int
        Number of cells entering the fit
    ndf : int
        ``n_points`` minus number of parameters
    probability : float
        Chi-square probability of the fit
    converged : bool
        Whether the fit converged
    message : str
        Message of the least-squares solver
    """

    parameters: Dict[str, float]
    parameter_errors: Dict[str, float]
    covariance: np.ndarray
    response: np.ndarray
    response_err2: np.ndarray
    chi2_cells: np.ndarray
    chi_square: float
    n_points: int
    ndf: int
    probability: float
    converged: bool
    message: str = ""
