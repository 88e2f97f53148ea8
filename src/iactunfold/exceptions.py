"""Typed exceptions raised by the unfolding engine."""


class UnfoldingError(RuntimeError):
    """Base exception; raised directly when no grid point of a scan converged."""


class SetupError(UnfoldingError, ValueError):
    """Raised for invalid inputs: dimension mismatch, non positive-definite covariance."""


class ConvergenceError(UnfoldingError):
    """Raised when a solver does not converge at a single regularization strength."""

    def __init__(self, method: str, strength: float, reason: str):
        """Initialize with the failing method and strength.

        Parameters
        ----------
        method : str
            Name of the solver
        strength : float
            Regularization strength at which the solver failed
        reason : str
            Short description of the failure
        """
        self.method = method
        self.strength = strength
        self.reason = reason
        super().__init__(f"{method}: no convergence at strength {strength:.4g} ({reason})")


class SmoothingError(UnfoldingError):
    """Raised when the response smoothing fit cannot be set up."""
