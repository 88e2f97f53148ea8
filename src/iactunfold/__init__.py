# iactunfold/__init__.py
__all__ = [
    "Unfolder",
    "Normalization",
    "NormalizationMode",
    "UnfoldedSpectrum",
    "ScanPoint",
    "ScanResult",
    "SmoothingResult",
    "GramSystem",
    "UnfoldingError",
    "SetupError",
    "ConvergenceError",
    "SmoothingError",
]

from .unfolder import Unfolder
from .results import (
    GramSystem,
    Normalization,
    NormalizationMode,
    ScanPoint,
    ScanResult,
    SmoothingResult,
    UnfoldedSpectrum,
)
from .exceptions import ConvergenceError, SetupError, SmoothingError, UnfoldingError
