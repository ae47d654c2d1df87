"""
Error Taxonomy for kMRCD
========================

All errors raised by the package derive from :class:`KMRCDError`.  Each one
also derives from the closest builtin so callers that only know about
``ValueError`` / ``RuntimeError`` keep working.

Propagation:
    - Configuration and shape problems are raised immediately.
    - ``CalibrationError`` is absorbed per candidate by the detector (the
      candidate is left out of the run-level rho rule).
    - ``ConvergenceError`` is recorded per candidate and reported; the run
      only fails with ``NoConvergedCandidateError`` when nothing converged.
    - ``RunTimeoutError`` always aborts the run.
"""

from typing import Any, Dict, List, Optional


class KMRCDError(Exception):
    """Base class for all kMRCD errors."""


class InvalidConfigurationError(KMRCDError, ValueError):
    """Alpha out of range, empty estimator set, bad kernel parameters, ..."""


class ShapeMismatchError(KMRCDError, ValueError):
    """Observation or kernel matrices with incompatible dimensions."""


class CalibrationError(KMRCDError, RuntimeError):
    """No usable regularization weight could be found for an h-subset."""


class ConvergenceError(KMRCDError, RuntimeError):
    """A candidate exhausted its C-step budget without reaching a fixed point."""

    def __init__(self, message: str, estimator: Optional[str] = None,
                 n_iterations: Optional[int] = None):
        super().__init__(message)
        self.estimator = estimator
        self.n_iterations = n_iterations


class NoConvergedCandidateError(ConvergenceError):
    """Candidate selection had nothing to choose from.

    Attributes:
        candidates: Per-estimator summaries (name, status, objective, rho,
            iterations, error) so callers can see what went wrong where.
    """

    def __init__(self, message: str,
                 candidates: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.candidates = candidates or []


class RunTimeoutError(KMRCDError, TimeoutError):
    """The wall-clock budget ran out before every candidate converged."""
