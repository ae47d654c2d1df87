"""
Regularization Calibration for kMRCD
====================================

Chooses the regularization weight ρ so that the regularized, centered
kernel of an h-subset has a target condition number.

With e_min, e_max the extreme singular values of the centered subset kernel,
nₓ the subset size and c the consistency factor, the condition number of
(1−ρ)·c·Kc + nₓ·ρ·I is

    κ(ρ) = (nₓρ + (1−ρ)·c·e_max) / (nₓρ + (1−ρ)·c·e_min)

and ρ solves κ(ρ) = target on the bracket (1e-6, 0.99).  When κ − target
does not change sign on the bracket (typically an already well-conditioned
subset) a dense grid search picks the ρ with κ closest to the target.

Key Functions:
    calibrate_rho: ρ for the Gram matrix of one h-subset.
    calibrate_rho_from_spectrum: Same, from the extreme singular values.
    select_run_rho: Combine per-candidate ρ values into the run-level ρ.
"""

import logging
from typing import Callable, Sequence, Tuple

import numpy as np
from scipy import optimize

from kmrcd.centering import center_kernel
from kmrcd.exceptions import CalibrationError

logger = logging.getLogger(__name__)

DEFAULT_TARGET_CONDITION = 50.0
DEFAULT_RHO_BRACKET = (1e-6, 0.99)
DEFAULT_GRID_BOUNDS = (1e-6, 1.0 - 1e-6)
DEFAULT_GRID_POINTS = 1000


def condition_gap(
    nx: int,
    scfac: float,
    e_min: float,
    e_max: float,
    target_condition: float = DEFAULT_TARGET_CONDITION,
) -> Callable[[np.ndarray], np.ndarray]:
    """Return f(ρ) = κ(ρ) − target as a vectorised callable."""
    def _gap(rho):
        rho = np.asarray(rho, dtype=float)
        num = nx * rho + (1.0 - rho) * scfac * e_max
        den = nx * rho + (1.0 - rho) * scfac * e_min
        with np.errstate(divide='ignore', invalid='ignore'):
            return num / den - target_condition
    return _gap


def calibrate_rho_from_spectrum(
    e_min: float,
    e_max: float,
    nx: int,
    scfac: float,
    target_condition: float = DEFAULT_TARGET_CONDITION,
    bracket: Tuple[float, float] = DEFAULT_RHO_BRACKET,
    grid_bounds: Tuple[float, float] = DEFAULT_GRID_BOUNDS,
    grid_points: int = DEFAULT_GRID_POINTS,
) -> float:
    """Solve κ(ρ) = target for ρ.

    Args:
        e_min: Smallest singular value of the centered subset kernel.
        e_max: Largest singular value of the centered subset kernel.
        nx: Subset size.
        scfac: Consistency factor.
        target_condition: Condition number to reach.
        bracket: Root-finding bracket.
        grid_bounds: Range of the fallback grid.
        grid_points: Resolution of the fallback grid.

    Returns:
        ρ in (0, 1).

    Raises:
        CalibrationError: Zero-variance subset, or κ not finite anywhere on
            the grid.
    """
    if not (np.isfinite(e_min) and np.isfinite(e_max)) or e_max <= 0:
        raise CalibrationError(
            f"Degenerate subset spectrum (e_min={e_min!r}, e_max={e_max!r})"
        )

    gap = condition_gap(nx, scfac, e_min, e_max, target_condition)
    lo, hi = bracket

    try:
        rho = optimize.brentq(lambda r: float(gap(r)), lo, hi)
    except ValueError:
        # No sign change on the bracket
        grid = np.linspace(grid_bounds[0], grid_bounds[1], grid_points)
        obj = np.abs(gap(grid))
        if not np.isfinite(obj).any():
            raise CalibrationError(
                "Condition-number gap is not finite anywhere on the grid"
            ) from None
        # nanargmin returns the first minimum, i.e. the smallest ρ on ties
        rho = float(grid[np.nanargmin(obj)])
        logger.debug(
            f"No root of the condition gap in {bracket}; grid search gives "
            f"rho={rho:.6g} (|gap|={obj[np.nanargmin(obj)]:.3g})"
        )

    if not 0.0 < rho < 1.0:
        raise CalibrationError(f"Calibrated rho={rho!r} outside (0, 1)")
    return float(rho)


def calibrate_rho(
    Kx: np.ndarray,
    scfac: float,
    target_condition: float = DEFAULT_TARGET_CONDITION,
    bracket: Tuple[float, float] = DEFAULT_RHO_BRACKET,
    grid_bounds: Tuple[float, float] = DEFAULT_GRID_BOUNDS,
    grid_points: int = DEFAULT_GRID_POINTS,
) -> float:
    """ρ for the (uncentered) Gram matrix ``Kx`` of an h-subset."""
    s = np.linalg.svd(center_kernel(Kx), compute_uv=False)
    return calibrate_rho_from_spectrum(
        e_min=float(s.min()),
        e_max=float(s.max()),
        nx=Kx.shape[0],
        scfac=scfac,
        target_condition=target_condition,
        bracket=bracket,
        grid_bounds=grid_bounds,
        grid_points=grid_points,
    )


def select_run_rho(rhos: Sequence[float]) -> float:
    """Run-level ρ: the largest ρᵢ not exceeding max(0.1, median(ρᵢ)).

    Keeps a single badly conditioned candidate from dictating the
    regularization of every other one.
    """
    rhos = np.asarray([r for r in rhos if np.isfinite(r)], dtype=float)
    if rhos.size == 0:
        raise CalibrationError("No candidate produced a usable rho")
    limit = max(0.1, float(np.median(rhos)))
    return float(rhos[rhos <= limit].max())
