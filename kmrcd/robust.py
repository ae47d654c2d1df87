"""
Robust Scale Helpers
====================

Key Functions:
    mcd_consistency_factor: Finite-sample consistency factor of the (R)MCD
        scatter estimate for p variables at coverage alpha.
    unimcd: Exact univariate MCD location and scale, used to calibrate the
        outlier cutoff on the log-rescaled robust distances.

Both assume Gaussian data for consistency, like the classical MCD.
"""

import logging
from typing import Tuple

import numpy as np
from scipy import stats

from kmrcd.exceptions import InvalidConfigurationError

logger = logging.getLogger(__name__)


def mcd_consistency_factor(p: int, alpha: float) -> float:
    """Consistency factor for an h-subset covariance with coverage ``alpha``.

    The covariance of the ``alpha`` fraction of Gaussian points closest to the
    center underestimates the true covariance; multiplying by

        c = alpha / F_{Γ(p/2 + 1)}(χ²_{p, alpha} / 2)

    removes the bias.

    Args:
        p: Number of variables (> 0).
        alpha: Coverage in (0, 1].

    Returns:
        The factor (>= 1).
    """
    if p < 1:
        raise InvalidConfigurationError(f"p must be >= 1, got {p!r}")
    if not 0.0 < alpha <= 1.0:
        raise InvalidConfigurationError(f"alpha must lie in (0, 1], got {alpha!r}")
    if alpha == 1.0:
        return 1.0

    q_alpha = stats.chi2.ppf(alpha, p)
    return float(alpha / stats.gamma.cdf(q_alpha / 2.0, p / 2.0 + 1.0))


def unimcd(values: np.ndarray, h: int) -> Tuple[float, float]:
    """Univariate MCD location and scale.

    Algorithm:
        1. Sort the values and find the window of ``h`` consecutive values
           with the smallest sum of squared deviations (middle one on ties).
        2. Raw estimate: window mean and consistency-corrected window
           variance, rescaled so the h-th smallest standardized residual
           matches the χ²₁ quantile at h/n.
        3. Reweight: keep the values whose standardized residual is within
           the χ²₁ 97.5% quantile and return their mean and standard
           deviation.

    Args:
        values: 1-D array of values.
        h: Window size, 1 <= h <= len(values).

    Returns:
        (location, scale)
    """
    y = np.asarray(values, dtype=float).ravel()
    n = y.size
    if not 1 <= h <= n:
        raise InvalidConfigurationError(f"h must lie in [1, {n}], got {h!r}")

    if h == n:
        scale = float(np.std(y, ddof=1)) if n > 1 else 0.0
        return float(np.mean(y)), scale

    ys = np.sort(y)
    n_windows = n - h + 1

    csum = np.concatenate(([0.0], np.cumsum(ys)))
    csum2 = np.concatenate(([0.0], np.cumsum(ys ** 2)))
    window_sum = csum[h:] - csum[:n_windows]
    window_sq = np.maximum(
        (csum2[h:] - csum2[:n_windows]) - window_sum ** 2 / h, 0.0
    )

    sq_min = window_sq.min()
    ties = np.flatnonzero(window_sq == sq_min)
    init_mean = window_sum[ties[(len(ties) + 1) // 2 - 1]] / h

    init_var = mcd_consistency_factor(1, h / n) * sq_min / h
    if init_var <= 0:
        logger.debug("unimcd: zero-variance window, scale is 0")
        return float(init_mean), 0.0

    residuals = (y - init_mean) ** 2 / init_var
    init_var *= np.sort(residuals)[h - 1] / stats.chi2.ppf(h / n, 1)
    if init_var <= 0:
        return float(init_mean), 0.0

    residuals = (y - init_mean) ** 2 / init_var
    weights = residuals <= stats.chi2.ppf(0.975, 1)

    location = float(np.mean(y[weights]))
    n_kept = int(weights.sum())
    if n_kept < 2:
        return location, 0.0
    scale = float(np.sqrt(np.sum((y[weights] - location) ** 2) / (n_kept - 1)))
    return location, scale
