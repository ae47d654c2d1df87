"""
Initial Estimators for kMRCD
============================

Each estimator ranks the observations from least to most outlying using only
the Gram matrix.  The first ``ceil(n * alpha)`` indices of a ranking seed one
kMRCD candidate.

Key Classes:
    InitialEstimator: Base class, ``rank(K, alpha) -> permutation``.
    SDOEstimator: Stahel-Donoho outlyingness over random feature-space
        directions.
    SpatialRankEstimator: Norm of the feature-space spatial rank function.
    SpatialMedianEstimator: Distance to the feature-space spatial median.
    SSCMEstimator: Robust distances in the eigenbasis of the spatial sign
        covariance matrix.  Ignores alpha.

Key Functions:
    get_estimator: Look an estimator up by name.

All rankings use stable sorts so equal scores keep index order, which makes
runs reproducible for a fixed ``random_state``.
"""

import logging
import math
from abc import ABC, abstractmethod
from typing import Dict, Optional, Type

import numpy as np

from kmrcd.centering import center_kernel
from kmrcd.exceptions import InvalidConfigurationError, ShapeMismatchError

logger = logging.getLogger(__name__)

_EIG_RTOL = 1e-8


# ---------------------------------------------------------------------------
# Kernel-space helpers
# ---------------------------------------------------------------------------

def _check_gram(K: np.ndarray) -> np.ndarray:
    K = np.asarray(K, dtype=float)
    if K.ndim != 2 or K.shape[0] != K.shape[1]:
        raise ShapeMismatchError(f"Gram matrix must be square, got shape {K.shape}")
    return K


def _squared_feature_distances(K: np.ndarray) -> np.ndarray:
    """‖φ(xᵢ) − φ(xⱼ)‖² for all pairs."""
    d = np.diag(K)
    return np.maximum(d[:, None] + d[None, :] - 2.0 * K, 0.0)


def _spatial_median_weights(
    K: np.ndarray,
    max_iter: int = 100,
    tol: float = 1e-8,
) -> np.ndarray:
    """Weiszfeld iterations for the spatial median in feature space.

    The median is kept as a convex combination Σ γⱼ φ(xⱼ); returns γ.
    """
    n = K.shape[0]
    diag = np.diag(K)
    gamma = np.full(n, 1.0 / n)
    for iteration in range(max_iter):
        d2 = diag - 2.0 * K @ gamma + gamma @ K @ gamma
        d = np.sqrt(np.maximum(d2, 1e-12))
        w = 1.0 / d
        new_gamma = w / w.sum()
        change = np.max(np.abs(new_gamma - gamma))
        gamma = new_gamma
        if change < tol:
            logger.debug(f"Spatial median converged after {iteration + 1} iterations")
            break
    return gamma


def _subset_mahalanobis(K: np.ndarray, subset: np.ndarray) -> np.ndarray:
    """Squared kernel Mahalanobis distances of all points w.r.t. a subset.

    Uses the kernel PCA of the subset: with Kc = U Λ Uᵀ the centered subset
    kernel, the covariance eigenvalues are Λ/nₕ and the projections of the
    centered point i on the unit axes are (Kt_c U)ᵢ / √Λ.
    """
    nh = len(subset)
    Kx = K[np.ix_(subset, subset)]
    Kt = K[:, subset]
    Kc = center_kernel(Kx)
    Kt_c = center_kernel(Kx, Kt)

    eigvals, eigvecs = np.linalg.eigh((Kc + Kc.T) / 2.0)
    keep = eigvals > _EIG_RTOL * max(eigvals.max(), 0.0)
    if not keep.any():
        return np.zeros(K.shape[0])

    proj = Kt_c @ eigvecs[:, keep]
    return nh * np.sum(proj ** 2 / eigvals[keep] ** 2, axis=1)


def _robust_standardized_distances(scores: np.ndarray) -> np.ndarray:
    """Σ ((s − median) / MAD)² over the columns with non-zero MAD."""
    med = np.median(scores, axis=0)
    dev = np.abs(scores - med)
    mad = np.median(dev, axis=0)
    usable = mad > 1e-12
    if not usable.any():
        return np.zeros(scores.shape[0])
    return np.sum((dev[:, usable] / mad[usable]) ** 2, axis=1)


def _order(scores: np.ndarray) -> np.ndarray:
    return np.argsort(scores, kind='stable')


# ---------------------------------------------------------------------------
# Estimators
# ---------------------------------------------------------------------------

class InitialEstimator(ABC):
    """Base class for initial outlyingness rankings.

    Subclasses implement ``_scores`` returning one outlyingness value per
    observation (lower = more central).  Estimators that use alpha then
    refine the ranking with kernel Mahalanobis distances to their
    ``ceil(n * alpha)`` most central points.
    """

    name: str = ''
    uses_alpha: bool = True

    def rank(self, K: np.ndarray, alpha: float) -> np.ndarray:
        """Rank observations from least to most outlying.

        Args:
            K: (n, n) Gram matrix.
            alpha: Fraction of observations assumed clean.

        Returns:
            Permutation of ``range(n)``, most typical first.
        """
        K = _check_gram(K)
        n = K.shape[0]
        order = _order(self._scores(K))
        if not self.uses_alpha or n < 2:
            return order

        h = min(n, max(2, math.ceil(n * alpha)))
        return _order(_subset_mahalanobis(K, order[:h]))

    @abstractmethod
    def _scores(self, K: np.ndarray) -> np.ndarray:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class SDOEstimator(InitialEstimator):
    """Stahel-Donoho outlyingness in feature space.

    Directions are differences φ(xᵢ) − φ(xⱼ) of random pairs of points; the
    projection of φ(x_k) on such a direction is K[k, i] − K[k, j] (up to a
    positive factor, which the robust standardization removes).

    Args:
        n_directions: Number of random directions.
        random_state: Seed for direction sampling.
    """

    name = 'SDO'

    def __init__(self, n_directions: int = 500, random_state: Optional[int] = 0):
        if n_directions < 1:
            raise InvalidConfigurationError(
                f"n_directions must be >= 1, got {n_directions!r}"
            )
        self.n_directions = n_directions
        self.random_state = random_state

    def _scores(self, K: np.ndarray) -> np.ndarray:
        n = K.shape[0]
        if n < 2:
            return np.zeros(n)

        rng = np.random.default_rng(self.random_state)
        first = rng.integers(0, n, size=self.n_directions)
        offset = rng.integers(1, n, size=self.n_directions)
        second = (first + offset) % n

        proj = K[:, first] - K[:, second]
        med = np.median(proj, axis=0)
        dev = np.abs(proj - med)
        mad = np.median(dev, axis=0)
        usable = mad > 1e-12
        if not usable.any():
            logger.debug("SDO: every direction has zero MAD")
            return np.zeros(n)
        return np.max(dev[:, usable] / mad[usable], axis=1)

    def __repr__(self) -> str:
        return (f"SDOEstimator(n_directions={self.n_directions}, "
                f"random_state={self.random_state!r})")


class SpatialRankEstimator(InitialEstimator):
    """Spatial rank function norm in feature space.

    ‖r(xᵢ)‖² with r(xᵢ) = (1/n) Σⱼ (φᵢ − φⱼ) / ‖φᵢ − φⱼ‖, expanded as

        n²‖rᵢ‖² = Kᵢᵢ (Σⱼ aᵢⱼ)² − 2 (Σⱼ aᵢⱼ)(Σⱼ aᵢⱼ Kᵢⱼ) + Σⱼₖ aᵢⱼ Kⱼₖ aᵢₖ

    where aᵢⱼ = 1/‖φᵢ − φⱼ‖ (0 for coincident points).
    """

    name = 'SpatialRank'

    def _scores(self, K: np.ndarray) -> np.ndarray:
        n = K.shape[0]
        dist = np.sqrt(_squared_feature_distances(K))
        inv = np.zeros_like(dist)
        nonzero = dist > 1e-12
        inv[nonzero] = 1.0 / dist[nonzero]

        row_sum = inv.sum(axis=1)
        row_k = np.sum(inv * K, axis=1)
        quad = np.sum((inv @ K) * inv, axis=1)
        r2 = np.diag(K) * row_sum ** 2 - 2.0 * row_sum * row_k + quad
        return np.maximum(r2, 0.0) / n ** 2


class SpatialMedianEstimator(InitialEstimator):
    """Distance to the spatial median in feature space."""

    name = 'SpatialMedian'

    def __init__(self, max_iter: int = 100, tol: float = 1e-8):
        self.max_iter = max_iter
        self.tol = tol

    def _scores(self, K: np.ndarray) -> np.ndarray:
        gamma = _spatial_median_weights(K, self.max_iter, self.tol)
        return np.diag(K) - 2.0 * K @ gamma + gamma @ K @ gamma


class SSCMEstimator(InitialEstimator):
    """Spatial sign covariance matrix in feature space.

    The data are centered at the feature-space spatial median and projected
    onto the eigenvectors of the covariance of their spatial signs
    (φ − μ)/‖φ − μ‖.  Observations are ranked by their squared distances
    after robust (median/MAD) standardization of every component.
    """

    name = 'SSCM'
    uses_alpha = False

    def _scores(self, K: np.ndarray) -> np.ndarray:
        n = K.shape[0]
        gamma = _spatial_median_weights(K)
        Kg = K @ gamma
        # Gram matrix of the points centered at the spatial median
        Km = K - Kg[:, None] - Kg[None, :] + gamma @ K @ gamma
        norms = np.sqrt(np.maximum(np.diag(Km), 0.0))
        inv_norms = np.zeros(n)
        inv_norms[norms > 1e-12] = 1.0 / norms[norms > 1e-12]

        signs = Km * inv_norms[:, None] * inv_norms[None, :]
        eigvals, eigvecs = np.linalg.eigh((signs + signs.T) / 2.0)
        keep = eigvals > _EIG_RTOL * max(eigvals.max(), 0.0)
        if not keep.any():
            return np.zeros(n)

        # <φᵢ − μ, uₖ> with uₖ = Σⱼ Vⱼₖ sⱼ / √λₖ
        scores = (Km * inv_norms[None, :]) @ eigvecs[:, keep] / np.sqrt(eigvals[keep])
        return _robust_standardized_distances(scores)


ESTIMATORS: Dict[str, Type[InitialEstimator]] = {
    'SDO': SDOEstimator,
    'SpatialRank': SpatialRankEstimator,
    'SpatialMedian': SpatialMedianEstimator,
    'SSCM': SSCMEstimator,
}


def get_estimator(name: str, random_state: Optional[int] = 0) -> InitialEstimator:
    """Construct an initial estimator by name.

    Args:
        name: One of ``'SDO'``, ``'SpatialRank'``, ``'SpatialMedian'``,
            ``'SSCM'``.
        random_state: Seed for stochastic estimators (SDO).
    """
    try:
        estimator_cls = ESTIMATORS[name]
    except KeyError:
        raise InvalidConfigurationError(
            f"Unknown estimator: {name!r}. Expected one of {sorted(ESTIMATORS)}."
        ) from None

    if estimator_cls is SDOEstimator:
        return SDOEstimator(random_state=random_state)
    return estimator_cls()
