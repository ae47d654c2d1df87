"""
Feature-Space Centering of Gram Matrices
========================================

Centers kernel matrices in feature space without materialising the feature
vectors, using the double-centering identity:

    Kc = K − 1·mᵀ − m·1ᵀ + M

where ``m`` are the row means of ``K`` and ``M`` its grand mean.  A cross
kernel ``Kt`` (nt, n) between other observations and the ones behind ``K``
is centered against the mean of the latter:

    Kt_c = Kt − 1·mᵀ − mt·1ᵀ + M

with ``mt`` the row means of ``Kt``.
"""

from typing import Optional

import numpy as np

from kmrcd.exceptions import ShapeMismatchError


def center_kernel(K: np.ndarray, Kt: Optional[np.ndarray] = None) -> np.ndarray:
    """Center a Gram matrix, or a cross kernel against it.

    Args:
        K: (n, n) Gram matrix of the reference observations.
        Kt: Optional (nt, n) cross kernel between nt other observations and
            the reference observations.

    Returns:
        The centered ``K`` when ``Kt`` is None, otherwise the centered
        ``Kt`` of shape (nt, n).  Inputs are never modified.
    """
    K = np.asarray(K, dtype=float)
    if K.ndim != 2 or K.shape[0] != K.shape[1]:
        raise ShapeMismatchError(f"Gram matrix must be square, got shape {K.shape}")

    row_means = K.mean(axis=1)
    grand_mean = row_means.mean()

    if Kt is None:
        return K - row_means[None, :] - row_means[:, None] + grand_mean

    Kt = np.asarray(Kt, dtype=float)
    if Kt.ndim != 2 or Kt.shape[1] != K.shape[0]:
        raise ShapeMismatchError(
            f"Cross kernel must have {K.shape[0]} columns, got shape {Kt.shape}"
        )
    return Kt - row_means[None, :] - Kt.mean(axis=1)[:, None] + grand_mean
