"""
Kernel Abstraction for kMRCD
============================

Provides the kernel layer the kMRCD estimator works through.  The estimator
never touches feature vectors; it only asks a kernel for Gram matrices
between two sets of observations.

Key Classes:
    KernelConfig: Configuration dataclass for all kernel types.
    LinearKernel: K(a, b) = a·b.  kMRCD with this kernel is plain MRCD.
    PolynomialKernel: K(a, b) = (a·b + c)^d.
    RBFKernel: K(a, b) = exp(-‖a − b‖² / (2σ²)).

Key Functions:
    build_kernel: Factory that constructs the right kernel from config.

Design Decisions
----------------
- Observations are rows.  A 1-D input is read as n observations of a single
  variable.

- Kernels are stateless given their config.  ``compute_matrix(x1)`` and
  ``compute_matrix(x1, x1)`` return the same matrix.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional

import numpy as np

from kmrcd.exceptions import InvalidConfigurationError, ShapeMismatchError

logger = logging.getLogger(__name__)


@dataclass
class KernelConfig:
    """Configuration for kernels.

    Attributes
    ----------
    kernel_type : str
        ``'linear'`` (default), ``'poly'`` or ``'rbf'``.
    degree : int
        Degree of the polynomial kernel.
    coef0 : float
        Additive constant ``c`` of the polynomial kernel.
    bandwidth : float
        σ of the RBF kernel.
    """
    kernel_type: str = 'linear'
    degree: int = 2
    coef0: float = 1.0
    bandwidth: float = 1.0


def _as_observations(x: np.ndarray) -> np.ndarray:
    """Return ``x`` as a float (n, p) matrix."""
    x = np.asarray(x, dtype=float)
    if x.ndim == 1:
        x = x.reshape(-1, 1)
    if x.ndim != 2:
        raise ShapeMismatchError(
            f"Observations must be a 1-D or 2-D array, got shape {x.shape}"
        )
    return x


def _prepare_pair(x1: np.ndarray, x2: Optional[np.ndarray]):
    x1 = _as_observations(x1)
    x2 = x1 if x2 is None else _as_observations(x2)
    if x1.shape[1] != x2.shape[1]:
        raise ShapeMismatchError(
            f"Column count mismatch: {x1.shape[1]} vs {x2.shape[1]}"
        )
    return x1, x2


class Kernel(ABC):
    """Abstract base class for kernels.

    All kernels must provide ``compute_matrix(x1, x2)`` returning the
    (n1, n2) Gram matrix between the rows of ``x1`` and ``x2``.
    """

    kernel_type = 'linear'

    def __init__(self, config: Optional[KernelConfig] = None):
        if config is None:
            config = KernelConfig(kernel_type=self.kernel_type)
        self.config = config
        self.validate()

    def validate(self) -> None:
        """Raise ``InvalidConfigurationError`` for unusable parameters."""

    @abstractmethod
    def compute_matrix(
        self,
        x1: np.ndarray,
        x2: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """Compute the Gram matrix K(x1, x2).

        Parameters
        ----------
        x1 : ndarray, shape (n1, p)
        x2 : ndarray, shape (n2, p), or None (same as x1)

        Returns
        -------
        K : ndarray, shape (n1, n2)
        """
        ...

    def get_all_params(self) -> Dict[str, float]:
        """Return the kernel parameters."""
        return {'kernel_type': self.kernel_type}

    def __repr__(self) -> str:
        params = ', '.join(
            f"{k}={v!r}" for k, v in self.get_all_params().items()
            if k != 'kernel_type'
        )
        return f"{type(self).__name__}({params})"


class LinearKernel(Kernel):
    """Linear kernel.

    K(a, b) = a·b
    """

    def compute_matrix(
        self,
        x1: np.ndarray,
        x2: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        x1, x2 = _prepare_pair(x1, x2)
        return x1 @ x2.T


class PolynomialKernel(Kernel):
    """Inhomogeneous polynomial kernel.

    K(a, b) = (a·b + c)^d
    """

    kernel_type = 'poly'

    def validate(self) -> None:
        degree = self.config.degree
        if int(degree) != degree or degree < 1:
            raise InvalidConfigurationError(
                f"Polynomial degree must be a positive integer, got {degree!r}"
            )
        if self.config.coef0 < 0:
            raise InvalidConfigurationError(
                f"Polynomial coef0 must be non-negative, got {self.config.coef0!r}"
            )

    def compute_matrix(
        self,
        x1: np.ndarray,
        x2: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        x1, x2 = _prepare_pair(x1, x2)
        return (x1 @ x2.T + self.config.coef0) ** int(self.config.degree)

    def get_all_params(self) -> Dict[str, float]:
        d = super().get_all_params()
        d['degree'] = int(self.config.degree)
        d['coef0'] = self.config.coef0
        return d


class RBFKernel(Kernel):
    """Gaussian RBF kernel.

    K(a, b) = exp(-‖a − b‖² / (2σ²))
    """

    kernel_type = 'rbf'

    def validate(self) -> None:
        if not self.config.bandwidth > 0:
            raise InvalidConfigurationError(
                f"RBF bandwidth must be positive, got {self.config.bandwidth!r}"
            )

    def compute_matrix(
        self,
        x1: np.ndarray,
        x2: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        x1, x2 = _prepare_pair(x1, x2)
        sq1 = np.sum(x1 ** 2, axis=1)
        sq2 = np.sum(x2 ** 2, axis=1)
        # Clamp: the expansion can go slightly negative for identical rows
        d2 = np.maximum(sq1[:, None] + sq2[None, :] - 2.0 * x1 @ x2.T, 0.0)
        return np.exp(-d2 / (2.0 * self.config.bandwidth ** 2))

    def get_all_params(self) -> Dict[str, float]:
        d = super().get_all_params()
        d['bandwidth'] = self.config.bandwidth
        return d


_KERNELS = {
    'linear': LinearKernel,
    'poly': PolynomialKernel,
    'rbf': RBFKernel,
}


def build_kernel(config: Optional[KernelConfig] = None) -> Kernel:
    """Factory: construct the appropriate kernel from config.

    Parameters
    ----------
    config : KernelConfig or None
        If None, returns a default LinearKernel.

    Returns
    -------
    Kernel
    """
    if config is None:
        return LinearKernel(KernelConfig())

    try:
        kernel_cls = _KERNELS[config.kernel_type]
    except KeyError:
        raise InvalidConfigurationError(
            f"Unknown kernel_type: {config.kernel_type!r}. "
            f"Expected one of {sorted(_KERNELS)}."
        ) from None

    kernel = kernel_cls(config)
    logger.debug(f"Built {kernel!r}")
    return kernel
