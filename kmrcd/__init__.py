"""
kmrcd: Kernel Minimum Regularized Covariance Determinant
========================================================

Robust location and scatter estimation in a kernel-induced feature space,
and outlier detection for non-elliptical, small n / large p data.

Modules:
    kernels: Linear, polynomial and RBF kernels
    centering: Feature-space centering of Gram matrices
    estimators: Initial outlyingness rankings (SDO, SpatialRank,
        SpatialMedian, SSCM)
    robust: MCD consistency factor and univariate MCD
    calibration: Condition-number based regularization
    csteps: Candidate refinement by C-steps
    detector: KMRCD estimator and outlier flagging
    utils: Synthetic data helpers

Reference:
    J. Schreurs, I. Vranckx, M. Hubert, J. A. K. Suykens, P. J. Rousseeuw,
    "Outlier detection in non-elliptical data by kernel MRCD",
    Statistics and Computing (2021).

License: MIT
"""

__version__ = "1.0.0"

from kmrcd.detector import KMRCD, KMRCDConfig, KMRCDSolution, flag_outliers
from kmrcd.kernels import (
    KernelConfig,
    LinearKernel,
    PolynomialKernel,
    RBFKernel,
    build_kernel,
)
from kmrcd.exceptions import (
    KMRCDError,
    InvalidConfigurationError,
    ShapeMismatchError,
    CalibrationError,
    ConvergenceError,
    NoConvergedCandidateError,
    RunTimeoutError,
)

__all__ = [
    "KMRCD",
    "KMRCDConfig",
    "KMRCDSolution",
    "flag_outliers",
    "KernelConfig",
    "LinearKernel",
    "PolynomialKernel",
    "RBFKernel",
    "build_kernel",
    "KMRCDError",
    "InvalidConfigurationError",
    "ShapeMismatchError",
    "CalibrationError",
    "ConvergenceError",
    "NoConvergedCandidateError",
    "RunTimeoutError",
]
