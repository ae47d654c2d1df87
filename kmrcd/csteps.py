"""
C-Step Refinement for kMRCD Candidates
======================================

A candidate starts from the ``ceil(n * alpha)`` least outlying points of one
initial estimator and is refined by C-steps:

    1. Regularized squared Mahalanobis distances of all n points with respect
       to the current h-subset, computed in feature space with the kernel
       trick.
    2. New h-subset = the nₓ points with the smallest distances.
    3. Stop when the h-subset is unchanged as a set (fixed point).

On convergence the candidate's objective is the regularized log-determinant

    obj = Σ log((1−ρ)·c·σᵢ + nₓ·ρ)

with σᵢ the singular values of the centered subset kernel.

Key Classes:
    Candidate: Mutable per-estimator record (ranking, h-subset, distances,
        objective, status).

Key Functions:
    regularized_distances: One distance evaluation against an h-subset.
    run_csteps: Iterate C-steps on a candidate until convergence.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

import numpy as np
from scipy import linalg

from kmrcd.centering import center_kernel
from kmrcd.exceptions import ConvergenceError, RunTimeoutError

logger = logging.getLogger(__name__)

INITIALIZED = 'initialized'
ITERATING = 'iterating'
CONVERGED = 'converged'
FAILED = 'failed'

SubsetKernel = Callable[[np.ndarray, np.ndarray], np.ndarray]


@dataclass
class Candidate:
    """State of one kMRCD candidate.

    Attributes:
        name: Name of the initial estimator that seeded the candidate.
        outlyingness_indices: Initial ranking, most typical first.
        hsubset_indices: Current h-subset.
        rho: ρ calibrated on the initial h-subset (NaN when calibration
            failed).  The C-steps use the run-level ρ.
        smd: Squared distances of all points after convergence.
        obj: Regularized log-determinant after convergence.
        status: ``'initialized'``, ``'iterating'``, ``'converged'`` or
            ``'failed'``.
        n_iterations: C-steps performed.
        error: The calibration or convergence error, if any.
    """
    name: str
    outlyingness_indices: np.ndarray
    hsubset_indices: np.ndarray
    rho: float = float('nan')
    smd: Optional[np.ndarray] = None
    obj: float = float('inf')
    status: str = INITIALIZED
    n_iterations: int = 0
    error: Optional[Exception] = None

    @classmethod
    def from_ranking(cls, name: str, ranking: np.ndarray, alpha: float) -> 'Candidate':
        """Seed a candidate with the ``ceil(n * alpha)`` first ranked indices."""
        ranking = np.asarray(ranking, dtype=int)
        h = hsubset_size(len(ranking), alpha)
        return cls(
            name=name,
            outlyingness_indices=ranking,
            hsubset_indices=ranking[:h].copy(),
        )

    @property
    def converged(self) -> bool:
        return self.status == CONVERGED

    def summary(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'status': self.status,
            'obj': self.obj if self.converged else float('nan'),
            'rho': self.rho,
            'n_iterations': self.n_iterations,
            'error': None if self.error is None else str(self.error),
        }


def hsubset_size(n: int, alpha: float) -> int:
    """ceil(n·alpha), clamped to [1, n]."""
    return min(n, max(1, math.ceil(n * alpha)))


def regularized_distances(
    Kx: np.ndarray,
    Kt: np.ndarray,
    diag_K: np.ndarray,
    rho: float,
    scfac: float,
) -> Tuple[np.ndarray, np.ndarray]:
    """Regularized squared Mahalanobis distances against an h-subset.

    Args:
        Kx: (nₓ, nₓ) Gram matrix of the h-subset.
        Kt: (n, nₓ) cross kernel between all points and the h-subset.
        diag_K: (n,) self-similarities K(xᵢ, xᵢ) of all points.
        rho: Regularization weight.
        scfac: Consistency factor.

    Returns:
        (smd, Kc): the (n,) squared distances and the centered subset kernel.
        Distances can be infinitesimally negative from round-off.
    """
    nx = Kx.shape[0]
    Kc = center_kernel(Kx)
    Kt_c = center_kernel(Kx, Kt)

    # ‖φ(xᵢ) − μ‖² with μ the subset centroid
    Kxx = diag_K - (2.0 / nx) * Kt.sum(axis=1) + Kx.sum() / nx ** 2

    A = (1.0 - rho) * scfac * Kc + nx * rho * np.eye(nx)
    # Kt_c · A⁻¹, A symmetric
    W = linalg.solve(A, Kt_c.T, assume_a='sym').T
    smd = (Kxx - (1.0 - rho) * scfac * np.sum(W * Kt_c, axis=1)) / rho
    return smd, Kc


def run_csteps(
    candidate: Candidate,
    K: np.ndarray,
    rho: float,
    scfac: float,
    max_csteps: int = 100,
    subset_kernel: Optional[SubsetKernel] = None,
    deadline: Optional[float] = None,
) -> Candidate:
    """Refine a candidate with C-steps until its h-subset is a fixed point.

    Args:
        candidate: Candidate to refine in place.
        K: (n, n) Gram matrix of all observations.
        rho: Run-level regularization weight.
        scfac: Consistency factor.
        max_csteps: Iteration budget.
        subset_kernel: ``f(rows, cols) -> Gram block``.  Defaults to slicing
            ``K``.
        deadline: ``time.monotonic()`` value after which the run is aborted.

    Returns:
        The converged candidate.

    Raises:
        ConvergenceError: Budget exhausted; the candidate is marked failed.
        RunTimeoutError: Deadline passed.
    """
    if subset_kernel is None:
        def subset_kernel(rows, cols):
            return K[np.ix_(rows, cols)]

    n = K.shape[0]
    all_indices = np.arange(n)
    diag_K = np.diag(K)
    nx = len(candidate.hsubset_indices)
    candidate.status = ITERATING

    for iteration in range(1, max_csteps + 1):
        if deadline is not None and time.monotonic() >= deadline:
            raise RunTimeoutError(
                f"Time budget exhausted during C-steps of {candidate.name} "
                f"(iteration {iteration})"
            )

        hsubset = candidate.hsubset_indices
        Kx = subset_kernel(hsubset, hsubset)
        Kt = subset_kernel(all_indices, hsubset)
        smd, Kc = regularized_distances(Kx, Kt, diag_K, rho, scfac)

        new_hsubset = np.argsort(smd, kind='stable')[:nx]
        candidate.hsubset_indices = new_hsubset
        candidate.n_iterations = iteration

        if np.array_equal(np.sort(new_hsubset), np.sort(hsubset)):
            sigma = np.linalg.svd(Kc, compute_uv=False)
            sigma = (1.0 - rho) * scfac * sigma + nx * rho
            candidate.obj = float(np.sum(np.log(sigma)))
            candidate.smd = smd
            candidate.status = CONVERGED
            logger.info(
                f"Convergence at iteration {iteration}, {candidate.name} "
                f"(obj={candidate.obj:.4f})"
            )
            return candidate

        logger.debug(
            f"{candidate.name}: iteration {iteration}, "
            f"{np.setdiff1d(new_hsubset, hsubset).size} points swapped"
        )

    candidate.status = FAILED
    error = ConvergenceError(
        f"No C-step convergence for {candidate.name} within {max_csteps} iterations",
        estimator=candidate.name,
        n_iterations=max_csteps,
    )
    candidate.error = error
    raise error
