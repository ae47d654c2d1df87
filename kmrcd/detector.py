"""
Kernel MRCD Outlier Detection
=============================

Robust location/scatter estimation in a kernel-induced feature space
(kMRCD) and the outlier flagging built on it.

Pipeline:
    kernel → initial rankings → per-candidate ρ calibration → run-level ρ
    → C-steps per candidate → lowest-objective candidate → outlier cutoff

Key Classes:
    KMRCDConfig: Configuration dataclass.
    KMRCDSolution: Result of a run.
    KMRCD: Estimator with ``run()`` and ``score_dataframe()`` APIs.

Key Functions:
    flag_outliers: Robust distances, log-rescaled distances, cutoff and
        flagged indices from squared distances.

Usage:
    >>> from kmrcd import KMRCD, KMRCDConfig, PolynomialKernel
    >>> detector = KMRCD(PolynomialKernel(), KMRCDConfig(alpha=0.75))
    >>> solution = detector.run(X)
    >>> solution.flagged_outlier_indices
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

from kmrcd.calibration import (
    DEFAULT_GRID_BOUNDS,
    DEFAULT_GRID_POINTS,
    DEFAULT_RHO_BRACKET,
    DEFAULT_TARGET_CONDITION,
    calibrate_rho,
    select_run_rho,
)
from kmrcd.csteps import Candidate, hsubset_size, run_csteps
from kmrcd.estimators import ESTIMATORS, get_estimator
from kmrcd.exceptions import (
    CalibrationError,
    ConvergenceError,
    InvalidConfigurationError,
    NoConvergedCandidateError,
    RunTimeoutError,
    ShapeMismatchError,
)
from kmrcd.kernels import Kernel, LinearKernel
from kmrcd.robust import mcd_consistency_factor, unimcd

logger = logging.getLogger(__name__)


@dataclass
class KMRCDConfig:
    """Configuration for kMRCD.

    Attributes:
        alpha: Fraction of observations assumed clean, in [0.5, 1].
            (1 - alpha) is the fraction of outliers the estimator resists.
        estimators: Initial estimators seeding the candidates.  Any
            non-empty subset of ``'SDO'``, ``'SpatialRank'``,
            ``'SpatialMedian'``, ``'SSCM'``.
        max_csteps: C-step budget per candidate.
        target_condition: Condition number the regularized subset kernel
            should reach.
        rho_bracket: Root-finding bracket for ρ.
        grid_bounds: Range of the ρ grid search used when the bracket holds
            no root.
        grid_points: Resolution of that grid.
        cutoff_quantile: Normal quantile of the outlier cutoff on the
            log-rescaled distances.
        random_state: Seed for stochastic initial estimators (SDO).
        strict_convergence: Raise ``ConvergenceError`` as soon as any
            candidate fails to converge instead of reporting it.
        reuse_gram: Slice h-subset kernels out of the full Gram matrix
            instead of recomputing them with the kernel.
        timeout: Wall-clock budget in seconds for a run (None = unlimited).
        show_progress: Show a tqdm progress bar over candidates.
    """
    alpha: float = 0.75
    estimators: Sequence[str] = ('SDO', 'SpatialMedian', 'SSCM')
    max_csteps: int = 100
    target_condition: float = DEFAULT_TARGET_CONDITION
    rho_bracket: Tuple[float, float] = DEFAULT_RHO_BRACKET
    grid_bounds: Tuple[float, float] = DEFAULT_GRID_BOUNDS
    grid_points: int = DEFAULT_GRID_POINTS
    cutoff_quantile: float = 0.995
    random_state: Optional[int] = 0
    strict_convergence: bool = False
    reuse_gram: bool = True
    timeout: Optional[float] = None
    show_progress: bool = False

    def __post_init__(self):
        self.estimators = tuple(self.estimators)
        self.validate()

    def validate(self) -> None:
        """Raise ``InvalidConfigurationError`` for unusable settings."""
        _check_alpha(self.alpha)
        if not self.estimators:
            raise InvalidConfigurationError("At least one initial estimator is required")
        unknown = [e for e in self.estimators if e not in ESTIMATORS]
        if unknown:
            raise InvalidConfigurationError(
                f"Unknown estimators: {unknown}. Expected any of {sorted(ESTIMATORS)}."
            )
        if len(set(self.estimators)) != len(self.estimators):
            raise InvalidConfigurationError(f"Duplicate estimators: {list(self.estimators)}")
        if self.max_csteps < 1:
            raise InvalidConfigurationError(f"max_csteps must be >= 1, got {self.max_csteps}")
        if not self.target_condition > 1:
            raise InvalidConfigurationError(
                f"target_condition must be > 1, got {self.target_condition}"
            )
        lo, hi = self.rho_bracket
        if not 0 < lo < hi < 1:
            raise InvalidConfigurationError(f"rho_bracket must satisfy 0 < lo < hi < 1, got {self.rho_bracket}")
        lo, hi = self.grid_bounds
        if not 0 < lo < hi < 1:
            raise InvalidConfigurationError(f"grid_bounds must satisfy 0 < lo < hi < 1, got {self.grid_bounds}")
        if self.grid_points < 2:
            raise InvalidConfigurationError(f"grid_points must be >= 2, got {self.grid_points}")
        if not 0.5 < self.cutoff_quantile < 1:
            raise InvalidConfigurationError(
                f"cutoff_quantile must lie in (0.5, 1), got {self.cutoff_quantile}"
            )
        if self.timeout is not None and not self.timeout > 0:
            raise InvalidConfigurationError(f"timeout must be positive, got {self.timeout}")


def _check_alpha(alpha: float) -> None:
    if not 0.5 <= alpha <= 1.0:
        raise InvalidConfigurationError(f"alpha must lie in [0.5, 1], got {alpha!r}")


@dataclass
class KMRCDSolution:
    """Result of a kMRCD run.

    Attributes:
        name: Initial estimator of the winning candidate.
        outlyingness_indices: That estimator's initial ranking.
        hsubset_indices: Final h-subset.
        obj: Regularized log-determinant of the final h-subset.
        smd: Squared robust distances.
        rho: Run-level regularization weight.
        scfac: Consistency factor.
        rd: Robust distances, sqrt(max(smd, 0)).
        ld: Log-rescaled distances, log(0.1 + rd).
        cutoff: Outlier cutoff on ``rd``.
        flagged_outlier_indices: Observations with ``rd > cutoff``.
        candidates: Summary of every candidate (name, status, obj, rho,
            n_iterations, error).
    """
    name: str
    outlyingness_indices: np.ndarray
    hsubset_indices: np.ndarray
    obj: float
    smd: np.ndarray
    rho: float
    scfac: float
    rd: np.ndarray
    ld: np.ndarray
    cutoff: float
    flagged_outlier_indices: np.ndarray
    candidates: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def n_outliers(self) -> int:
        return int(len(self.flagged_outlier_indices))

    def to_dataframe(self) -> pd.DataFrame:
        """One row per observation."""
        n = len(self.rd)
        in_hsubset = np.zeros(n, dtype=bool)
        in_hsubset[self.hsubset_indices] = True
        outlier = np.zeros(n, dtype=bool)
        outlier[self.flagged_outlier_indices] = True
        return pd.DataFrame({
            'squared_distance': self.smd,
            'robust_distance': self.rd,
            'log_distance': self.ld,
            'in_hsubset': in_hsubset,
            'kmrcd_outlier': outlier,
        })

    def summary(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'obj': self.obj,
            'rho': self.rho,
            'scfac': self.scfac,
            'cutoff': self.cutoff,
            'h': int(len(self.hsubset_indices)),
            'n_outliers': self.n_outliers,
            'candidates': self.candidates,
        }


def flag_outliers(
    smd: np.ndarray,
    h: int,
    quantile: float = 0.995,
) -> Tuple[np.ndarray, np.ndarray, float, np.ndarray]:
    """Flag observations from their squared robust distances.

    The distances are log-rescaled, ``ld = log(0.1 + rd)``, a univariate MCD
    with window ``h`` estimates their location and scale, and the upper
    normal quantile is mapped back to the distance scale:

        cutoff = exp(location + Φ⁻¹(quantile) · scale) − 0.1

    Args:
        smd: (n,) squared distances (may hold round-off negatives).
        h: h-subset size.
        quantile: Normal quantile of the cutoff.

    Returns:
        (rd, ld, cutoff, flagged_indices)
    """
    smd = np.asarray(smd, dtype=float)
    rd = np.sqrt(np.maximum(smd, 0.0))
    ld = np.log(0.1 + rd)
    location, scale = unimcd(ld, h)
    cutoff = float(np.exp(location + stats.norm.ppf(quantile) * scale) - 0.1)
    flagged = np.flatnonzero(rd > cutoff)
    return rd, ld, cutoff, flagged


class KMRCD:
    """Kernel Minimum Regularized Covariance Determinant estimator.

    Args:
        kernel: Kernel used for all Gram matrices.  None means a linear
            kernel, i.e. plain MRCD.
        config: KMRCDConfig.

    Example:
        >>> detector = KMRCD(config=KMRCDConfig(alpha=0.75))
        >>> solution = detector.run(X)
        >>> X[solution.flagged_outlier_indices]
    """

    def __init__(self, kernel: Optional[Kernel] = None, config: Optional[KMRCDConfig] = None):
        if kernel is None:
            kernel = LinearKernel()
        if config is None:
            config = KMRCDConfig()
        self.kernel = kernel
        self.config = config
        self.last_solution: Optional[KMRCDSolution] = None

    def run(self, X: np.ndarray, alpha: Optional[float] = None) -> KMRCDSolution:
        """Run kMRCD on the rows of ``X``.

        Args:
            X: (n, p) observations without missing or infinite values.
            alpha: Overrides ``config.alpha`` for this run.

        Returns:
            KMRCDSolution of the best converged candidate.

        Raises:
            InvalidConfigurationError: alpha outside [0.5, 1].
            ShapeMismatchError: X is not 1-D or 2-D, or has < 2 rows.
            CalibrationError: No candidate produced a usable ρ.
            ConvergenceError: A candidate failed with ``strict_convergence``.
            NoConvergedCandidateError: No candidate converged.
            RunTimeoutError: ``config.timeout`` exceeded.
        """
        cfg = self.config
        alpha = cfg.alpha if alpha is None else alpha
        _check_alpha(alpha)

        X = np.asarray(X, dtype=float)
        if X.ndim == 1:
            X = X.reshape(-1, 1)
        if X.ndim != 2:
            raise ShapeMismatchError(f"X must be a 1-D or 2-D array, got shape {X.shape}")
        n, p = X.shape
        if n < 2:
            raise ShapeMismatchError(f"kMRCD needs at least 2 observations, got {n}")

        deadline = None if cfg.timeout is None else time.monotonic() + cfg.timeout

        K = self.kernel.compute_matrix(X)
        if cfg.reuse_gram:
            def subset_kernel(rows, cols):
                return K[np.ix_(rows, cols)]
        else:
            def subset_kernel(rows, cols):
                return self.kernel.compute_matrix(X[rows], X[cols])

        # --- Initial estimators ---
        candidates = []
        for name in cfg.estimators:
            self._check_deadline(deadline, f"initial estimator {name}")
            estimator = get_estimator(name, random_state=cfg.random_state)
            t0 = time.perf_counter()
            ranking = estimator.rank(K, alpha)
            logger.debug(f"{name}: {time.perf_counter() - t0:.4f} sec")
            candidates.append(Candidate.from_ranking(name, ranking, alpha))

        h = hsubset_size(n, alpha)
        scfac = mcd_consistency_factor(p, alpha)

        # --- Regularization ---
        rhos = []
        for candidate in candidates:
            hsubset = candidate.hsubset_indices
            try:
                candidate.rho = calibrate_rho(
                    subset_kernel(hsubset, hsubset),
                    scfac,
                    target_condition=cfg.target_condition,
                    bracket=cfg.rho_bracket,
                    grid_bounds=cfg.grid_bounds,
                    grid_points=cfg.grid_points,
                )
            except CalibrationError as e:
                logger.warning(f"Rho calibration failed for {candidate.name}: {e}")
                candidate.error = e
                continue
            rhos.append(candidate.rho)

        rho = select_run_rho(rhos)
        logger.info(f"Run-level rho={rho:.6g} from {len(rhos)} candidate(s), scfac={scfac:.4f}")

        # --- C-steps ---
        iterator = candidates
        if cfg.show_progress:
            from tqdm import tqdm
            iterator = tqdm(candidates, desc="kMRCD C-steps")

        for candidate in iterator:
            logger.debug(f"Running C-steps for {candidate.name}...")
            try:
                run_csteps(
                    candidate, K, rho, scfac,
                    max_csteps=cfg.max_csteps,
                    subset_kernel=subset_kernel,
                    deadline=deadline,
                )
            except ConvergenceError as e:
                if cfg.strict_convergence:
                    raise
                logger.warning(str(e))

        summaries = [c.summary() for c in candidates]
        converged = [c for c in candidates if c.converged]
        if not converged:
            raise NoConvergedCandidateError(
                f"No candidate converged within {cfg.max_csteps} C-steps",
                candidates=summaries,
            )

        # First minimum wins ties, in estimator order
        best = min(converged, key=lambda c: c.obj)
        logger.info(f"-> Best estimator is {best.name}")

        rd, ld, cutoff, flagged = flag_outliers(best.smd, h, cfg.cutoff_quantile)
        logger.info(f"{len(flagged)} of {n} observations flagged (cutoff={cutoff:.4g})")

        solution = KMRCDSolution(
            name=best.name,
            outlyingness_indices=best.outlyingness_indices,
            hsubset_indices=best.hsubset_indices,
            obj=best.obj,
            smd=best.smd,
            rho=rho,
            scfac=scfac,
            rd=rd,
            ld=ld,
            cutoff=cutoff,
            flagged_outlier_indices=flagged,
            candidates=summaries,
        )
        self.last_solution = solution
        return solution

    def score_dataframe(
        self,
        df: pd.DataFrame,
        columns: Optional[Sequence[str]] = None,
    ) -> pd.DataFrame:
        """Score the rows of a DataFrame.

        Args:
            df: Input data, one observation per row.
            columns: Columns to use.  Defaults to all numeric columns.

        Returns:
            Copy of ``df`` with columns ``robust_distance``,
            ``log_distance``, ``in_hsubset`` and ``kmrcd_outlier``.
        """
        if columns is None:
            columns = list(df.select_dtypes(include='number').columns)
            if not columns:
                raise ValueError("DataFrame has no numeric columns to score")
        else:
            columns = list(columns)
            missing = [col for col in columns if col not in df.columns]
            if missing:
                raise ValueError(f"Missing required columns: {missing}")

        solution = self.run(df[columns].to_numpy(dtype=float))
        scored = solution.to_dataframe()

        result = df.copy()
        for col in ('robust_distance', 'log_distance', 'in_hsubset', 'kmrcd_outlier'):
            result[col] = scored[col].to_numpy()
        return result

    @staticmethod
    def _check_deadline(deadline: Optional[float], stage: str) -> None:
        if deadline is not None and time.monotonic() >= deadline:
            raise RunTimeoutError(f"Time budget exhausted before {stage}")
