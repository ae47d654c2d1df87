"""
Tests for the kMRCD detector
============================

End-to-end runs on synthetic data from ``DataGenerator``; no real data set
is required.
"""

import math

import numpy as np
import pandas as pd
import pytest

from kmrcd import detector as detector_module
from kmrcd.detector import KMRCD, KMRCDConfig, flag_outliers
from kmrcd.exceptions import (
    CalibrationError,
    ConvergenceError,
    InvalidConfigurationError,
    NoConvergedCandidateError,
    RunTimeoutError,
    ShapeMismatchError,
)
from kmrcd.kernels import KernelConfig, PolynomialKernel
from kmrcd.utils import DataGenerator

ALL_ESTIMATORS = ('SDO', 'SpatialRank', 'SpatialMedian', 'SSCM')


@pytest.fixture(scope='module')
def shifted_data():
    return DataGenerator.elliptical_with_outliers(n=100, p=5, n_outliers=10, shift=10.0, seed=42)


@pytest.fixture(scope='module')
def shifted_solution(shifted_data):
    X, _ = shifted_data
    return KMRCD(config=KMRCDConfig(alpha=0.75)).run(X)


def _ring(n=120, n_outliers=8, seed=0):
    """Noisy unit circle with outliers at radius 3: not elliptical."""
    rng = np.random.default_rng(seed)
    theta = rng.uniform(0, 2 * np.pi, n)
    radius = 1.0 + rng.normal(0, 0.05, n)
    outliers = np.arange(n - n_outliers, n)
    radius[outliers] = 3.0
    return np.column_stack([radius * np.cos(theta), radius * np.sin(theta)]), outliers


def _failing_csteps(fail_names):
    real = detector_module.run_csteps

    def _run(candidate, *args, **kwargs):
        if candidate.name in fail_names:
            candidate.status = 'failed'
            candidate.error = ConvergenceError('forced', estimator=candidate.name)
            raise candidate.error
        return real(candidate, *args, **kwargs)
    return _run


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

class TestKMRCDConfig:
    def test_defaults(self):
        config = KMRCDConfig()
        assert config.alpha == 0.75
        assert config.estimators == ('SDO', 'SpatialMedian', 'SSCM')
        assert config.max_csteps == 100
        assert config.target_condition == 50.0
        assert config.rho_bracket == (1e-6, 0.99)
        assert config.grid_points == 1000
        assert config.cutoff_quantile == 0.995
        assert config.timeout is None

    def test_estimators_stored_as_tuple(self):
        assert KMRCDConfig(estimators=['SSCM']).estimators == ('SSCM',)

    @pytest.mark.parametrize('alpha', [0.49, 1.01, -1.0])
    def test_invalid_alpha(self, alpha):
        with pytest.raises(InvalidConfigurationError):
            KMRCDConfig(alpha=alpha)

    @pytest.mark.parametrize('alpha', [0.5, 1.0])
    def test_alpha_bounds_inclusive(self, alpha):
        assert KMRCDConfig(alpha=alpha).alpha == alpha

    @pytest.mark.parametrize('kwargs', [
        {'estimators': ()},
        {'estimators': ('SDO', 'MVE')},
        {'estimators': ('SDO', 'SDO')},
        {'max_csteps': 0},
        {'target_condition': 1.0},
        {'rho_bracket': (0.5, 0.1)},
        {'grid_bounds': (0.0, 1.0)},
        {'grid_points': 1},
        {'cutoff_quantile': 1.0},
        {'timeout': 0.0},
    ])
    def test_invalid_settings(self, kwargs):
        with pytest.raises(InvalidConfigurationError):
            KMRCDConfig(**kwargs)


# ---------------------------------------------------------------------------
# Outlier flagging
# ---------------------------------------------------------------------------

class TestFlagOutliers:
    def test_negative_roundoff_clamped(self):
        smd = np.random.default_rng(1).chisquare(3, size=60)
        smd[0] = -1e-9
        smd[1] = -1e-12
        smd[2] = 1e4
        rd, ld, cutoff, flagged = flag_outliers(smd, 45)
        assert np.all(rd >= 0)
        assert rd[0] == 0.0 and rd[1] == 0.0
        np.testing.assert_allclose(ld, np.log(0.1 + rd))
        assert 2 in flagged
        assert 0 not in flagged and 1 not in flagged

    def test_cutoff_formula(self):
        from scipy import stats
        from kmrcd.robust import unimcd

        smd = np.random.default_rng(0).chisquare(4, size=80)
        rd, ld, cutoff, flagged = flag_outliers(smd, 60, quantile=0.99)
        location, scale = unimcd(ld, 60)
        assert cutoff == pytest.approx(np.exp(location + stats.norm.ppf(0.99) * scale) - 0.1)
        np.testing.assert_array_equal(flagged, np.flatnonzero(rd > cutoff))


# ---------------------------------------------------------------------------
# End-to-end runs
# ---------------------------------------------------------------------------

class TestKMRCDRun:
    def test_flags_all_shifted_points(self, shifted_data, shifted_solution):
        _, injected = shifted_data
        flagged = set(shifted_solution.flagged_outlier_indices)
        assert set(injected) <= flagged
        # 99.5% cutoff: a clean point is rarely flagged
        assert len(flagged - set(injected)) <= 3

    def test_solution_fields(self, shifted_solution):
        n = 100
        sol = shifted_solution
        assert sol.name in ('SDO', 'SpatialMedian', 'SSCM')
        assert len(sol.hsubset_indices) == math.ceil(n * 0.75)
        assert len(np.unique(sol.hsubset_indices)) == len(sol.hsubset_indices)
        assert 0.0 < sol.rho < 1.0
        assert sol.scfac > 1.0
        assert sol.smd.shape == sol.rd.shape == sol.ld.shape == (n,)
        assert np.all(sol.rd >= 0)
        assert np.isfinite(sol.obj)
        assert sol.cutoff > 0
        assert {c['name'] for c in sol.candidates} == {'SDO', 'SpatialMedian', 'SSCM'}
        assert sol.obj == min(c['obj'] for c in sol.candidates if c['status'] == 'converged')

    def test_hsubset_excludes_injected_points(self, shifted_data, shifted_solution):
        _, injected = shifted_data
        assert not set(injected) & set(shifted_solution.hsubset_indices)

    def test_idempotent(self, shifted_data):
        X, _ = shifted_data
        config = KMRCDConfig(estimators=ALL_ESTIMATORS, random_state=5)
        a = KMRCD(config=config).run(X)
        b = KMRCD(config=config).run(X)
        np.testing.assert_array_equal(np.sort(a.hsubset_indices), np.sort(b.hsubset_indices))
        assert a.rho == b.rho
        np.testing.assert_array_equal(a.flagged_outlier_indices, b.flagged_outlier_indices)

    def test_small_n_large_p_converges(self):
        """h = 15 points in 15 dimensions: the h-subset covariance is singular."""
        X = np.random.default_rng(3).normal(size=(20, 15))
        sol = KMRCD(config=KMRCDConfig(estimators=ALL_ESTIMATORS)).run(X)
        assert 0.0 < sol.rho < 1.0
        assert len(sol.candidates) == 4
        for candidate in sol.candidates:
            assert candidate['status'] == 'converged'
            assert 0.0 < candidate['rho'] < 1.0
        assert len(sol.hsubset_indices) == 15

    def test_more_variables_than_observations(self):
        X = np.random.default_rng(4).normal(size=(15, 40))
        sol = KMRCD().run(X)
        assert 0.0 < sol.rho < 1.0
        assert np.all(np.isfinite(sol.rd))

    def test_polynomial_kernel_on_non_elliptical_data(self):
        X, outliers = _ring()
        kernel = PolynomialKernel(KernelConfig(kernel_type='poly', degree=2))
        sol = KMRCD(kernel, KMRCDConfig(alpha=0.75)).run(X)
        assert set(outliers) <= set(sol.flagged_outlier_indices)
        assert sol.n_outliers < 0.2 * len(X)

    def test_alpha_override(self, shifted_data):
        X, _ = shifted_data
        sol = KMRCD().run(X, alpha=0.5)
        assert len(sol.hsubset_indices) == 50

    def test_alpha_override_validated(self, shifted_data):
        X, _ = shifted_data
        with pytest.raises(InvalidConfigurationError):
            KMRCD().run(X, alpha=0.3)

    def test_recomputed_subset_kernels_match_sliced(self, shifted_data):
        X, _ = shifted_data
        sliced = KMRCD(config=KMRCDConfig(reuse_gram=True)).run(X)
        recomputed = KMRCD(config=KMRCDConfig(reuse_gram=False)).run(X)
        np.testing.assert_array_equal(np.sort(sliced.hsubset_indices),
                                      np.sort(recomputed.hsubset_indices))
        np.testing.assert_array_equal(sliced.flagged_outlier_indices,
                                      recomputed.flagged_outlier_indices)
        assert sliced.rho == pytest.approx(recomputed.rho)

    def test_progress_bar(self, shifted_data):
        X, _ = shifted_data
        sol = KMRCD(config=KMRCDConfig(show_progress=True)).run(X)
        assert sol.n_outliers >= 10

    def test_last_solution_stored(self, shifted_data):
        X, _ = shifted_data
        detector = KMRCD()
        sol = detector.run(X)
        assert detector.last_solution is sol

    @pytest.mark.parametrize('X', [np.zeros((2, 2, 2)), np.zeros((1, 3))])
    def test_bad_shapes(self, X):
        with pytest.raises(ShapeMismatchError):
            KMRCD().run(X)


# ---------------------------------------------------------------------------
# Failure handling
# ---------------------------------------------------------------------------

class TestFailureHandling:
    def test_partial_convergence_failure_is_reported(self, shifted_data, monkeypatch):
        X, injected = shifted_data
        monkeypatch.setattr(detector_module, 'run_csteps', _failing_csteps({'SDO'}))
        sol = KMRCD().run(X)
        status = {c['name']: c['status'] for c in sol.candidates}
        assert status['SDO'] == 'failed'
        assert sol.name != 'SDO'
        assert set(injected) <= set(sol.flagged_outlier_indices)

    def test_strict_convergence_raises(self, shifted_data, monkeypatch):
        X, _ = shifted_data
        monkeypatch.setattr(detector_module, 'run_csteps', _failing_csteps({'SSCM'}))
        with pytest.raises(ConvergenceError):
            KMRCD(config=KMRCDConfig(strict_convergence=True)).run(X)

    def test_no_converged_candidate(self, shifted_data, monkeypatch):
        X, _ = shifted_data
        monkeypatch.setattr(detector_module, 'run_csteps',
                            _failing_csteps({'SDO', 'SpatialMedian', 'SSCM'}))
        with pytest.raises(NoConvergedCandidateError) as excinfo:
            KMRCD().run(X)
        assert [c['status'] for c in excinfo.value.candidates] == ['failed'] * 3

    def test_calibration_failure_excludes_candidate(self, shifted_data, monkeypatch):
        X, _ = shifted_data
        real = detector_module.calibrate_rho
        calls = []

        def _calibrate(Kx, *args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise CalibrationError('forced')
            return real(Kx, *args, **kwargs)

        monkeypatch.setattr(detector_module, 'calibrate_rho', _calibrate)
        sol = KMRCD().run(X)
        first = sol.candidates[0]
        assert np.isnan(first['rho'])
        assert first['error'] == 'forced'
        assert 0.0 < sol.rho < 1.0

    def test_all_calibrations_fail(self, shifted_data, monkeypatch):
        X, _ = shifted_data

        def _calibrate(*args, **kwargs):
            raise CalibrationError('forced')

        monkeypatch.setattr(detector_module, 'calibrate_rho', _calibrate)
        with pytest.raises(CalibrationError):
            KMRCD().run(X)

    def test_timeout(self, shifted_data):
        X, _ = shifted_data
        with pytest.raises(RunTimeoutError):
            KMRCD(config=KMRCDConfig(timeout=1e-9)).run(X)


# ---------------------------------------------------------------------------
# DataFrame API
# ---------------------------------------------------------------------------

class TestScoreDataFrame:
    def test_adds_columns(self, shifted_data):
        X, injected = shifted_data
        df = pd.DataFrame(X, columns=list('abcde'))
        df['label'] = 'obs'
        scored = KMRCD().score_dataframe(df)

        for col in ('robust_distance', 'log_distance', 'in_hsubset', 'kmrcd_outlier'):
            assert col in scored.columns
        assert 'robust_distance' not in df.columns
        assert scored['in_hsubset'].sum() == 75
        assert scored['kmrcd_outlier'].iloc[injected].all()

    def test_explicit_columns(self, shifted_data):
        X, _ = shifted_data
        df = pd.DataFrame(X, columns=list('abcde'))
        scored = KMRCD().score_dataframe(df, columns=['a', 'b'])
        assert len(scored) == 100

    def test_missing_columns_raise(self):
        df = pd.DataFrame({'a': [1.0, 2.0, 3.0]})
        with pytest.raises(ValueError, match='Missing required columns'):
            KMRCD().score_dataframe(df, columns=['a', 'z'])

    def test_solution_to_dataframe(self, shifted_solution):
        table = shifted_solution.to_dataframe()
        assert list(table.columns) == [
            'squared_distance', 'robust_distance', 'log_distance', 'in_hsubset', 'kmrcd_outlier'
        ]
        assert table['kmrcd_outlier'].sum() == shifted_solution.n_outliers

    def test_summary(self, shifted_solution):
        summary = shifted_solution.summary()
        assert summary['h'] == 75
        assert summary['n_outliers'] == shifted_solution.n_outliers
