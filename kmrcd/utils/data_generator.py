"""Synthetic data generation for demos and tests."""
import numpy as np


class DataGenerator:
    """Generate elliptical data with injected outliers."""

    @staticmethod
    def correlation_matrix(p, rho=0.5):
        """AR(1) correlation matrix with entries rho^|i-j|."""
        idx = np.arange(p)
        return rho ** np.abs(idx[:, None] - idx[None, :])

    @staticmethod
    def elliptical_with_outliers(n=100, p=5, n_outliers=10, shift=10.0,
                                 coordinate=0, correlation=0.5, seed=42):
        """Multivariate normal sample with shifted outliers.

        ``n_outliers`` randomly chosen rows are moved by ``shift`` standard
        deviations along ``coordinate``.

        Returns:
            (X, outlier_indices) with outlier_indices sorted.
        """
        rng = np.random.default_rng(seed)
        cov = DataGenerator.correlation_matrix(p, correlation)
        X = rng.multivariate_normal(np.zeros(p), cov, size=n)
        outliers = np.sort(rng.choice(n, size=n_outliers, replace=False))
        X[outliers, coordinate] += shift * np.sqrt(cov[coordinate, coordinate])
        return X, outliers
