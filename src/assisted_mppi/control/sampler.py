"""
===============================================================================
ASSISTED MPPI - Multivariate Gaussian Sampler
===============================================================================
Draws correlated noise vectors from N(mean, covariance).

Draws are produced by transforming independent standard-normal samples
through the eigen-decomposition of the covariance:

    Sigma = V diag(lambda) V^T
    A     = V diag(sqrt(lambda))          (so that A A^T = Sigma)
    x     = mean + A z,   z ~ N(0, I)

The eigen-decomposition (rather than Cholesky) accepts positive
semi-definite covariances, including the all-zero covariance used to switch
sampling off.  The covariance must be symmetric positive semi-definite; this
is a precondition and is not checked.
===============================================================================
"""

from typing import Optional

import numpy as np
from scipy import linalg


class Gaussian:
    """
    Multivariate Gaussian sampler with an explicitly owned generator.

    Parameters
    ----------
    mean : array_like (n,)
        Mean of the distribution.
    covariance : array_like (n, n)
        Symmetric positive semi-definite covariance.
    rng : numpy.random.Generator or int or None
        Generator (or seed for ``np.random.default_rng``) used for draws.
    """

    def __init__(self, mean, covariance, rng=None):
        self._mean = np.array(mean, dtype=np.float64).reshape(-1)
        self._rng = rng if isinstance(rng, np.random.Generator) else np.random.default_rng(rng)
        self.set_covariance(covariance)

    def set_mean(self, mean) -> None:
        mean = np.array(mean, dtype=np.float64).reshape(-1)
        if mean.shape != self._mean.shape:
            raise ValueError(f"Expected mean shape {self._mean.shape}, got {mean.shape}")
        self._mean = mean

    def set_covariance(self, covariance) -> None:
        """Replace the covariance and recompute the sampling transform."""
        covariance = np.atleast_2d(np.array(covariance, dtype=np.float64))
        n = self._mean.shape[0]
        if covariance.shape != (n, n):
            raise ValueError(f"Expected covariance shape ({n}, {n}), got {covariance.shape}")

        eigenvalues, eigenvectors = linalg.eigh(covariance)
        # Round-off can push eigenvalues of a PSD matrix marginally below zero.
        eigenvalues = np.maximum(eigenvalues, 0.0)
        self._covariance = covariance
        self._transform = eigenvectors @ np.diag(np.sqrt(eigenvalues))

    def sample(self, size: Optional[int] = None) -> np.ndarray:
        """
        Draw from the distribution.

        Parameters
        ----------
        size : int or None
            Number of draws.  None returns a single ``(n,)`` vector.

        Returns
        -------
        np.ndarray
            Shape ``(n,)`` or ``(size, n)``.
        """
        n = self._mean.shape[0]
        if size is None:
            return self._mean + self._transform @ self._rng.standard_normal(n)
        z = self._rng.standard_normal((size, n))
        return self._mean + z @ self._transform.T

    @property
    def mean(self) -> np.ndarray:
        return self._mean.copy()

    @property
    def covariance(self) -> np.ndarray:
        return self._covariance.copy()

    @property
    def transform(self) -> np.ndarray:
        """Matrix A with A A^T equal to the covariance."""
        return self._transform.copy()

    @property
    def dimension(self) -> int:
        return self._mean.shape[0]

    def __repr__(self) -> str:
        return f"Gaussian(dim={self.dimension})"
