"""
Filter result container.
"""

import numpy as np
from dataclasses import dataclass, field
from typing import Dict, Optional


@dataclass
class FilterResult:
    """
    Container for filter outputs.

    Row k of every per-time-index array belongs to time index
    `time_indices[k]`; for a full run that is k itself, with k = 0 the
    initial ensemble.

    Attributes:
        means: [K, nx] Filtered state means
        variances: [K, nx] Filtered state variances per dimension (optional)
        covariances: [K, nx, nx] Filtered state covariances (Kalman filter only)
        time_indices: [K] Time index of each row (defaults to 0..K-1)

        # Particle filter specific
        weights: [K, N] Normalized weights before resampling (optional)
        ess: [K] Effective sample size (optional)

        # Likelihood
        log_likelihood: Total log marginal likelihood (optional)
        log_likelihood_increments: [K] Per-step log likelihood (optional)

        # Diagnostics
        n_faults: [K] Number of faulty particles per step (optional)
        timers: Accumulated wall-clock seconds per filtering phase
    """
    means: np.ndarray
    variances: Optional[np.ndarray] = None
    covariances: Optional[np.ndarray] = None
    time_indices: Optional[np.ndarray] = None

    # Particle filter outputs
    weights: Optional[np.ndarray] = None
    ess: Optional[np.ndarray] = None

    # Likelihood
    log_likelihood: Optional[float] = None
    log_likelihood_increments: Optional[np.ndarray] = None

    # Diagnostics
    n_faults: Optional[np.ndarray] = None
    timers: Dict[str, float] = field(default_factory=dict)

    def __post_init__(self):
        if self.time_indices is None:
            self.time_indices = np.arange(self.means.shape[0])

    def rmse(self, true_states: np.ndarray) -> np.ndarray:
        """
        Compute per-timestep RMSE against true states.

        Args:
            true_states: [T+1, nx] True state trajectory, indexed by time index

        Returns:
            rmse: [K] RMSE at each stored time index
        """
        squared_error = (self.means - true_states[self.time_indices]) ** 2
        return np.sqrt(np.mean(squared_error, axis=1))

    def mean_rmse(self, true_states: np.ndarray) -> float:
        """Average RMSE over all stored time indices."""
        return np.mean(self.rmse(true_states))

    def average_ess(self) -> float:
        """Return average ESS over filtering steps if available."""
        if self.ess is None:
            return np.nan
        return np.mean(self.ess[self.time_indices > 0])
