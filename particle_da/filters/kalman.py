"""
Kalman filter reference for linear Gaussian models.

Gives the exact filtering distribution the particle filter approximates,
so the two can be compared step by step.
"""

import numpy as np
from scipy import linalg

from .base import FilterResult
from ..models.linear_gaussian import LinearGaussianModel


class KalmanFilter:
    """
    Standard Kalman filter.

    Row 0 of the result holds the initial distribution N(m0, P0), so rows
    line up with the time indices of the particle filter output.
    """

    def filter(self, model: LinearGaussianModel, observations: np.ndarray) -> FilterResult:
        """
        Run the Kalman filter on observations.

        Args:
            model: LinearGaussianModel
            observations: [T, ny] Observations (y_1, ..., y_T)

        Returns:
            FilterResult with filtered means, variances and covariances
        """
        observations = np.asarray(observations, dtype=np.float64)
        if observations.ndim == 1:
            observations = observations[:, np.newaxis]
        T = observations.shape[0]
        nx = model.state_dimension

        means = np.zeros((T + 1, nx))
        covariances = np.zeros((T + 1, nx, nx))
        log_likelihoods = np.zeros(T + 1)

        means[0] = model.m0
        covariances[0] = model.P0

        for t in range(T):
            # Predict
            m_pred = model.A @ means[t]
            P_pred = model.A @ covariances[t] @ model.A.T + model.Q
            P_pred = 0.5 * (P_pred + P_pred.T)

            means[t + 1], covariances[t + 1], log_likelihoods[t + 1] = self._update(
                m_pred, P_pred, observations[t], model.C, model.R
            )

        return FilterResult(
            means=means,
            variances=np.diagonal(covariances, axis1=1, axis2=2).copy(),
            covariances=covariances,
            log_likelihood=float(np.sum(log_likelihoods)),
            log_likelihood_increments=log_likelihoods,
        )

    @staticmethod
    def _update(m_pred, P_pred, y, H, R):
        """
        Kalman update step.

        Returns:
            m_upd: [nx] Updated mean
            P_upd: [nx, nx] Updated covariance (Joseph form)
            log_lik: Log predictive density of y
        """
        v = y - H @ m_pred
        S = H @ P_pred @ H.T + R
        S = 0.5 * (S + S.T)

        S_factor = linalg.cho_factor(S, lower=True)
        # K = P_pred H^T S^{-1}
        K = linalg.cho_solve(S_factor, H @ P_pred).T

        m_upd = m_pred + K @ v
        IKH = np.eye(len(m_pred)) - K @ H
        P_upd = IKH @ P_pred @ IKH.T + K @ R @ K.T
        P_upd = 0.5 * (P_upd + P_upd.T)

        logdet = 2.0 * np.sum(np.log(np.diag(S_factor[0])))
        mahal_sq = v @ linalg.cho_solve(S_factor, v)
        log_lik = -0.5 * (len(y) * np.log(2 * np.pi) + logdet + mahal_sq)
        return m_upd, P_upd, log_lik
