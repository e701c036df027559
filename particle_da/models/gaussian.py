"""
Additive Gaussian noise with a linear Gaussian observation.

    x_t = f_t(x_{t-1}) + v_t,  v_t ~ N(0, Q)
    y_t = H @ x_t + w_t,       w_t ~ N(0, R)

Shared by the reference models through composition. Besides the bootstrap
operations it provides the locally optimal proposal, which is available in
closed form for this noise structure:

    p(x_t | x_det, y_t) = N(x_det + K (y_t - H x_det), Q - K H Q),
    K = Q H^T S^{-1},  S = H Q H^T + R,

with incremental importance weight p(y_t | x_det) = N(y_t; H x_det, S).
"""

import numpy as np
from numpy.random import Generator
from scipy.linalg import cholesky, solve_triangular


def _gaussian_log_density(residual: np.ndarray, chol: np.ndarray, logdet: float) -> float:
    solved = solve_triangular(chol, residual, lower=True, check_finite=False)
    return -0.5 * (residual.shape[0] * np.log(2 * np.pi) + logdet + solved @ solved)


def _stable_cholesky(cov: np.ndarray, eps: float = 1e-8) -> np.ndarray:
    cov = 0.5 * (cov + cov.T)
    return cholesky(cov + eps * np.eye(cov.shape[0]), lower=True)


class LinearGaussianNoise:
    """
    Noise and observation operations on a single state vector.

    Args:
        state_noise_cov: [D, D] Process noise covariance Q
        observation_matrix: [ny, D] Observation matrix H
        observation_noise_cov: [ny, ny] Observation noise covariance R
    """

    def __init__(
        self,
        state_noise_cov: np.ndarray,
        observation_matrix: np.ndarray,
        observation_noise_cov: np.ndarray,
    ):
        Q = np.asarray(state_noise_cov, dtype=np.float64)
        H = np.asarray(observation_matrix, dtype=np.float64)
        R = np.asarray(observation_noise_cov, dtype=np.float64)
        if Q.shape[0] != H.shape[1] or R.shape[0] != H.shape[0]:
            raise ValueError(
                f"Incompatible shapes: Q {Q.shape}, H {H.shape}, R {R.shape}"
            )

        self.state_noise_cov = Q
        self.observation_matrix = H
        self.observation_noise_cov = R

        self._Q_chol = _stable_cholesky(Q)
        self._R_chol = _stable_cholesky(R)
        self._R_logdet = 2.0 * np.sum(np.log(np.diag(self._R_chol)))

        # Optimal proposal quantities
        S = H @ Q @ H.T + R
        self._S_chol = _stable_cholesky(S)
        self._S_logdet = 2.0 * np.sum(np.log(np.diag(self._S_chol)))
        # K = Q H^T S^{-1}, solved through the Cholesky factor of S
        QHt = Q @ H.T
        self._gain = solve_triangular(
            self._S_chol.T, solve_triangular(self._S_chol, QHt.T, lower=True), lower=False
        ).T
        self._proposal_chol = _stable_cholesky(Q - self._gain @ H @ Q)

    @property
    def state_dimension(self) -> int:
        return self.observation_matrix.shape[1]

    @property
    def observation_dimension(self) -> int:
        return self.observation_matrix.shape[0]

    def add_state_noise(self, state: np.ndarray, rng: Generator) -> None:
        state += self._Q_chol @ rng.standard_normal(self.state_dimension)

    def sample_observation(self, state: np.ndarray, rng: Generator) -> np.ndarray:
        noise = rng.standard_normal(self.observation_dimension)
        return self.observation_matrix @ state + self._R_chol @ noise

    def log_density_observation(self, observation: np.ndarray, state: np.ndarray) -> float:
        residual = observation - self.observation_matrix @ state
        return _gaussian_log_density(residual, self._R_chol, self._R_logdet)

    def optimal_proposal_log_weight(self, observation: np.ndarray, state: np.ndarray) -> float:
        residual = observation - self.observation_matrix @ state
        return _gaussian_log_density(residual, self._S_chol, self._S_logdet)

    def sample_optimal_proposal(self, state: np.ndarray, observation: np.ndarray, rng: Generator) -> None:
        residual = observation - self.observation_matrix @ state
        state += self._gain @ residual
        state += self._proposal_chol @ rng.standard_normal(self.state_dimension)
