"""
Linear Gaussian State Space Model.

x_t = A @ x_{t-1} + v_t,  v_t ~ N(0, Q)
y_t = C @ x_t + w_t,      w_t ~ N(0, R)
"""

import numpy as np
from numpy.random import Generator

from .gaussian import LinearGaussianNoise, _stable_cholesky


class LinearGaussianModel:
    """
    Linear Gaussian model implementing the bootstrap and locally optimal capabilities.

    Attributes:
        A: [nx, nx] State transition matrix
        C: [ny, nx] Observation matrix
        Q: [nx, nx] Process noise covariance
        R: [ny, ny] Observation noise covariance
        m0: [nx] Initial state mean
        P0: [nx, nx] Initial state covariance
    """

    state_dtype = np.dtype(np.float64)
    observation_dtype = np.dtype(np.float64)

    def __init__(self, A, C, Q, R, m0, P0):
        self.A = A
        self.C = C
        self.Q = Q
        self.R = R
        self.m0 = m0
        self.P0 = P0
        self.state_dimension = A.shape[0]
        self.observation_dimension = C.shape[0]
        self.noise = LinearGaussianNoise(Q, C, R)
        self._P0_chol = _stable_cholesky(P0)

    def sample_initial_state(self, rng: Generator) -> np.ndarray:
        return self.m0 + self._P0_chol @ rng.standard_normal(self.state_dimension)

    def update_state_deterministic(self, state: np.ndarray, time_index: int) -> None:
        state[:] = self.A @ state

    def update_state_stochastic(self, state: np.ndarray, rng: Generator) -> None:
        self.noise.add_state_noise(state, rng)

    def sample_observation_given_state(self, state: np.ndarray, rng: Generator) -> np.ndarray:
        return self.noise.sample_observation(state, rng)

    def log_density_observation_given_state(self, observation: np.ndarray, state: np.ndarray) -> float:
        return self.noise.log_density_observation(observation, state)

    def get_optimal_proposal_log_weight(self, observation: np.ndarray, state: np.ndarray) -> float:
        return self.noise.optimal_proposal_log_weight(observation, state)

    def sample_state_from_optimal_proposal(
        self, state: np.ndarray, observation: np.ndarray, rng: Generator
    ) -> None:
        self.noise.sample_optimal_proposal(state, observation, rng)

    def __repr__(self) -> str:
        return f"LinearGaussianModel(nx={self.state_dimension}, ny={self.observation_dimension})"


def make_lgssm(
    A: np.ndarray,
    C: np.ndarray,
    Q: np.ndarray,
    R: np.ndarray,
    m0: np.ndarray,
    P0: np.ndarray,
) -> LinearGaussianModel:
    """
    Create a Linear Gaussian State Space Model.

    Dynamics:    x_t = A @ x_{t-1} + v_t,  v_t ~ N(0, Q)
    Observation: y_t = C @ x_t + w_t,      w_t ~ N(0, R)

    Args:
        A: [nx, nx] State transition matrix
        C: [ny, nx] Observation matrix
        Q: [nx, nx] Process noise covariance
        R: [ny, ny] Observation noise covariance
        m0: [nx] Initial state mean
        P0: [nx, nx] Initial state covariance

    Returns:
        LinearGaussianModel instance
    """
    # Convert to numpy arrays
    A = np.asarray(A, dtype=np.float64)
    C = np.asarray(C, dtype=np.float64)
    Q = np.asarray(Q, dtype=np.float64)
    R = np.asarray(R, dtype=np.float64)
    m0 = np.asarray(m0, dtype=np.float64)
    P0 = np.asarray(P0, dtype=np.float64)

    # Ensure symmetry
    Q = 0.5 * (Q + Q.T)
    R = 0.5 * (R + R.T)
    P0 = 0.5 * (P0 + P0.T)

    return LinearGaussianModel(A, C, Q, R, m0, P0)


def make_lgssm_from_chol(
    A: np.ndarray,
    C: np.ndarray,
    B: np.ndarray,
    D: np.ndarray,
    m0: np.ndarray,
    P0: np.ndarray,
) -> LinearGaussianModel:
    """
    Create LGSSM from noise Cholesky factors.

    Q = B @ B.T
    R = D @ D.T

    Args:
        A: [nx, nx] State transition matrix
        C: [ny, nx] Observation matrix
        B: [nx, nv] Process noise factor (Q = B @ B.T)
        D: [ny, nw] Observation noise factor (R = D @ D.T)
        m0: [nx] Initial state mean
        P0: [nx, nx] Initial state covariance

    Returns:
        LinearGaussianModel instance
    """
    B = np.asarray(B, dtype=np.float64)
    D = np.asarray(D, dtype=np.float64)

    Q = B @ B.T
    R = D @ D.T

    return make_lgssm(A, C, Q, R, m0, P0)
