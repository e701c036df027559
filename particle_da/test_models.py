"""
Tests for reference models, simulation, the Kalman reference filter and
run configuration.

Run: pytest test_models.py -v
"""

import pytest
import numpy as np
from numpy.random import default_rng
from scipy import stats

from particle_da.config import FilterParameters
from particle_da.errors import ConfigurationError
from particle_da.filters.kalman import KalmanFilter
from particle_da.models import (
    LinearGaussianModel,
    Lorenz63Model,
    Lorenz63Parameters,
    check_model,
    make_lgssm,
    make_lgssm_from_chol,
)
from particle_da.models.base import ModelCapability, OptimalProposalCapability
from particle_da.simulation import Trajectory, simulate


# ============================================================================
# Assertion helpers
# ============================================================================

def assert_symmetric(P: np.ndarray, name: str, atol: float = 1e-10):
    """Check that matrix P is symmetric."""
    diff = np.max(np.abs(P - P.T))
    if diff > atol:
        pytest.fail(f"{name}: Not symmetric, max|P - P.T| = {diff:.3e}")


def assert_positive_definite(P: np.ndarray, name: str, tol: float = 1e-10):
    """Check that matrix P is positive definite via eigenvalues."""
    min_eig = np.min(np.linalg.eigvalsh(P))
    if min_eig < tol:
        pytest.fail(f"{name}: Not positive definite, min eigenvalue = {min_eig:.3e}")


def assert_convergence(Ps: np.ndarray, name: str, tol: float = 1e-6, window: int = 10):
    """Assert covariance sequence has converged over the last `window` steps."""
    diffs = [np.max(np.abs(Ps[t] - Ps[t - 1])) for t in range(len(Ps) - window, len(Ps))]
    if max(diffs) > tol:
        pytest.fail(
            f"{name}: Covariance did not converge.\n"
            f"  Last {window} diffs: {[f'{d:.3e}' for d in diffs]}\n"
            f"  Required tol: {tol:.0e}"
        )


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def random_walk_1d():
    """1D random walk model."""
    return make_lgssm(
        A=[[1.0]], C=[[1.0]], Q=[[0.2]], R=[[0.5]], m0=[0.3], P0=[[1.2]],
    )


@pytest.fixture
def stable_2d():
    """Stable 2D system observed in one coordinate."""
    return make_lgssm(
        A=[[0.9, 0.1], [-0.1, 0.8]],
        C=[[1.0, 0.0]],
        Q=np.diag([0.1, 0.05]),
        R=[[0.2]],
        m0=[0.0, 1.0],
        P0=np.eye(2),
    )


# ============================================================================
# Capability checks
# ============================================================================

class BootstrapOnlyModel:
    state_dimension = 1
    observation_dimension = 1
    state_dtype = np.dtype(np.float64)
    observation_dtype = np.dtype(np.float64)

    def sample_initial_state(self, rng):
        return rng.standard_normal(1)

    def update_state_deterministic(self, state, time_index):
        pass

    def update_state_stochastic(self, state, rng):
        state += rng.standard_normal(1)

    def sample_observation_given_state(self, state, rng):
        return state + rng.standard_normal(1)

    def log_density_observation_given_state(self, observation, state):
        return float(stats.norm.logpdf(observation[0], loc=state[0]))


class TestCapabilities:

    def test_reference_models_implement_both_capabilities(self, random_walk_1d):
        for model in (random_walk_1d, Lorenz63Model()):
            assert isinstance(model, ModelCapability)
            assert isinstance(model, OptimalProposalCapability)
            check_model(model, "optimal")

    def test_bootstrap_only_model(self):
        model = BootstrapOnlyModel()
        check_model(model, "bootstrap")
        with pytest.raises(ConfigurationError, match="get_optimal_proposal_log_weight"):
            check_model(model, "optimal")

    def test_missing_member_listed(self):
        class Incomplete:
            state_dimension = 1

        with pytest.raises(ConfigurationError, match="sample_initial_state"):
            check_model(Incomplete())


# ============================================================================
# Linear Gaussian model
# ============================================================================

class TestLinearGaussianModel:

    def test_make_lgssm_from_chol(self):
        B = np.array([[1.0, 0.0], [0.5, 0.2]])
        D = np.array([[0.3]])
        model = make_lgssm_from_chol(np.eye(2), [[1.0, 1.0]], B, D, np.zeros(2), np.eye(2))

        assert isinstance(model, LinearGaussianModel)
        np.testing.assert_allclose(model.Q, B @ B.T)
        np.testing.assert_allclose(model.R, D @ D.T)

    def test_observation_density_matches_scipy(self, stable_2d):
        x = np.array([0.4, -0.2])
        y = np.array([0.1])
        expected = stats.multivariate_normal.logpdf(y, mean=stable_2d.C @ x, cov=stable_2d.R)
        assert np.isclose(stable_2d.log_density_observation_given_state(y, x), expected, atol=1e-7)

    def test_densities_of_nan_state_are_nan(self, stable_2d):
        x = np.array([np.nan, -0.2])
        y = np.array([0.1])
        assert np.isnan(stable_2d.log_density_observation_given_state(y, x))
        assert np.isnan(stable_2d.get_optimal_proposal_log_weight(y, x))

    def test_optimal_weight_is_predictive_density(self, stable_2d):
        x_det = np.array([0.4, -0.2])
        y = np.array([0.1])
        S = stable_2d.C @ stable_2d.Q @ stable_2d.C.T + stable_2d.R
        expected = stats.multivariate_normal.logpdf(y, mean=stable_2d.C @ x_det, cov=S)
        assert np.isclose(stable_2d.get_optimal_proposal_log_weight(y, x_det), expected, atol=1e-7)

    def test_optimal_proposal_moments(self, stable_2d):
        """Samples from the proposal match N(x + K(y - Hx), Q - KHQ)."""
        x_det = np.array([0.4, -0.2])
        y = np.array([1.5])
        Q, H, R = stable_2d.Q, stable_2d.C, stable_2d.R
        K = Q @ H.T @ np.linalg.inv(H @ Q @ H.T + R)
        expected_mean = x_det + K @ (y - H @ x_det)
        expected_cov = Q - K @ H @ Q

        rng = default_rng(0)
        samples = np.empty((20_000, 2))
        for i in range(samples.shape[0]):
            state = x_det.copy()
            stable_2d.sample_state_from_optimal_proposal(state, y, rng)
            samples[i] = state

        np.testing.assert_allclose(samples.mean(axis=0), expected_mean, atol=0.01)
        np.testing.assert_allclose(np.cov(samples.T), expected_cov, atol=0.01)


# ============================================================================
# Lorenz-63
# ============================================================================

class TestLorenz63:

    def test_deterministic_update_is_pure(self):
        model = Lorenz63Model()
        a = np.array([1.0, 2.0, 20.0])
        b = a.copy()
        model.update_state_deterministic(a, 1)
        model.update_state_deterministic(b, 1)
        np.testing.assert_array_equal(a, b)
        assert not np.allclose(a, [1.0, 2.0, 20.0])

    def test_fixed_point_at_origin(self):
        state = np.zeros(3)
        Lorenz63Model().update_state_deterministic(state, 1)
        np.testing.assert_array_equal(state, np.zeros(3))

    def test_partial_observation(self):
        model = Lorenz63Model(Lorenz63Parameters(observed_indices=(0, 2), observation_noise_std=0.5))
        assert model.observation_dimension == 2
        y = model.sample_observation_given_state(np.array([1.0, 2.0, 3.0]), default_rng(0))
        assert y.shape == (2,)

    def test_from_dict(self):
        model = Lorenz63Model.from_dict({"rho": 20.0, "state_noise_std": 0.5})
        assert model.parameters.rho == 20.0
        with pytest.raises(ConfigurationError, match="rhoo"):
            Lorenz63Model.from_dict({"rhoo": 20.0})

    def test_invalid_observed_indices(self):
        with pytest.raises(ConfigurationError):
            Lorenz63Model(Lorenz63Parameters(observed_indices=(0, 3)))


# ============================================================================
# Simulation
# ============================================================================

class TestSimulation:

    def test_trajectory_shapes_and_reproducibility(self):
        model = Lorenz63Model()
        a = simulate(model, T=20, seed=3)
        b = simulate(model, T=20, seed=3)

        assert a.states.shape == (21, 3)
        assert a.observations.shape == (20, 3)
        assert a.T == 20
        np.testing.assert_array_equal(a.states, b.states)
        np.testing.assert_array_equal(a.observations, b.observations)

    def test_save_load(self, tmp_path, random_walk_1d):
        traj = simulate(random_walk_1d, T=5, seed=0, metadata={"name": "rw"})
        path = tmp_path / "traj.npz"
        traj.save(str(path))
        loaded = Trajectory.load(str(path))

        np.testing.assert_array_equal(loaded.states, traj.states)
        np.testing.assert_array_equal(loaded.observations, traj.observations)
        assert loaded.metadata == {"name": "rw"}


# ============================================================================
# Kalman reference
# ============================================================================

class TestKalmanFilter:

    def test_covariance_convergence(self, random_walk_1d, stable_2d):
        for name, model in (("1D RW", random_walk_1d), ("2D", stable_2d)):
            ys = simulate(model, T=100, seed=123).observations
            result = KalmanFilter().filter(model, ys)
            assert_convergence(result.covariances, f"KF P ({name})")

    def test_covariance_valid(self, stable_2d):
        ys = simulate(stable_2d, T=50, seed=789).observations
        result = KalmanFilter().filter(stable_2d, ys)
        for t, P in enumerate(result.covariances):
            assert_symmetric(P, f"P[t={t}]")
            assert_positive_definite(P, f"P[t={t}]")

    def test_scalar_update_closed_form(self, random_walk_1d):
        y = np.array([[1.0]])
        result = KalmanFilter().filter(random_walk_1d, y)

        P_pred = 1.2 + 0.2
        gain = P_pred / (P_pred + 0.5)
        assert np.isclose(result.means[1, 0], 0.3 + gain * (1.0 - 0.3))
        assert np.isclose(result.covariances[1, 0, 0], (1 - gain) * P_pred)
        assert np.isclose(
            result.log_likelihood,
            stats.norm.logpdf(1.0, loc=0.3, scale=np.sqrt(P_pred + 0.5)),
        )


# ============================================================================
# Configuration
# ============================================================================

class TestFilterParameters:

    def test_defaults_valid(self):
        params = FilterParameters()
        assert params.n_particle == 100
        assert params.filter_type == "bootstrap"

    def test_from_dict_round_trip(self):
        params = FilterParameters.from_dict({"n_particle": 64, "n_task": 2, "seed": 5})
        assert FilterParameters.from_dict(params.to_dict()) == params

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigurationError, match="n_particles"):
            FilterParameters.from_dict({"n_particles": 64})

    @pytest.mark.parametrize("overrides", [
        {"n_particle": 0},
        {"n_task": 0},
        {"filter_type": "kernel"},
        {"statistics_stage": "sometimes"},
        {"seed": -1},
        {"output_flush_interval": 0},
        {"ensemble_checkpoint_interval": 5},
        {"comm_timeout": 0.0},
    ])
    def test_invalid_values_rejected(self, overrides):
        with pytest.raises(ConfigurationError):
            FilterParameters(**overrides)
