"""
Model capability contract.

Any object providing these members can be filtered; models are sibling
implementations of the protocol and never need to inherit from a common
base class. All methods act on a single particle: `state` is a 1-D view
into the ensemble buffer and is updated in place. Apart from the explicit
random generator and the state buffer, methods must not touch shared state,
since particles are advanced concurrently.
"""

from typing import Protocol, runtime_checkable

import numpy as np
from numpy.random import Generator

from ..errors import ConfigurationError


@runtime_checkable
class ModelCapability(Protocol):
    """
    Operations the engine needs from a state space model.

    Attributes:
        state_dimension: D, length of a state vector
        observation_dimension: Length of an observation vector
        state_dtype: NumPy dtype of state vectors
        observation_dtype: NumPy dtype of observation vectors
    """
    state_dimension: int
    observation_dimension: int
    state_dtype: np.dtype
    observation_dtype: np.dtype

    def sample_initial_state(self, rng: Generator) -> np.ndarray:
        """Draw x_0 from the initial state distribution, returns [D]."""
        ...

    def update_state_deterministic(self, state: np.ndarray, time_index: int) -> None:
        """Apply the deterministic part of the transition into `time_index`, in place."""
        ...

    def update_state_stochastic(self, state: np.ndarray, rng: Generator) -> None:
        """Apply the stochastic part of the transition, in place."""
        ...

    def sample_observation_given_state(self, state: np.ndarray, rng: Generator) -> np.ndarray:
        """Draw y ~ p(y | x), returns [observation_dimension]."""
        ...

    def log_density_observation_given_state(self, observation: np.ndarray, state: np.ndarray) -> float:
        """Evaluate log p(y | x)."""
        ...


@runtime_checkable
class OptimalProposalCapability(Protocol):
    """
    Extra operations for the locally optimal proposal.

    Both are evaluated after `update_state_deterministic`. The log weight is
    the model's own importance weight correction for its proposal (for
    additive Gaussian state noise with a linear Gaussian observation it is
    the predictive density log p(y | x_det)).
    """

    def get_optimal_proposal_log_weight(self, observation: np.ndarray, state: np.ndarray) -> float:
        ...

    def sample_state_from_optimal_proposal(
        self, state: np.ndarray, observation: np.ndarray, rng: Generator
    ) -> None:
        ...


def check_model(model, filter_type: str = "bootstrap") -> None:
    """
    Verify a model provides the capability needed by a filter variant.

    Raises:
        ConfigurationError: if a required member is missing
    """
    if not isinstance(model, ModelCapability):
        missing = _missing_members(model, ModelCapability)
        raise ConfigurationError(
            f"{type(model).__name__} does not implement the model capability; "
            f"missing: {', '.join(missing)}"
        )
    if filter_type == "optimal" and not isinstance(model, OptimalProposalCapability):
        missing = _missing_members(model, OptimalProposalCapability)
        raise ConfigurationError(
            f"{type(model).__name__} cannot be used with the locally optimal proposal; "
            f"missing: {', '.join(missing)}"
        )


def _missing_members(obj, protocol) -> list:
    members = [
        name for name in dir(protocol)
        if not name.startswith('_') and name not in ('register',)
    ]
    members += list(getattr(protocol, '__annotations__', {}))
    return sorted({name for name in members if not hasattr(obj, name)})
