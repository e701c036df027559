"""
Proposal variants for the particle filter.

Each variant advances one particle in place and returns its unnormalized
log importance weight, so everything downstream of weighting is shared.
A particle whose state stops being finite gets a log weight of -inf and
the model density is not evaluated on it.
"""

import numpy as np
from numpy.random import Generator

from ..errors import ConfigurationError


class BootstrapFilter:
    """
    Bootstrap proposal: sample from the state transition, weight by the likelihood.

    log w = log p(y_t | x_t)
    """

    name = "bootstrap"

    @staticmethod
    def sample_proposal_and_compute_log_weight(
        state: np.ndarray,
        observation: np.ndarray,
        model,
        time_index: int,
        rng: Generator,
    ) -> float:
        model.update_state_deterministic(state, time_index)
        model.update_state_stochastic(state, rng)
        if not np.all(np.isfinite(state)):
            return -np.inf
        return model.log_density_observation_given_state(observation, state)


class OptimalFilter:
    """
    Locally optimal proposal: sample from p(x_t | x_{t-1}, y_t).

    The model supplies both the proposal sampler and the log weight
    correction for it; the weight is evaluated on the deterministically
    updated state, before the proposal draw.
    """

    name = "optimal"

    @staticmethod
    def sample_proposal_and_compute_log_weight(
        state: np.ndarray,
        observation: np.ndarray,
        model,
        time_index: int,
        rng: Generator,
    ) -> float:
        model.update_state_deterministic(state, time_index)
        if not np.all(np.isfinite(state)):
            return -np.inf
        log_weight = model.get_optimal_proposal_log_weight(observation, state)
        model.sample_state_from_optimal_proposal(state, observation, rng)
        if not np.all(np.isfinite(state)):
            return -np.inf
        return log_weight


FILTER_VARIANTS = {
    BootstrapFilter.name: BootstrapFilter,
    OptimalFilter.name: OptimalFilter,
}


def get_filter_variant(filter_type: str):
    """Look up a proposal variant by name."""
    try:
        return FILTER_VARIANTS[filter_type]()
    except KeyError:
        raise ConfigurationError(
            f"Unknown filter type {filter_type!r}; expected one of {sorted(FILTER_VARIANTS)}"
        ) from None
