"""
Filtering algorithms.
"""

from .base import FilterResult
from .kalman import KalmanFilter
from .particle import BootstrapFilter, OptimalFilter, get_filter_variant
from .distributed import (
    DistributedParticleFilter,
    FilterPhase,
    ResamplingDecision,
    run_particle_filter,
)

__all__ = [
    "FilterResult",
    "KalmanFilter",
    "BootstrapFilter",
    "OptimalFilter",
    "get_filter_variant",
    "DistributedParticleFilter",
    "FilterPhase",
    "ResamplingDecision",
    "run_particle_filter",
]
