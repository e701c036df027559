"""
State space model definitions.
"""

from .base import ModelCapability, OptimalProposalCapability, check_model
from .gaussian import LinearGaussianNoise
from .linear_gaussian import LinearGaussianModel, make_lgssm, make_lgssm_from_chol
from .lorenz63 import Lorenz63Model, Lorenz63Parameters

__all__ = [
    "ModelCapability",
    "OptimalProposalCapability",
    "check_model",
    "LinearGaussianNoise",
    "LinearGaussianModel",
    "make_lgssm",
    "make_lgssm_from_chol",
    "Lorenz63Model",
    "Lorenz63Parameters",
]
