"""
Exceptions and warnings raised by the filtering engine.
"""


class ParticleDAError(Exception):
    """Base class for all engine errors."""


class ConfigurationError(ParticleDAError, ValueError):
    """Invalid run configuration, detected before any time stepping."""


class DegenerateEnsembleError(ParticleDAError):
    """Every particle in a step has zero probability, so weights cannot be normalized."""

    def __init__(self, message: str, time_index: int = None):
        super().__init__(message)
        self.time_index = time_index


class CommunicationError(ParticleDAError):
    """A send, receive, gather or broadcast failed or timed out."""


class ResamplingAssignmentError(ParticleDAError):
    """Resampling index assignment with out-of-range entries or wrong length."""


class ParticleFaultWarning(RuntimeWarning):
    """One or more particles produced a non-finite state or log-weight."""
