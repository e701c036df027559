"""
Distributed particle filtering library.

A NumPy-based engine for sequential data assimilation with:
- Bootstrap and locally optimal proposal particle filters
- Ensembles split across ranks (MPI or in-process) and tasks per rank
- Reproducible results for any number of ranks and tasks
- Per-time-index output, ensemble snapshots and resume
"""

from . import models
from . import filters
from . import parallel
from . import simulation
from . import utils

from .config import FilterParameters
from .errors import (
    ParticleDAError,
    ConfigurationError,
    DegenerateEnsembleError,
    CommunicationError,
    ResamplingAssignmentError,
    ParticleFaultWarning,
)
from .filters import DistributedParticleFilter, FilterResult, run_particle_filter
from .output import read_output

__version__ = "0.1.0"
