"""
Run configuration.
"""

from dataclasses import dataclass, fields, asdict
from typing import Any, Dict, Optional

from .errors import ConfigurationError

FILTER_TYPES = ("bootstrap", "optimal")
STATISTICS_STAGES = ("post_resampling", "pre_resampling")


@dataclass
class FilterParameters:
    """
    Parameters of one filtering run.

    Attributes:
        n_particle: Ensemble size N (must be divisible by the number of ranks)
        n_task: Concurrent tasks per rank
        filter_type: "bootstrap" or "optimal" (locally optimal proposal)
        seed: Run seed; None draws fresh entropy on rank 0 and shares it
        n_time_step: Number of filtering steps; None uses the observation count
        statistics_stage: Compute summary statistics "post_resampling"
                          (unweighted) or "pre_resampling" (weighted)
        output_dir: Directory for per-time-index output; None disables output
        output_flush_interval: Steps between flushes of buffered output
        ensemble_checkpoint_interval: Steps between raw ensemble snapshots (0 disables)
        comm_timeout: Seconds before a blocked receive or barrier fails on the
                      single-rank local communicator built when no comm is
                      passed. A supplied communicator keeps its own timeout
                      (MPI has none); a mismatch is logged as a warning
        verbose: Log per-step progress and a timing summary at INFO level
    """
    n_particle: int = 100
    n_task: int = 1
    filter_type: str = "bootstrap"
    seed: Optional[int] = None
    n_time_step: Optional[int] = None
    statistics_stage: str = "post_resampling"
    output_dir: Optional[str] = None
    output_flush_interval: int = 1
    ensemble_checkpoint_interval: int = 0
    comm_timeout: Optional[float] = None
    verbose: bool = False

    def __post_init__(self):
        self.validate()

    def validate(self) -> None:
        """Raise ConfigurationError on any invalid field."""
        if not isinstance(self.n_particle, int) or self.n_particle < 1:
            raise ConfigurationError(f"n_particle must be a positive integer, got {self.n_particle!r}")
        if not isinstance(self.n_task, int) or self.n_task < 1:
            raise ConfigurationError(f"n_task must be a positive integer, got {self.n_task!r}")
        if self.filter_type not in FILTER_TYPES:
            raise ConfigurationError(
                f"Unknown filter_type {self.filter_type!r}; expected one of {FILTER_TYPES}"
            )
        if self.seed is not None and (not isinstance(self.seed, int) or self.seed < 0):
            raise ConfigurationError(f"seed must be a non-negative integer or None, got {self.seed!r}")
        if self.n_time_step is not None and (not isinstance(self.n_time_step, int) or self.n_time_step < 0):
            raise ConfigurationError(f"n_time_step must be a non-negative integer, got {self.n_time_step!r}")
        if self.statistics_stage not in STATISTICS_STAGES:
            raise ConfigurationError(
                f"Unknown statistics_stage {self.statistics_stage!r}; expected one of {STATISTICS_STAGES}"
            )
        if not isinstance(self.output_flush_interval, int) or self.output_flush_interval < 1:
            raise ConfigurationError("output_flush_interval must be a positive integer")
        if not isinstance(self.ensemble_checkpoint_interval, int) or self.ensemble_checkpoint_interval < 0:
            raise ConfigurationError("ensemble_checkpoint_interval must be a non-negative integer")
        if self.ensemble_checkpoint_interval and self.output_dir is None:
            raise ConfigurationError("ensemble_checkpoint_interval needs an output_dir")
        if self.comm_timeout is not None and self.comm_timeout <= 0:
            raise ConfigurationError("comm_timeout must be positive or None")

    @classmethod
    def from_dict(cls, parameters: Dict[str, Any]) -> "FilterParameters":
        """Build from a flat dictionary, rejecting unknown keys."""
        known = {f.name for f in fields(cls)}
        unknown = set(parameters) - known
        if unknown:
            raise ConfigurationError(
                f"Unknown filter parameters: {', '.join(sorted(unknown))}; "
                f"recognized keys are {', '.join(sorted(known))}"
            )
        return cls(**parameters)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
