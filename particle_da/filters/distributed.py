"""
Distributed particle filter.

Each time step runs, on every rank:

    propagate + weight   (tasks, rank-local)
    gather log weights   -> rank 0 normalizes and draws the systematic
                            resampling assignment
    broadcast assignment (the one synchronization point of the step)
    redistribute states  (point-to-point)
    aggregate statistics (canonical-block partials gathered to rank 0)
    write output         (rank 0; ensemble snapshots on every rank)

Random draws are keyed by time index and global particle index, so the
outcome does not depend on the number of ranks or tasks.
"""

import enum
import logging
import time
import warnings
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from .base import FilterResult
from .particle import get_filter_variant
from ..config import FilterParameters
from ..ensemble import Ensemble
from ..errors import ConfigurationError, DegenerateEnsembleError, ParticleFaultWarning
from ..models.base import check_model
from ..output import (
    OutputWriter,
    key_width,
    latest_ensemble_checkpoint,
    load_ensemble_states,
    write_ensemble_shard,
)
from ..parallel.comm import LocalCommunicatorGroup
from ..parallel.redistribution import redistribute
from ..parallel.tasks import TaskPool
from ..utils.resampling import (
    check_resampling_indices,
    draw_systematic_offset,
    effective_sample_size,
    normalize_log_weights,
    systematic_resample,
)
from ..utils.statistics import MeanAndVarSummaryStat, merge_blocks
from ..utils.streams import RandomStreams

logger = logging.getLogger(__name__)

ROOT = 0


class FilterPhase(enum.Enum):
    INITIALIZING = "initializing"
    PROPAGATING = "propagating"
    WEIGHTING = "weighting"
    SYNCHRONIZING = "synchronizing"
    RESAMPLING = "resampling"
    REDISTRIBUTING = "redistributing"
    AGGREGATING = "aggregating"
    CHECKPOINTING = "checkpointing"
    FINALIZING = "finalizing"
    DONE = "done"


@dataclass
class ResamplingDecision:
    """What rank 0 broadcasts after normalizing the gathered weights."""
    time_index: int
    indices: Optional[np.ndarray] = None
    weights: Optional[np.ndarray] = None
    error: Optional[str] = None


@dataclass
class _StepRecord:
    time_index: int
    mean: Optional[np.ndarray]
    var: Optional[np.ndarray]
    weights: np.ndarray
    ess: float
    log_likelihood_increment: float
    n_faults: int


class DistributedParticleFilter:
    """
    Particle filter over a fixed group of ranks, each running a pool of tasks.

    Args:
        parameters: FilterParameters; keyword arguments build one if omitted
    """

    def __init__(self, parameters: Optional[FilterParameters] = None, **kwargs):
        if parameters is None:
            parameters = FilterParameters(**kwargs)
        elif kwargs:
            raise TypeError("Pass either a FilterParameters instance or keyword arguments")
        self.parameters = parameters
        self.variant = get_filter_variant(parameters.filter_type)
        self.summary_stat = MeanAndVarSummaryStat(
            weighted=parameters.statistics_stage == "pre_resampling"
        )
        self.phase = FilterPhase.INITIALIZING

    # -------------------------------------------------------------------------
    # Public interface
    # -------------------------------------------------------------------------

    def filter(self, model, observations: np.ndarray, comm=None, resume: bool = False) -> Optional[FilterResult]:
        """
        Run the filter and return the result on rank 0 (None elsewhere).

        Args:
            model: Object implementing the model capability
            observations: [T, ny] Observations (y_1, ..., y_T)
            comm: Communicator; a single-rank local group if None
            resume: Restart from the latest complete ensemble snapshot in output_dir
        """
        _, result = self.run(model, observations, comm=comm, resume=resume)
        return result

    def run(
        self,
        model,
        observations: np.ndarray,
        comm=None,
        resume: bool = False,
    ) -> Tuple[Ensemble, Optional[FilterResult]]:
        """
        Run the filter.

        Returns:
            ensemble: This rank's final (resampled) shard
            result: FilterResult on rank 0, None on other ranks
        """
        params = self.parameters
        if comm is None:
            comm = LocalCommunicatorGroup(1, timeout=params.comm_timeout)[0]
        elif params.comm_timeout is not None and getattr(comm, "timeout", None) != params.comm_timeout:
            logger.warning(
                "comm_timeout=%s only applies to the communicator the filter creates; "
                "%r keeps its own timeout (%s)",
                params.comm_timeout, comm, getattr(comm, "timeout", None),
            )
        if params.verbose:
            _enable_verbose_logging()
        is_root = comm.rank == ROOT
        if is_root:
            logger.debug("Filter parameters: %s", params.to_dict())
        timers: Dict[str, float] = defaultdict(float)

        self._enter(FilterPhase.INITIALIZING, comm)
        with _timed(timers, "initialize"):
            observations, n_time_step = self._check_inputs(model, observations)
            ensemble = Ensemble.allocate(
                params.n_particle,
                model.state_dimension,
                comm.rank,
                comm.size,
                n_task=params.n_task,
                dtype=model.state_dtype,
            )
            entropy = comm.bcast(RandomStreams(params.seed).entropy if is_root else None, root=ROOT)
            streams = RandomStreams(entropy)

        writer = None
        if is_root and params.output_dir is not None:
            writer = OutputWriter(params.output_dir, n_time_step, params.output_flush_interval)
        pool = TaskPool(params.n_task)
        records: List[_StepRecord] = []

        if is_root:
            logger.info(
                "Filtering %d steps with %d particles (%s proposal) on %d rank(s) x %d task(s)",
                n_time_step, params.n_particle, self.variant.name, comm.size, params.n_task,
            )

        completed = False
        try:
            with _timed(timers, "initialize"):
                start_index = self._initialize(model, ensemble, streams, pool, comm, resume)
            if start_index == 0:
                # Non-finite initial states get zero weight like any other fault
                finite = np.all(np.isfinite(ensemble.states), axis=1)
                log_weights = np.where(finite, 0.0, -np.inf)
                n_faults = self._report_faults(ensemble, log_weights, 0, comm)
                record = self._synchronize_and_resample(
                    ensemble, log_weights, n_faults, 0, streams, pool, comm, timers
                )
                if is_root:
                    records.append(record)
                    self._write(writer, record)

            for time_index in range(start_index + 1, n_time_step + 1):
                record = self._step(
                    model, ensemble, observations[time_index - 1], time_index,
                    streams, pool, comm, timers,
                )
                self._enter(FilterPhase.CHECKPOINTING, comm)
                with _timed(timers, "checkpoint"):
                    if is_root:
                        records.append(record)
                        self._write(writer, record)
                        _log_step(record, params.verbose)
                    interval = params.ensemble_checkpoint_interval
                    if interval and time_index % interval == 0:
                        write_ensemble_shard(
                            params.output_dir, time_index, ensemble, comm.rank,
                            width=key_width(n_time_step),
                        )
            completed = True
        except (ConfigurationError, DegenerateEnsembleError):
            # Raised on every rank together
            raise
        except Exception as exc:
            if comm.size > 1:
                comm.abort(f"rank {comm.rank} failed while {self.phase.value}: {exc!r}")
            raise
        finally:
            self._enter(FilterPhase.FINALIZING, comm)
            pool.shutdown()
            if writer is not None:
                writer.close()

        if completed:
            comm.barrier()
        self._enter(FilterPhase.DONE, comm)

        if not is_root:
            return ensemble, None
        result = _collect_result(records, dict(timers), ensemble.state_dimension)
        if params.verbose:
            _log_timers(result.timers)
        return ensemble, result

    # -------------------------------------------------------------------------
    # Phases
    # -------------------------------------------------------------------------

    def _check_inputs(self, model, observations) -> Tuple[np.ndarray, int]:
        """Configuration checks, identical on every rank, before any compute."""
        params = self.parameters
        check_model(model, params.filter_type)

        observations = np.asarray(observations, dtype=model.observation_dtype)
        if observations.ndim == 1 and model.observation_dimension == 1:
            observations = observations[:, np.newaxis]
        if observations.ndim != 2 or observations.shape[1] != model.observation_dimension:
            raise ConfigurationError(
                f"Observations must have shape [T, {model.observation_dimension}], "
                f"got {observations.shape}"
            )

        n_time_step = observations.shape[0] if params.n_time_step is None else params.n_time_step
        if observations.shape[0] != n_time_step:
            raise ConfigurationError(
                f"Observation sequence has {observations.shape[0]} entries but the run "
                f"is configured for {n_time_step} time steps"
            )
        return observations, n_time_step

    def _initialize(self, model, ensemble, streams, pool, comm, resume) -> int:
        """Fill the ensemble; returns the time index it corresponds to."""
        params = self.parameters
        if resume:
            if params.output_dir is None:
                raise ConfigurationError("resume=True needs an output_dir")
            latest = None
            if comm.rank == ROOT:
                latest = latest_ensemble_checkpoint(params.output_dir, params.n_particle)
            latest = comm.bcast(latest, root=ROOT)
            if latest is not None:
                ensemble.states[...] = load_ensemble_states(
                    params.output_dir, latest, ensemble.offset, ensemble.offset + ensemble.n_local
                )
                if comm.rank == ROOT:
                    logger.info("Resuming from ensemble snapshot at time index %d", latest)
                return latest
            if comm.rank == ROOT:
                logger.warning("No complete ensemble snapshot in %s; starting from time index 0",
                               params.output_dir)

        def sample_initial(local: slice) -> None:
            for j, particle_index in zip(range(local.start, local.stop), ensemble.global_indices(local)):
                ensemble.states[j] = model.sample_initial_state(streams.particle(0, particle_index))

        pool.map(sample_initial, ensemble.task_slices)
        return 0

    def _step(self, model, ensemble, observation, time_index, streams, pool, comm, timers) -> Optional[_StepRecord]:
        self._enter(FilterPhase.PROPAGATING, comm)
        with _timed(timers, "propagate_and_weight"):
            partials = pool.map(
                lambda local: self._propagate_and_weight(
                    model, ensemble, local, observation, time_index, streams
                ),
                ensemble.task_slices,
            )
            # Each task weights its particles as it advances them
            self._enter(FilterPhase.WEIGHTING, comm)
            log_weights = np.concatenate(partials)
            n_faults = self._report_faults(ensemble, log_weights, time_index, comm)
        return self._synchronize_and_resample(
            ensemble, log_weights, n_faults, time_index, streams, pool, comm, timers
        )

    def _report_faults(self, ensemble, log_weights, time_index, comm) -> int:
        n_faults = int(np.count_nonzero(~np.isfinite(log_weights)))
        if n_faults:
            warnings.warn(
                f"{n_faults} of {ensemble.n_local} particles on rank {comm.rank} produced "
                f"a non-finite state or log weight at time index {time_index}; "
                f"they are given zero weight",
                ParticleFaultWarning,
            )
        return n_faults

    def _synchronize_and_resample(
        self, ensemble, log_weights, n_faults, time_index, streams, pool, comm, timers
    ) -> Optional[_StepRecord]:
        """Gather weights, apply rank 0's resampling decision and aggregate."""
        params = self.parameters
        is_root = comm.rank == ROOT

        self._enter(FilterPhase.SYNCHRONIZING, comm)
        with _timed(timers, "synchronize"):
            gathered = comm.gather((log_weights, n_faults), root=ROOT)
            record = None
            decision = None
            if is_root:
                decision, record = self._resampling_decision(time_index, gathered, streams)
            decision = comm.bcast(decision, root=ROOT)
        if decision.error is not None:
            raise DegenerateEnsembleError(decision.error, time_index=time_index)

        pre_blocks = None
        if decision.indices is not None:
            self._enter(FilterPhase.RESAMPLING, comm)
            indices = check_resampling_indices(decision.indices, params.n_particle)
            if self.summary_stat.weighted:
                with _timed(timers, "aggregate"):
                    pre_blocks = self._local_blocks(ensemble, decision.weights, pool)

            self._enter(FilterPhase.REDISTRIBUTING, comm)
            with _timed(timers, "redistribute"):
                redistribute(ensemble, indices, comm)

        self._enter(FilterPhase.AGGREGATING, comm)
        with _timed(timers, "aggregate"):
            mean, var = self._aggregate(ensemble, decision.weights, pool, comm, blocks=pre_blocks)

        if record is not None:
            record.mean, record.var = mean, var
        return record

    def _propagate_and_weight(self, model, ensemble, local, observation, time_index, streams):
        """Task body: advance and weight the particles in one local slice."""
        log_weights = np.empty(local.stop - local.start)
        for k, (j, particle_index) in enumerate(
            zip(range(local.start, local.stop), ensemble.global_indices(local))
        ):
            state = ensemble.states[j]
            log_weight = self.variant.sample_proposal_and_compute_log_weight(
                state, observation, model, time_index, streams.particle(time_index, particle_index)
            )
            if not np.isfinite(log_weight) or not np.all(np.isfinite(state)):
                logger.debug("Particle %d faulted at time index %d (log weight %r)",
                             particle_index, time_index, log_weight)
                log_weight = -np.inf
            log_weights[k] = log_weight
        return log_weights

    def _resampling_decision(self, time_index, gathered, streams) -> Tuple[ResamplingDecision, Optional[_StepRecord]]:
        """Rank 0 only: normalize all weights and draw the systematic assignment."""
        n_particle = self.parameters.n_particle
        weighted = self.summary_stat.weighted
        log_weights = np.concatenate([g[0] for g in gathered])
        n_faults = int(sum(g[1] for g in gathered))
        if time_index == 0 and n_faults == 0:
            # Initial ensemble is equally weighted and kept as sampled
            uniform = np.full(n_particle, 1.0 / n_particle)
            record = _StepRecord(0, None, None, uniform, float(n_particle), 0.0, 0)
            return ResamplingDecision(0, weights=uniform if weighted else None), record
        try:
            weights, log_normalizer = normalize_log_weights(log_weights)
        except DegenerateEnsembleError as exc:
            return ResamplingDecision(time_index, error=f"time index {time_index}: {exc}"), None

        offset = draw_systematic_offset(n_particle, streams.resampling(time_index))
        indices = systematic_resample(weights, offset=offset)

        record = _StepRecord(
            time_index=time_index,
            mean=None,
            var=None,
            weights=weights,
            ess=float(effective_sample_size(weights)),
            log_likelihood_increment=0.0 if time_index == 0 else log_normalizer - np.log(n_particle),
            n_faults=n_faults,
        )
        decision = ResamplingDecision(
            time_index,
            indices=indices,
            weights=weights if weighted else None,
        )
        return decision, record

    def _local_blocks(self, ensemble, weights, pool):
        n_total = ensemble.n_total
        local_weights = None
        if weights is not None:
            local_weights = weights[ensemble.offset:ensemble.offset + ensemble.n_local]

        def task_blocks(local: slice):
            return self.summary_stat.local_blocks(
                ensemble.states[local],
                ensemble.offset + local.start,
                n_total,
                None if local_weights is None else local_weights[local],
            )

        return merge_blocks(pool.map(task_blocks, ensemble.task_slices), n_total)

    def _aggregate(self, ensemble, weights, pool, comm, blocks=None):
        """Mean and variance on rank 0 ((None, None) elsewhere)."""
        if blocks is None:
            blocks = self._local_blocks(ensemble, weights if self.summary_stat.weighted else None, pool)
        gathered = comm.gather(blocks, root=ROOT)
        if comm.rank != ROOT:
            return None, None
        n_total = ensemble.n_total
        return self.summary_stat.finalize(merge_blocks(gathered, n_total), n_total)

    def _write(self, writer, record: _StepRecord) -> None:
        if writer is None:
            return
        writer.record(
            record.time_index,
            record.mean,
            record.var,
            record.weights,
            log_likelihood_increment=record.log_likelihood_increment,
            ess=record.ess,
            n_faults=record.n_faults,
        )

    def _enter(self, phase: FilterPhase, comm) -> None:
        logger.debug("rank %d: %s -> %s", comm.rank, self.phase.value, phase.value)
        self.phase = phase


def run_particle_filter(
    model,
    observations: np.ndarray,
    parameters: FilterParameters,
    comm=None,
    resume: bool = False,
) -> Tuple[Ensemble, Optional[FilterResult]]:
    """
    Run a distributed particle filter on this rank.

    Args:
        model: Object implementing the model capability
        observations: [T, ny] Observations (y_1, ..., y_T)
        parameters: FilterParameters of the run
        comm: Communicator (LocalCommunicator, MPICommunicator); single rank if None
        resume: Restart from the latest ensemble snapshot in parameters.output_dir

    Returns:
        (final local ensemble shard, FilterResult on rank 0 or None)
    """
    return DistributedParticleFilter(parameters).run(model, observations, comm=comm, resume=resume)


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

@contextmanager
def _timed(timers: Dict[str, float], name: str):
    start = time.perf_counter()
    try:
        yield
    finally:
        timers[name] += time.perf_counter() - start


def _collect_result(records: List[_StepRecord], timers: Dict[str, float], state_dimension: int) -> FilterResult:
    if not records:
        # Resumed from a snapshot at the final time index
        return FilterResult(
            means=np.empty((0, state_dimension)),
            variances=np.empty((0, state_dimension)),
            time_indices=np.empty(0, dtype=int),
            log_likelihood=0.0,
            timers=timers,
        )
    increments = np.array([r.log_likelihood_increment for r in records])
    return FilterResult(
        means=np.stack([r.mean for r in records]),
        variances=np.stack([r.var for r in records]),
        time_indices=np.array([r.time_index for r in records]),
        weights=np.stack([r.weights for r in records]),
        ess=np.array([r.ess for r in records]),
        log_likelihood=float(np.sum(increments)),
        log_likelihood_increments=increments,
        n_faults=np.array([r.n_faults for r in records]),
        timers=timers,
    )


def _log_step(record: _StepRecord, verbose: bool) -> None:
    log = logger.info if verbose else logger.debug
    log(
        "t=%d ESS=%.1f log-lik increment=%.4f faults=%d",
        record.time_index, record.ess, record.log_likelihood_increment, record.n_faults,
    )


def _log_timers(timers: Dict[str, float]) -> None:
    total = sum(timers.values())
    logger.info("%-22s %10s %7s", "phase", "seconds", "share")
    for name, seconds in sorted(timers.items(), key=lambda item: -item[1]):
        share = 100.0 * seconds / total if total > 0 else 0.0
        logger.info("%-22s %10.4f %6.1f%%", name, seconds, share)


def _enable_verbose_logging() -> None:
    package_logger = logging.getLogger("particle_da")
    package_logger.setLevel(logging.INFO)
    if not package_logger.handlers and not logging.getLogger().handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
        package_logger.addHandler(handler)
