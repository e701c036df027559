"""
Per-time-index output and ensemble checkpoints.

Layout under the output directory:

    summary/t0000.npz        state_avg [D], state_var [D], weights [N],
                             log_likelihood_increment, ess, n_faults
    ensemble/t0000_r0000.npz states [n_local, D], offset, n_total

Keys are "t" followed by the zero-padded time index, so sorting key strings
sorts by time. Files are written to a temporary name and renamed, so a file
that exists is complete.
"""

import logging
import os
import re
from pathlib import Path
from typing import Dict, List, Optional

import numpy as np

from .ensemble import Ensemble
from .filters.base import FilterResult

logger = logging.getLogger(__name__)

SUMMARY_DIR = "summary"
ENSEMBLE_DIR = "ensemble"
KEY_WIDTH = 4

_SUMMARY_RE = re.compile(r"^t(\d+)\.npz$")
_SHARD_RE = re.compile(r"^t(\d+)_r(\d+)\.npz$")


def time_index_to_key(time_index: int, width: int = KEY_WIDTH) -> str:
    """Order-preserving key for a time index, e.g. 7 -> "t0007"."""
    return f"t{time_index:0{width}d}"


def key_to_time_index(key: str) -> int:
    return int(key.lstrip("t"))


def key_width(n_time_step: int) -> int:
    """Zero padding wide enough for every time index of a run."""
    return max(KEY_WIDTH, len(str(n_time_step)))


def _atomic_savez(path: Path, **arrays) -> None:
    tmp = path.with_name(path.name + ".tmp")
    with open(tmp, "wb") as f:
        np.savez(f, **arrays)
    os.replace(tmp, path)


class OutputWriter:
    """
    Buffers per-time-index summaries on the coordinating rank and writes them
    every `flush_interval` records and on `close`.

    Args:
        output_dir: Root output directory (created if missing)
        n_time_step: Final time index of the run, used to size the keys
        flush_interval: Records buffered between writes
    """

    def __init__(self, output_dir: str, n_time_step: int, flush_interval: int = 1):
        self.output_dir = Path(output_dir)
        self.width = key_width(n_time_step)
        self.flush_interval = flush_interval
        self._buffer: List[Dict[str, np.ndarray]] = []
        (self.output_dir / SUMMARY_DIR).mkdir(parents=True, exist_ok=True)

    def record(
        self,
        time_index: int,
        state_avg: np.ndarray,
        state_var: Optional[np.ndarray],
        weights: np.ndarray,
        log_likelihood_increment: float = 0.0,
        ess: float = np.nan,
        n_faults: int = 0,
    ) -> None:
        entry = {
            "time_index": np.int64(time_index),
            "state_avg": np.asarray(state_avg),
            "weights": np.asarray(weights),
            "log_likelihood_increment": np.float64(log_likelihood_increment),
            "ess": np.float64(ess),
            "n_faults": np.int64(n_faults),
        }
        if state_var is not None:
            entry["state_var"] = np.asarray(state_var)
        self._buffer.append(entry)
        if len(self._buffer) >= self.flush_interval:
            self.flush()

    def flush(self) -> None:
        for entry in self._buffer:
            key = time_index_to_key(int(entry["time_index"]), self.width)
            _atomic_savez(self.output_dir / SUMMARY_DIR / f"{key}.npz", **entry)
        if self._buffer:
            logger.debug("Flushed %d output records to %s", len(self._buffer), self.output_dir)
        self._buffer.clear()

    def close(self) -> None:
        self.flush()


def write_ensemble_shard(output_dir: str, time_index: int, ensemble: Ensemble, rank: int,
                         width: int = KEY_WIDTH) -> Path:
    """Write one rank's post-resampling states for `time_index`."""
    directory = Path(output_dir) / ENSEMBLE_DIR
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{time_index_to_key(time_index, width)}_r{rank:04d}.npz"
    _atomic_savez(
        path,
        states=ensemble.states,
        offset=np.int64(ensemble.offset),
        n_total=np.int64(ensemble.n_total),
    )
    return path


def _shard_files(output_dir: str) -> Dict[int, List[Path]]:
    directory = Path(output_dir) / ENSEMBLE_DIR
    shards: Dict[int, List[Path]] = {}
    if not directory.is_dir():
        return shards
    for path in directory.iterdir():
        match = _SHARD_RE.match(path.name)
        if match:
            shards.setdefault(int(match.group(1)), []).append(path)
    return shards


def latest_ensemble_checkpoint(output_dir: str, n_particle: int) -> Optional[int]:
    """
    Latest time index whose shards together cover all `n_particle` particles.

    Returns None if there is no complete snapshot.
    """
    for time_index, paths in sorted(_shard_files(output_dir).items(), reverse=True):
        covered = np.zeros(n_particle, dtype=bool)
        for path in paths:
            with np.load(path) as data:
                if int(data["n_total"]) != n_particle:
                    break
                offset = int(data["offset"])
                covered[offset:offset + data["states"].shape[0]] = True
        else:
            if covered.all():
                return time_index
    return None


def load_ensemble_states(output_dir: str, time_index: int, start: int, stop: int) -> np.ndarray:
    """
    States of global particles [start, stop) from the snapshot at `time_index`.

    The snapshot may have been written with a different rank count.
    """
    states = None
    filled = np.zeros(stop - start, dtype=bool)
    for path in _shard_files(output_dir).get(time_index, []):
        with np.load(path) as data:
            shard = data["states"]
            offset = int(data["offset"])
            lo, hi = max(start, offset), min(stop, offset + shard.shape[0])
            if lo >= hi:
                continue
            if states is None:
                states = np.empty((stop - start, shard.shape[1]), dtype=shard.dtype)
            states[lo - start:hi - start] = shard[lo - offset:hi - offset]
            filled[lo - start:hi - start] = True
    if states is None or not filled.all():
        raise FileNotFoundError(
            f"Ensemble snapshot t={time_index} in {output_dir} does not cover particles {start}..{stop - 1}"
        )
    return states


def read_output(output_dir: str) -> FilterResult:
    """
    Read every summary record under `output_dir` in time order.

    Returns:
        FilterResult with means, variances (if written), weights,
        log-likelihood increments, ESS and fault counts per time index
    """
    directory = Path(output_dir) / SUMMARY_DIR
    paths = sorted(
        (p for p in directory.iterdir() if _SUMMARY_RE.match(p.name)),
        key=lambda p: int(_SUMMARY_RE.match(p.name).group(1)),
    )
    if not paths:
        raise FileNotFoundError(f"No output records in {directory}")

    records = []
    for path in paths:
        with np.load(path) as data:
            records.append({name: data[name] for name in data.files})

    has_var = all("state_var" in r for r in records)
    increments = np.array([float(r["log_likelihood_increment"]) for r in records])
    return FilterResult(
        means=np.stack([r["state_avg"] for r in records]),
        variances=np.stack([r["state_var"] for r in records]) if has_var else None,
        time_indices=np.array([int(r["time_index"]) for r in records]),
        weights=np.stack([r["weights"] for r in records]),
        ess=np.array([float(r["ess"]) for r in records]),
        log_likelihood=float(np.sum(increments)),
        log_likelihood_increments=increments,
        n_faults=np.array([int(r["n_faults"]) for r in records]),
    )
