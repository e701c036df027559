"""
Weight normalization and resampling for particle filters.
"""

from typing import Optional, Tuple

import numpy as np
from numpy.random import Generator

from ..errors import DegenerateEnsembleError, ResamplingAssignmentError


def normalize_log_weights(log_weights: np.ndarray) -> Tuple[np.ndarray, float]:
    """
    Normalize log weights to get normalized weights.

    Uses the log-sum-exp identity, subtracting the maximum finite log weight
    before exponentiating. Entries equal to -inf get zero weight.

    Args:
        log_weights: [N] Unnormalized log weights (finite or -inf)

    Returns:
        weights: [N] Normalized weights (sum to 1)
        log_normalizer: Log of the normalizing constant

    Raises:
        DegenerateEnsembleError: if no log weight is finite
    """
    log_weights = np.asarray(log_weights, dtype=np.float64)
    finite = np.isfinite(log_weights)
    if not np.any(finite):
        raise DegenerateEnsembleError(
            f"All {log_weights.size} particles have zero probability"
        )

    max_log = np.max(log_weights[finite])
    # Non-finite entries other than -inf are treated as -inf
    shifted = np.where(finite, log_weights - max_log, -np.inf)
    weights = np.exp(shifted)
    total = np.sum(weights)
    weights /= total

    return weights, float(max_log + np.log(total))


def effective_sample_size(weights: np.ndarray) -> float:
    """
    Compute effective sample size (ESS).

    ESS = 1 / sum(w_i^2), where weights are normalized.

    Args:
        weights: [N] Normalized weights (must sum to 1)

    Returns:
        ESS value in [1, N]
    """
    return 1.0 / np.sum(weights ** 2)


def draw_systematic_offset(n: int, rng: Generator) -> float:
    """Draw the single uniform offset u ~ U[0, 1/n) used by systematic resampling."""
    return rng.uniform(0.0, 1.0 / n)


def systematic_resample(
    weights: np.ndarray,
    rng: Optional[Generator] = None,
    offset: Optional[float] = None,
) -> np.ndarray:
    """
    Systematic resampling.

    Deterministic spacing with single random offset. Low variance. Output
    slot k takes the source whose cumulative weight interval
    [cdf[i-1], cdf[i]) contains u + k/N, so zero-weight particles are never
    selected and ties go to the lowest index.

    Args:
        weights: [N] Normalized weights (must sum to 1)
        rng: NumPy random generator, used to draw the offset if not given
        offset: Uniform offset u in [0, 1/N)

    Returns:
        indices: [N] Resampled particle indices
    """
    weights = np.asarray(weights, dtype=np.float64)
    N = len(weights)

    if offset is None:
        if rng is None:
            raise ValueError("Either rng or offset must be given")
        offset = draw_systematic_offset(N, rng)
    if not 0.0 <= offset < 1.0 / N:
        raise ValueError(f"Offset {offset} not in [0, 1/{N})")

    # Cumulative sum, rescaled so the last nonzero entry is exactly 1.0
    cdf = np.cumsum(weights)
    cdf /= cdf[-1]

    # Systematic positions
    u = offset + np.arange(N) / N

    # Find indices
    indices = np.searchsorted(cdf, u, side='right')
    last_positive = np.flatnonzero(weights > 0)[-1]
    indices = np.minimum(indices, last_positive)

    return indices


def check_resampling_indices(indices: np.ndarray, n_particle: int) -> np.ndarray:
    """
    Validate a resampling index assignment.

    Raises:
        ResamplingAssignmentError: wrong length or any index outside [0, n_particle)
    """
    indices = np.asarray(indices)
    if indices.shape != (n_particle,):
        raise ResamplingAssignmentError(
            f"Index assignment has shape {indices.shape}, expected ({n_particle},)"
        )
    if not np.issubdtype(indices.dtype, np.integer):
        raise ResamplingAssignmentError(
            f"Index assignment has non-integer dtype {indices.dtype}"
        )
    if n_particle > 0 and (indices.min() < 0 or indices.max() >= n_particle):
        raise ResamplingAssignmentError(
            f"Index assignment references indices outside [0, {n_particle}): "
            f"min={indices.min()}, max={indices.max()}"
        )
    return indices
