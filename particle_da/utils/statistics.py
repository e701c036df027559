"""
Distributed ensemble mean and variance.

Partial statistics are (weight total, mean, m2) triples combined with Chan's
parallel update, so they can be merged pairwise in any order without a
naive sum of squares.

To make the aggregate bit-for-bit independent of how the ensemble is split
across ranks and tasks, partials are always formed over the same blocks of
global particle indices: block k at level l covers
[k * 2**l, min((k + 1) * 2**l, N)) and is the combination of blocks 2k and
2k+1 at level l-1. Each shard contributes the maximal blocks lying entirely
inside its index range and the coordinating rank merges siblings up to the
single root block (ceil(log2 N), 0).
"""

from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

import numpy as np

BlockKey = Tuple[int, int]


@dataclass
class MomentPartial:
    """
    Partial mean and variance of a set of (optionally weighted) states.

    Attributes:
        weight: Total weight (particle count for unweighted sets)
        mean: [D] Weighted mean
        m2: [D] Weighted sum of squared deviations from the mean
    """
    weight: float
    mean: np.ndarray
    m2: np.ndarray

    def combine(self, other: "MomentPartial") -> "MomentPartial":
        """Chan's parallel combination."""
        weight, mean, m2 = _combine_arrays(
            np.asarray(self.weight), self.mean, self.m2,
            np.asarray(other.weight), other.mean, other.m2,
        )
        return MomentPartial(float(weight), mean, m2)

    def variance(self, unbiased: bool = True) -> np.ndarray:
        """
        Variance per dimension.

        unbiased=True divides by (weight - 1), for unweighted particle counts;
        otherwise by the weight total.
        """
        denominator = self.weight - 1.0 if unbiased else self.weight
        if denominator <= 0.0:
            return np.zeros_like(self.m2)
        return self.m2 / denominator


def _combine_arrays(wa, ma, m2a, wb, mb, m2b):
    """Elementwise Chan update over arrays of partials (weights [m], moments [m, D])."""
    w = wa + wb
    with np.errstate(invalid='ignore', divide='ignore'):
        frac = wb / w
        cross = wa * wb / w
    frac = frac[..., np.newaxis] if np.ndim(ma) > np.ndim(frac) else frac
    cross = cross[..., np.newaxis] if np.ndim(ma) > np.ndim(cross) else cross
    delta = mb - ma
    mean = ma + delta * frac
    m2 = m2a + m2b + delta ** 2 * cross

    # Empty sides pass the other side through unchanged
    a_empty = (wa == 0)
    b_empty = (wb == 0)
    if np.ndim(ma) > np.ndim(a_empty):
        a_empty = a_empty[..., np.newaxis]
        b_empty = b_empty[..., np.newaxis]
    mean = np.where(b_empty, ma, np.where(a_empty, mb, mean))
    m2 = np.where(b_empty, m2a, np.where(a_empty, m2b, m2))
    return w, mean, m2


def _n_level(n_total: int) -> int:
    """Level of the root block."""
    return int(n_total - 1).bit_length()


def _has_right_child(parent: int, level: int, n_total: int) -> bool:
    """Whether block `parent` at `level` has a non-empty right child."""
    return (2 * parent + 1) * (1 << (level - 1)) < n_total


def block_partials(
    states: np.ndarray,
    start: int,
    n_total: int,
    weights: Optional[np.ndarray] = None,
) -> Dict[BlockKey, MomentPartial]:
    """
    Maximal canonical blocks inside the global index range [start, start + n).

    Args:
        states: [n, D] States of particles start .. start + n - 1
        start: Global index of the first row
        n_total: Ensemble size N
        weights: [n] Optional particle weights (unweighted if None)

    Returns:
        Dict mapping (level, block index) to MomentPartial
    """
    n = states.shape[0]
    blocks: Dict[BlockKey, MomentPartial] = {}
    if n == 0:
        return blocks

    w = np.ones(n) if weights is None else np.asarray(weights, dtype=np.float64).copy()
    mean = np.array(states, dtype=np.float64, copy=True)
    if weights is not None:
        # Zero-weight rows may hold faulted (non-finite) states
        mean[w == 0.0] = 0.0
    m2 = np.zeros_like(mean)
    ka, kb = start, start + n  # node range [ka, kb) at current level
    level = 0

    while kb - ka > 0:
        if level == _n_level(n_total):
            blocks[(level, ka)] = MomentPartial(float(w[0]), mean[0], m2[0])
            break
        # Parents fully inside the range
        pa = (ka + 1) // 2
        pb = pa
        while 2 * pb < kb and (2 * pb + 1 < kb or not _has_right_child(pb, level + 1, n_total)):
            pb += 1

        # Children left without a parent in range are maximal
        for k in range(ka, kb):
            if not (pa <= k // 2 < pb):
                blocks[(level, k)] = MomentPartial(float(w[k - ka]), mean[k - ka], m2[k - ka])
        if pb == pa:
            break

        left = 2 * np.arange(pa, pb) - ka
        right = left + 1
        has_right = right < (kb - ka)
        right_idx = np.where(has_right, right, left)
        wr = np.where(has_right, w[right_idx], 0.0)
        w, mean, m2 = _combine_arrays(
            w[left], mean[left], m2[left],
            wr, mean[right_idx], m2[right_idx],
        )
        ka, kb = pa, pb
        level += 1

    return blocks


def merge_blocks(
    blocks: Iterable[Dict[BlockKey, MomentPartial]],
    n_total: int,
) -> Dict[BlockKey, MomentPartial]:
    """
    Union block dictionaries from disjoint shards and merge complete siblings.

    The result again holds only maximal blocks; once every shard of the
    ensemble is included it holds the single root block.
    """
    merged: Dict[BlockKey, MomentPartial] = {}
    for part in blocks:
        for key, value in part.items():
            if key in merged:
                raise ValueError(f"Overlapping statistics block {key}")
            merged[key] = value

    top = _n_level(n_total)
    for level in range(top):
        keys = sorted(k for (lv, k) in merged if lv == level)
        for k in keys:
            if (level, k) not in merged:
                continue
            parent = k // 2
            left, right = (level, 2 * parent), (level, 2 * parent + 1)
            if _has_right_child(parent, level + 1, n_total):
                if left in merged and right in merged:
                    merged[(level + 1, parent)] = merged.pop(left).combine(merged.pop(right))
            elif left in merged:
                merged[(level + 1, parent)] = merged.pop(left)
    return merged


def root_partial(blocks: Dict[BlockKey, MomentPartial], n_total: int) -> MomentPartial:
    """Extract the whole-ensemble partial from fully merged blocks."""
    key = (_n_level(n_total), 0)
    if len(blocks) != 1 or key not in blocks:
        raise ValueError(
            f"Statistics blocks do not cover the ensemble of {n_total} particles: "
            f"{sorted(blocks)}"
        )
    return blocks[key]


class MeanAndVarSummaryStat:
    """
    Mean and variance of the ensemble per state dimension.

    Args:
        weighted: If True, statistics use normalized particle weights (pre-resampling)
                  and the variance divides by the weight total. Otherwise particles
                  count equally and the variance uses an N - 1 denominator.
    """

    def __init__(self, weighted: bool = False):
        self.weighted = weighted

    def local_blocks(
        self,
        states: np.ndarray,
        start: int,
        n_total: int,
        weights: Optional[np.ndarray] = None,
    ) -> Dict[BlockKey, MomentPartial]:
        if self.weighted and weights is None:
            raise ValueError("Weighted statistics need particle weights")
        return block_partials(states, start, n_total, weights if self.weighted else None)

    def finalize(self, blocks: Dict[BlockKey, MomentPartial], n_total: int) -> Tuple[np.ndarray, np.ndarray]:
        """Return (mean, variance) from the blocks of the whole ensemble."""
        partial = root_partial(blocks, n_total)
        return partial.mean.copy(), partial.variance(unbiased=not self.weighted)
