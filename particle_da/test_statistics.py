"""
Tests for distributed mean/variance aggregation.

Run: pytest test_statistics.py -v
"""

import pytest
import numpy as np
from numpy.random import default_rng

from particle_da.utils.statistics import (
    MeanAndVarSummaryStat,
    MomentPartial,
    block_partials,
    merge_blocks,
    root_partial,
)


def shard_blocks(states, bounds, n_total=None, weights=None):
    """Block partials for each shard [bounds[i], bounds[i+1]) of an ensemble of n_total."""
    if n_total is None:
        n_total = states.shape[0]
    return [
        block_partials(
            states[a:b], a, n_total,
            None if weights is None else weights[a:b],
        )
        for a, b in zip(bounds[:-1], bounds[1:])
    ]


def direct_partial(states):
    """Two-pass partial of unweighted states [n, D]."""
    mean = states.mean(axis=0)
    return MomentPartial(float(states.shape[0]), mean, ((states - mean) ** 2).sum(axis=0))


def random_bounds(n, n_shard, rng):
    cuts = np.sort(rng.choice(np.arange(1, n), size=n_shard - 1, replace=False))
    return [0, *cuts.tolist(), n]


# ============================================================================
# Pairwise combination
# ============================================================================

class TestMomentPartial:

    def test_combine_matches_direct(self):
        rng = default_rng(0)
        x = rng.normal(size=(30, 4))
        a = direct_partial(x[:11])
        b = direct_partial(x[11:])
        combined = a.combine(b)

        assert combined.weight == 30
        np.testing.assert_allclose(combined.mean, x.mean(axis=0), rtol=1e-12, atol=1e-14)
        np.testing.assert_allclose(combined.variance(), x.var(axis=0, ddof=1), rtol=1e-12)

    def test_combine_associative(self):
        rng = default_rng(1)
        parts = [direct_partial(rng.normal(size=(n, 3))) for n in (3, 7, 5)]
        left = parts[0].combine(parts[1]).combine(parts[2])
        right = parts[0].combine(parts[1].combine(parts[2]))

        assert left.weight == right.weight
        np.testing.assert_allclose(left.mean, right.mean, rtol=1e-12)
        np.testing.assert_allclose(left.m2, right.m2, rtol=1e-12)

    def test_empty_partial_is_identity(self):
        x = default_rng(2).normal(size=(6, 2))
        a = direct_partial(x)
        empty = MomentPartial(0.0, np.zeros(2), np.zeros(2))

        for combined in (a.combine(empty), empty.combine(a)):
            np.testing.assert_array_equal(combined.mean, a.mean)
            np.testing.assert_array_equal(combined.m2, a.m2)

    def test_single_particle_variance_zero(self):
        partial = direct_partial(np.array([[1.0, 2.0]]))
        np.testing.assert_array_equal(partial.variance(), [0.0, 0.0])


# ============================================================================
# Canonical block reduction
# ============================================================================

class TestBlockReduction:

    @pytest.mark.parametrize("n_total", [1, 2, 3, 8, 37, 100])
    def test_matches_numpy(self, n_total):
        x = default_rng(n_total).normal(size=(n_total, 3))
        stat = MeanAndVarSummaryStat()
        mean, var = stat.finalize(merge_blocks([stat.local_blocks(x, 0, n_total)], n_total), n_total)

        np.testing.assert_allclose(mean, x.mean(axis=0), rtol=1e-12, atol=1e-14)
        expected_var = x.var(axis=0, ddof=1) if n_total > 1 else np.zeros(3)
        np.testing.assert_allclose(var, expected_var, rtol=1e-12, atol=1e-14)

    @pytest.mark.parametrize("n_total", [8, 37, 100])
    def test_partition_invariant_bitwise(self, n_total):
        """Any split into contiguous shards gives bit-identical statistics."""
        rng = default_rng(100 + n_total)
        x = rng.normal(size=(n_total, 2)) * 1e3 + 1e6

        reference = root_partial(merge_blocks(shard_blocks(x, [0, n_total]), n_total), n_total)
        for n_shard in (2, 3, 5, 8):
            bounds = random_bounds(n_total, n_shard, rng)
            merged = merge_blocks(shard_blocks(x, bounds), n_total)
            partial = root_partial(merged, n_total)

            assert partial.weight == reference.weight
            np.testing.assert_array_equal(partial.mean, reference.mean)
            np.testing.assert_array_equal(partial.m2, reference.m2)

    def test_two_stage_merge_bitwise(self):
        """Merging per-rank first, then across ranks, changes nothing."""
        n_total = 24
        x = default_rng(3).normal(size=(n_total, 2))
        single = merge_blocks(shard_blocks(x, [0, n_total]), n_total)

        # Two ranks of 12, each with tasks of uneven size
        rank_blocks = [
            merge_blocks(shard_blocks(x, [0, 5, 12])[:2], n_total),
            merge_blocks(shard_blocks(x, [0, 12, 19, 24])[1:], n_total),
        ]
        staged = merge_blocks(rank_blocks, n_total)

        np.testing.assert_array_equal(
            root_partial(staged, n_total).mean, root_partial(single, n_total).mean
        )
        np.testing.assert_array_equal(
            root_partial(staged, n_total).m2, root_partial(single, n_total).m2
        )

    def test_shard_blocks_are_maximal(self):
        blocks = block_partials(np.zeros((3, 1)), 0, 4)
        assert sorted(blocks) == [(0, 2), (1, 0)]

    def test_overlapping_shards_rejected(self):
        x = np.zeros((4, 1))
        with pytest.raises(ValueError):
            merge_blocks(shard_blocks(x, [0, 2]) + shard_blocks(x, [0, 2]), 4)

    def test_incomplete_cover_rejected(self):
        x = np.zeros((4, 1))
        with pytest.raises(ValueError):
            root_partial(merge_blocks(shard_blocks(x[:3], [0, 3], n_total=4), 4), 4)


# ============================================================================
# Weighted statistics
# ============================================================================

class TestWeightedStatistics:

    def test_matches_weighted_average(self):
        rng = default_rng(4)
        n_total = 21
        x = rng.normal(size=(n_total, 3))
        w = rng.dirichlet(np.ones(n_total))

        stat = MeanAndVarSummaryStat(weighted=True)
        blocks = merge_blocks(
            [stat.local_blocks(x[a:b], a, n_total, w[a:b]) for a, b in ((0, 7), (7, 21))],
            n_total,
        )
        mean, var = stat.finalize(blocks, n_total)

        expected_mean = np.average(x, axis=0, weights=w)
        expected_var = np.average((x - expected_mean) ** 2, axis=0, weights=w)
        np.testing.assert_allclose(mean, expected_mean, rtol=1e-12, atol=1e-14)
        np.testing.assert_allclose(var, expected_var, rtol=1e-10)

    def test_zero_weight_particles_ignored(self):
        x = np.array([[1.0], [100.0], [3.0], [100.0]])
        w = np.array([0.5, 0.0, 0.5, 0.0])
        stat = MeanAndVarSummaryStat(weighted=True)
        mean, var = stat.finalize(merge_blocks([stat.local_blocks(x, 0, 4, w)], 4), 4)

        np.testing.assert_allclose(mean, [2.0])
        np.testing.assert_allclose(var, [1.0])

    def test_zero_weight_non_finite_states_ignored(self):
        x = np.array([[1.0, 0.0], [np.nan, np.inf], [3.0, 2.0], [-np.inf, np.nan], [5.0, 4.0]])
        w = np.array([0.25, 0.0, 0.5, 0.0, 0.25])
        stat = MeanAndVarSummaryStat(weighted=True)
        blocks = merge_blocks(
            [stat.local_blocks(x[a:b], a, 5, w[a:b]) for a, b in ((0, 2), (2, 5))], 5
        )
        mean, var = stat.finalize(blocks, 5)

        np.testing.assert_allclose(mean, [3.0, 2.0])
        np.testing.assert_allclose(var, [2.0, 2.0])

    def test_weighted_needs_weights(self):
        with pytest.raises(ValueError):
            MeanAndVarSummaryStat(weighted=True).local_blocks(np.zeros((2, 1)), 0, 2)
