"""
Utility functions.
"""

from .resampling import (
    systematic_resample,
    draw_systematic_offset,
    check_resampling_indices,
    effective_sample_size,
    normalize_log_weights,
)

from .statistics import (
    MomentPartial,
    MeanAndVarSummaryStat,
    block_partials,
    merge_blocks,
)

from .streams import RandomStreams

__all__ = [
    "systematic_resample",
    "draw_systematic_offset",
    "check_resampling_indices",
    "effective_sample_size",
    "normalize_log_weights",
    "MomentPartial",
    "MeanAndVarSummaryStat",
    "block_partials",
    "merge_blocks",
    "RandomStreams",
]
