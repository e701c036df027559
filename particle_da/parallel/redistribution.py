"""
Moving resampled particle states to the ranks that own their output slots.
"""

import numpy as np

from ..utils.resampling import check_resampling_indices

REDISTRIBUTION_TAG = 1


def redistribute(ensemble, indices: np.ndarray, comm) -> None:
    """
    Replace local states so that local output slot j holds the pre-resampling
    state of global particle indices[offset + j].

    Every rank knows the full assignment, so each one works out which of its
    states the other ranks need and sends each needed state once per
    destination. All reads come from the current buffer and all writes go to
    a fresh one, which is copied back only after every read is done.

    Args:
        ensemble: Local shard, updated in place
        indices: [N] Global resampling index assignment
        comm: Communicator of the run

    Raises:
        ResamplingAssignmentError: malformed assignment
    """
    indices = check_resampling_indices(indices, ensemble.n_total)
    n_local = ensemble.n_local
    offset = ensemble.offset
    rank = comm.rank

    requests = []
    for dest in range(comm.size):
        if dest == rank:
            continue
        wanted = indices[dest * n_local:(dest + 1) * n_local]
        needed = np.unique(wanted[ensemble.owner(wanted) == rank])
        if needed.size:
            payload = (needed, ensemble.states[needed - offset].copy())
            requests.append(comm.isend(payload, dest, REDISTRIBUTION_TAG))

    sources = indices[offset:offset + n_local]
    owners = ensemble.owner(sources)
    resampled = np.empty_like(ensemble.states)

    local = owners == rank
    resampled[local] = ensemble.states[sources[local] - offset]

    for source_rank in np.unique(owners[~local]):
        received_indices, received_states = comm.recv(int(source_rank), REDISTRIBUTION_TAG)
        slots = np.flatnonzero(owners == source_rank)
        rows = np.searchsorted(received_indices, sources[slots])
        resampled[slots] = received_states[rows]

    for request in requests:
        request.wait()

    ensemble.states[...] = resampled
