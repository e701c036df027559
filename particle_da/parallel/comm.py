"""
Message passing between ranks.

Two transports implement the same small communicator interface used by the
filtering loop (rank, size, gather, bcast, isend, recv, barrier, abort):

- MPICommunicator wraps an mpi4py communicator, one rank per process.
- LocalCommunicatorGroup runs ranks as threads of one process with
  per-(source, destination, tag) mailboxes. Objects are passed by
  reference, so senders must not mutate an object after sending it.

Any failure or timeout raises CommunicationError, which is fatal for the
whole run.
"""

import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import CommunicationError

logger = logging.getLogger(__name__)

# Reserved tags for collectives on the local transport
_GATHER_TAG = -1
_BCAST_TAG = -2

_POLL_INTERVAL = 0.05


class _CompletedRequest:
    """Request handle for sends that complete on posting."""

    def wait(self):
        return None


class LocalCommunicator:
    """One rank's view of a LocalCommunicatorGroup."""

    def __init__(self, group: "LocalCommunicatorGroup", rank: int):
        self._group = group
        self.rank = rank
        self.size = group.size

    @property
    def timeout(self) -> Optional[float]:
        return self._group.timeout

    def _check_peer(self, peer: int):
        if not 0 <= peer < self.size:
            raise CommunicationError(f"Rank {peer} out of range for group of size {self.size}")

    def isend(self, obj: Any, dest: int, tag: int = 0) -> _CompletedRequest:
        self._check_peer(dest)
        self._group._mailbox(self.rank, dest, tag).put(obj)
        return _CompletedRequest()

    def send(self, obj: Any, dest: int, tag: int = 0) -> None:
        self.isend(obj, dest, tag)

    def recv(self, source: int, tag: int = 0) -> Any:
        self._check_peer(source)
        return self._group._receive(source, self.rank, tag)

    def gather(self, obj: Any, root: int = 0) -> Optional[List[Any]]:
        self._check_peer(root)
        if self.rank != root:
            self.isend(obj, root, _GATHER_TAG)
            return None
        return [
            obj if source == root else self._group._receive(source, root, _GATHER_TAG)
            for source in range(self.size)
        ]

    def bcast(self, obj: Any, root: int = 0) -> Any:
        self._check_peer(root)
        if self.rank == root:
            for dest in range(self.size):
                if dest != root:
                    self.isend(obj, dest, _BCAST_TAG)
            return obj
        return self._group._receive(root, self.rank, _BCAST_TAG)

    def barrier(self) -> None:
        try:
            self._group._barrier.wait(timeout=self._group.timeout)
        except threading.BrokenBarrierError as exc:
            raise CommunicationError(f"Barrier failed on rank {self.rank}") from exc

    def abort(self, reason: str = "") -> None:
        self._group.abort(reason or f"abort requested by rank {self.rank}")

    def __repr__(self) -> str:
        return f"LocalCommunicator(rank={self.rank}, size={self.size})"


class LocalCommunicatorGroup:
    """
    In-process group of `size` ranks.

    Args:
        size: Number of ranks
        timeout: Seconds a receive or barrier may block before failing (None waits forever)
    """

    def __init__(self, size: int = 1, timeout: Optional[float] = None):
        if size < 1:
            raise ValueError(f"Group size must be >= 1, got {size}")
        self.size = size
        self.timeout = timeout
        self._mailboxes: Dict[Tuple[int, int, int], queue.Queue] = {}
        self._lock = threading.Lock()
        self._aborted = threading.Event()
        self._abort_reason = ""
        self._barrier = threading.Barrier(size)
        self.communicators = [LocalCommunicator(self, rank) for rank in range(size)]

    def __getitem__(self, rank: int) -> LocalCommunicator:
        return self.communicators[rank]

    def _mailbox(self, source: int, dest: int, tag: int) -> queue.Queue:
        key = (source, dest, tag)
        with self._lock:
            if key not in self._mailboxes:
                self._mailboxes[key] = queue.Queue()
            return self._mailboxes[key]

    def _receive(self, source: int, dest: int, tag: int) -> Any:
        mailbox = self._mailbox(source, dest, tag)
        deadline = None if self.timeout is None else time.monotonic() + self.timeout
        while True:
            if self._aborted.is_set():
                raise CommunicationError(f"Communication aborted: {self._abort_reason}")
            try:
                return mailbox.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if deadline is not None and time.monotonic() > deadline:
                    raise CommunicationError(
                        f"Rank {dest} timed out after {self.timeout}s waiting for "
                        f"rank {source} (tag {tag})"
                    )

    def abort(self, reason: str) -> None:
        """Fail every pending and future operation in the group."""
        if not self._aborted.is_set():
            self._abort_reason = reason
            self._aborted.set()
            self._barrier.abort()
            logger.debug("Local communicator group aborted: %s", reason)


class MPICommunicator:
    """
    Communicator backed by mpi4py.

    Receives and barriers block until they complete; there is no timeout.

    Args:
        comm: mpi4py communicator (defaults to MPI.COMM_WORLD)
    """

    timeout = None

    def __init__(self, comm=None):
        from mpi4py import MPI

        self._MPI = MPI
        self._comm = MPI.COMM_WORLD if comm is None else comm
        self.rank = self._comm.Get_rank()
        self.size = self._comm.Get_size()

    def _call(self, name: str, *args, **kwargs):
        try:
            return getattr(self._comm, name)(*args, **kwargs)
        except self._MPI.Exception as exc:
            raise CommunicationError(f"MPI {name} failed on rank {self.rank}: {exc}") from exc

    def isend(self, obj: Any, dest: int, tag: int = 0):
        return self._call("isend", obj, dest=dest, tag=tag)

    def send(self, obj: Any, dest: int, tag: int = 0) -> None:
        self._call("send", obj, dest=dest, tag=tag)

    def recv(self, source: int, tag: int = 0) -> Any:
        return self._call("recv", source=source, tag=tag)

    def gather(self, obj: Any, root: int = 0) -> Optional[List[Any]]:
        return self._call("gather", obj, root=root)

    def bcast(self, obj: Any, root: int = 0) -> Any:
        return self._call("bcast", obj, root=root)

    def barrier(self) -> None:
        self._call("Barrier")

    def abort(self, reason: str = "") -> None:
        logger.error("Aborting MPI run from rank %d: %s", self.rank, reason)
        self._comm.Abort(1)

    def __repr__(self) -> str:
        return f"MPICommunicator(rank={self.rank}, size={self.size})"


def run_local_ranks(
    target: Callable[..., Any],
    n_rank: int,
    *args,
    timeout: Optional[float] = None,
    **kwargs,
) -> List[Any]:
    """
    Run `target(comm, *args, **kwargs)` once per rank of a local group.

    Each rank runs in its own thread. If any rank raises, the group is
    aborted so blocked ranks fail promptly, and the first exception that is
    not a consequence of the abort is re-raised.

    Returns:
        List of per-rank return values
    """
    group = LocalCommunicatorGroup(n_rank, timeout=timeout)
    results: List[Any] = [None] * n_rank
    errors: List[Tuple[int, BaseException]] = []
    errors_lock = threading.Lock()

    def worker(rank: int):
        try:
            results[rank] = target(group[rank], *args, **kwargs)
        except BaseException as exc:
            with errors_lock:
                errors.append((rank, exc))
            group.abort(f"rank {rank} failed: {exc!r}")

    threads = [
        threading.Thread(target=worker, args=(rank,), name=f"particle-da-rank-{rank}")
        for rank in range(n_rank)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    if errors:
        primary = [e for e in errors if not isinstance(e[1], CommunicationError)]
        rank, exc = (primary or errors)[0]
        logger.debug("Rank %d raised %r", rank, exc)
        raise exc
    return results
