"""Sharing OSRW samples between cooperating walkers.

A walker publishes one (lambda, dU/dL, tempering weight) triplet every time
it adds to its histogram. Two exchange schemes are provided:

- SynchronousWalkerSynchronizer: every walker blocks in an all-gather and then
  folds all triplets in rank order, so identical sample streams give identical
  histograms on every walker.
- AsynchronousWalkerSynchronizer: triplets are sent to every walker (including
  the sender) and folded by a background receiver thread as they arrive. An
  all-NaN triplet shuts the receiver down.

Communicators hide the transport. LocalCommGroup connects threads inside one
process; MPICommunicator uses mpi4py between processes.
"""

import logging
import math
import queue
import threading
import time
from typing import Callable, Sequence

import numpy as np

try:
    from mpi4py import MPI
except ImportError:
    MPI = None


logger = logging.getLogger(__name__)

Sample = tuple[float, float, float]
Sink = Callable[[Sequence[Sample]], None]

SENTINEL: Sample = (math.nan, math.nan, math.nan)


def is_sentinel(sample: Sequence[float]) -> bool:
    return all(math.isnan(v) for v in sample)


class CommunicationError(RuntimeError):
    """Raised by a communicator when a transfer fails."""


class Communicator:
    """Point-to-point and collective transfer of sample triplets."""

    rank: int = 0
    size: int = 1

    def all_gather(self, sample: Sample) -> list[Sample]:
        """Exchange one sample with every rank. Returns samples in rank order."""
        raise NotImplementedError

    def send(self, dest: int, sample: Sample):
        raise NotImplementedError

    def receive(self, timeout: float | None = None) -> Sample | None:
        """Next sample from any rank, or None if nothing arrived in time."""
        raise NotImplementedError

    def close(self):
        pass


class LocalCommGroup:
    """A set of communicators for walkers running as threads of one process."""

    def __init__(self, size: int = 1, timeout: float | None = None):
        if size < 1:
            raise ValueError(f"size must be positive, got {size}")
        self.size = size
        self.timeout = timeout
        self._slots: list[Sample | None] = [None] * size
        self._barrier = threading.Barrier(size)
        self._queues = [queue.Queue() for _ in range(size)]

    def communicator(self, rank: int) -> "LocalCommunicator":
        if not 0 <= rank < self.size:
            raise ValueError(f"rank {rank} outside group of size {self.size}")
        return LocalCommunicator(self, rank)

    def communicators(self) -> list["LocalCommunicator"]:
        return [self.communicator(rank) for rank in range(self.size)]


class LocalCommunicator(Communicator):

    def __init__(self, group: LocalCommGroup, rank: int):
        self.group = group
        self.rank = rank
        self.size = group.size

    def all_gather(self, sample: Sample) -> list[Sample]:
        group = self.group
        group._slots[self.rank] = tuple(float(v) for v in sample)
        try:
            group._barrier.wait(group.timeout)
            gathered = list(group._slots)
            # Nobody may overwrite a slot until every rank has read them all.
            group._barrier.wait(group.timeout)
        except threading.BrokenBarrierError as e:
            raise CommunicationError(f"all-gather failed on rank {self.rank}") from e
        return gathered

    def send(self, dest: int, sample: Sample):
        if not 0 <= dest < self.size:
            raise CommunicationError(f"no rank {dest} in group of size {self.size}")
        self.group._queues[dest].put(tuple(float(v) for v in sample))

    def receive(self, timeout: float | None = None) -> Sample | None:
        try:
            return self.group._queues[self.rank].get(timeout=timeout)
        except queue.Empty:
            return None


class MPICommunicator(Communicator):
    """Communicator over an mpi4py intracommunicator (COMM_WORLD by default)."""

    TAG = 7
    POLL_INTERVAL = 1.0e-3

    def __init__(self, comm=None):
        if MPI is None:
            raise RuntimeError("mpi4py is required for MPICommunicator; install osrwsim[mpi]")
        self.comm = MPI.COMM_WORLD if comm is None else comm
        self.rank = self.comm.Get_rank()
        self.size = self.comm.Get_size()
        self._pending = []

    def all_gather(self, sample: Sample) -> list[Sample]:
        send = np.asarray(sample, dtype=np.float64)
        recv = np.empty((self.size, 3), dtype=np.float64)
        try:
            self.comm.Allgather([send, MPI.DOUBLE], [recv, MPI.DOUBLE])
        except MPI.Exception as e:
            raise CommunicationError(f"Allgather failed on rank {self.rank}") from e
        return [tuple(row) for row in recv.tolist()]

    def send(self, dest: int, sample: Sample):
        buf = np.asarray(sample, dtype=np.float64).copy()
        try:
            req = self.comm.Isend([buf, MPI.DOUBLE], dest=dest, tag=self.TAG)
        except MPI.Exception as e:
            raise CommunicationError(f"Isend from rank {self.rank} to {dest} failed") from e
        # Buffers stay referenced until their request completes.
        self._pending.append((req, buf))
        self._pending = [(r, b) for r, b in self._pending if not r.Test()]

    def receive(self, timeout: float | None = None) -> Sample | None:
        status = MPI.Status()
        deadline = None if timeout is None else time.monotonic() + timeout
        try:
            while not self.comm.Iprobe(source=MPI.ANY_SOURCE, tag=self.TAG, status=status):
                if deadline is not None and time.monotonic() >= deadline:
                    return None
                time.sleep(self.POLL_INTERVAL)
            buf = np.empty(3, dtype=np.float64)
            self.comm.Recv([buf, MPI.DOUBLE], source=status.Get_source(), tag=self.TAG)
        except MPI.Exception as e:
            raise CommunicationError(f"receive failed on rank {self.rank}") from e
        return tuple(buf.tolist())

    def close(self):
        """Wait for every outstanding Isend to complete."""
        pending, self._pending = self._pending, []
        if pending:
            try:
                MPI.Request.Waitall([r for r, _ in pending])
            except MPI.Exception as e:
                raise CommunicationError(
                    f"{len(pending)} sends from rank {self.rank} did not complete") from e


class WalkerSynchronizer:
    """Publishes local samples and feeds every received sample to ``sink``.

    Args:
        comm: Transport between walkers.
        sink: Called with a sequence of samples to fold into the histogram.
    """

    def __init__(self, comm: Communicator, sink: Sink):
        self.comm = comm
        self.sink = sink
        self._destroyed = False

    def publish(self, lam: float, dudl: float, weight: float):
        raise NotImplementedError

    def _shutdown(self):
        pass

    def destroy(self):
        """Stop receiving and close the communicator. Safe to call more than once."""
        if self._destroyed:
            return
        self._destroyed = True
        self._shutdown()
        try:
            self.comm.close()
        except CommunicationError:
            logger.error(" Closing the communicator for rank %d failed; in-flight samples may be lost.",
                         self.comm.rank, exc_info=True)


class SynchronousWalkerSynchronizer(WalkerSynchronizer):

    def publish(self, lam: float, dudl: float, weight: float):
        sample = (float(lam), float(dudl), float(weight))
        try:
            samples = self.comm.all_gather(sample)
        except CommunicationError:
            logger.error(" Multi-walker OSRW all-gather failed; folding the local sample only.",
                         exc_info=True)
            samples = [sample]
        for received in samples:
            try:
                self.sink([received])
            except ValueError:
                logger.error(" Dropped invalid sample %s on rank %d.", received, self.comm.rank,
                             exc_info=True)


class AsynchronousWalkerSynchronizer(WalkerSynchronizer):
    """Fire-and-forget sends with a daemon receiver thread.

    The receiver polls with a short timeout so that ``destroy`` can still stop
    it through an event if the NaN sentinel never arrives.
    """

    POLL_INTERVAL = 0.05

    def __init__(self, comm: Communicator, sink: Sink, join_timeout: float = 5.0):
        super().__init__(comm, sink)
        self.join_timeout = join_timeout
        self._stop = threading.Event()
        self._thread = threading.Thread(
            target=self._receive_loop, name=f"osrw-receiver-{comm.rank}", daemon=True)
        self._thread.start()

    @property
    def receiver_alive(self) -> bool:
        return self._thread.is_alive()

    def _receive_loop(self):
        while not self._stop.is_set():
            try:
                sample = self.comm.receive(timeout=self.POLL_INTERVAL)
            except CommunicationError:
                logger.warning(" Receive failed on rank %d; message passing may be in an error state.",
                               self.comm.rank, exc_info=True)
                continue
            if sample is None:
                continue
            if is_sentinel(sample):
                logger.debug(" Termination signal (3x NaN) received; receiver for rank %d shutting down.",
                             self.comm.rank)
                break
            try:
                self.sink([sample])
            except ValueError:
                logger.error(" Dropped invalid sample %s on rank %d.", sample, self.comm.rank,
                             exc_info=True)
            except Exception:
                logger.exception(" Folding sample %s failed on rank %d; the receiver keeps running.",
                                 sample, self.comm.rank)

    def publish(self, lam: float, dudl: float, weight: float):
        sample = (float(lam), float(dudl), float(weight))
        for dest in range(self.comm.size):
            try:
                self.comm.send(dest, sample)
            except CommunicationError:
                logger.error(" Asynchronous multi-walker OSRW send to rank %d failed.", dest,
                             exc_info=True)

    def _shutdown(self):
        if not self._thread.is_alive():
            logger.debug(" Receiver for rank %d was not running.", self.comm.rank)
            return
        try:
            logger.debug(" Sending the termination message to rank %d.", self.comm.rank)
            self.comm.send(self.comm.rank, SENTINEL)
        except CommunicationError:
            logger.error(" Termination signal failed to be sent for rank %d.", self.comm.rank,
                         exc_info=True)
        self._thread.join(self.join_timeout)
        if self._thread.is_alive():
            self._stop.set()
            self._thread.join(self.join_timeout)
        if self._thread.is_alive():
            logger.warning(" Receiver for rank %d did not stop; abandoning it.", self.comm.rank)


def make_synchronizer(comm: Communicator, sink: Sink, asynchronous: bool = False) -> WalkerSynchronizer:
    if asynchronous:
        return AsynchronousWalkerSynchronizer(comm, sink)
    return SynchronousWalkerSynchronizer(comm, sink)
