"""
Execution providers for per-chunk work.

A layer hands each phase of its cycle to a ComputeSystem as a
parallel-for over a chunk grid. The provider only schedules: it calls
the task once per index and returns when all of them are done. Tasks
of one phase write disjoint chunk slots, so no locking is needed.

Usage:
    with ThreadPoolComputeSystem(num_workers=4) as cs:
        hierarchy.step(inputs, cs)
"""

import logging
import math
import os
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, wait
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class ComputeBackend(Enum):
    SERIAL = "serial"
    THREADS = "threads"


class ComputeSystem(ABC):
    """Parallel-for with barrier completion."""

    @abstractmethod
    def parallel_for(self, size: int, task: Callable[[int], None]) -> None:
        """Run task(i) for every i in range(size); return when all finish."""

    def shutdown(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.shutdown()
        return False


class SerialComputeSystem(ComputeSystem):
    """Runs every task in order on the calling thread."""

    def parallel_for(self, size: int, task: Callable[[int], None]) -> None:
        for i in range(size):
            task(i)


class ThreadPoolComputeSystem(ComputeSystem):
    """
    Thread pool provider.

    The domain is split into contiguous batches, one future per batch.
    numpy releases the GIL inside its kernels, which is where most of a
    chunk's time goes. An exception raised by any task is re-raised
    after all batches have finished.
    """

    def __init__(self, num_workers: Optional[int] = None, batch_size: Optional[int] = None):
        self.num_workers = num_workers or os.cpu_count() or 1
        self.batch_size = batch_size
        self._executor = ThreadPoolExecutor(
            max_workers=self.num_workers,
            thread_name_prefix="chunkbrain",
        )
        logger.debug(f"Thread pool compute system started with {self.num_workers} workers")

    def _batch_size_for(self, size: int) -> int:
        if self.batch_size:
            return self.batch_size
        # A few batches per worker keeps the load even when windows differ in size
        return max(1, math.ceil(size / (self.num_workers * 4)))

    @staticmethod
    def _run_batch(task: Callable[[int], None], start: int, stop: int) -> None:
        for i in range(start, stop):
            task(i)

    def parallel_for(self, size: int, task: Callable[[int], None]) -> None:
        if size <= 0:
            return
        batch = self._batch_size_for(size)
        futures = [
            self._executor.submit(self._run_batch, task, start, min(start + batch, size))
            for start in range(0, size, batch)
        ]
        wait(futures)
        for future in futures:
            future.result()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


def create_compute_system(
    backend: str = "serial",
    num_workers: Optional[int] = None
) -> ComputeSystem:
    """
    Factory for execution providers.

    Args:
        backend: "serial" or "threads"
        num_workers: Worker count for the thread backend (defaults to CPU count)
    """
    backend = ComputeBackend(backend)
    if backend is ComputeBackend.THREADS:
        return ThreadPoolComputeSystem(num_workers=num_workers)
    return SerialComputeSystem()
