"""
Partitioned Path Execution
==========================

Splits a large path count into fixed-size chunks and runs them on a
thread pool. numpy releases the GIL inside its vectorized kernels, so
threads give real speedup for path simulation.

Each chunk draws from its own child generator spawned from the caller's
VariateGenerator. Chunk boundaries depend only on chunk_size, so results
are identical for any worker count. Reduction happens in chunk order
after every worker has finished.

An optional deadline (seconds) and cancellation event stop the run
between chunks with SimulationCancelledError. Loops that cannot be split
into independent chunks use RunGuard directly to get the same checks.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError, as_completed
from dataclasses import dataclass
from typing import Callable, TypeVar

from quantcore.exceptions import SimulationCancelledError
from quantcore.random_variates import VariateGenerator

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CHUNK_SIZE = 25_000


@dataclass
class ExecutionOptions:
    """How a path simulation is spread over workers."""
    n_workers: int = 1
    chunk_size: int = DEFAULT_CHUNK_SIZE
    deadline: float | None = None  # Seconds from start
    cancel_event: threading.Event | None = None

    def __post_init__(self):
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be at least 1, got {self.n_workers}")
        if self.chunk_size < 1:
            raise ValueError(f"chunk_size must be at least 1, got {self.chunk_size}")
        if self.deadline is not None and self.deadline <= 0:
            raise ValueError(f"deadline must be positive, got {self.deadline}")


def partition(n_items: int, chunk_size: int) -> list[int]:
    """Split n_items into chunk sizes; only the last chunk may be short."""
    if n_items < 1:
        raise ValueError(f"Need at least 1 item to partition, got {n_items}")
    full, remainder = divmod(n_items, chunk_size)
    sizes = [chunk_size] * full
    if remainder:
        sizes.append(remainder)
    return sizes


class RunGuard:
    """Tracks progress and enforces deadline/cancellation for one run."""

    def __init__(self, operation: str, total: int, options: ExecutionOptions):
        self.operation = operation
        self.total = total
        self.options = options
        self.started = time.monotonic()
        self.completed = 0
        self.stop = threading.Event()
        self._lock = threading.Lock()

    def remaining(self) -> float | None:
        if self.options.deadline is None:
            return None
        return max(0.0, self.options.deadline - (time.monotonic() - self.started))

    def error(self, reason: str) -> SimulationCancelledError:
        return SimulationCancelledError(self.operation, self.completed, self.total, reason)

    def check(self) -> None:
        cancel_event = self.options.cancel_event
        if cancel_event is not None and cancel_event.is_set():
            raise self.error("cancelled")
        if self.stop.is_set():
            raise self.error("stopped")
        remaining = self.remaining()
        if remaining is not None and remaining <= 0:
            raise self.error(f"exceeded deadline of {self.options.deadline}s")

    def mark_done(self) -> None:
        with self._lock:
            self.completed += 1


def run_partitioned(
    task: Callable[[VariateGenerator, int], T],
    n_paths: int,
    variates: VariateGenerator,
    options: ExecutionOptions | None = None,
    operation: str = "simulation",
) -> list[T]:
    """
    Run task(child_generator, chunk_paths) over every chunk.

    Args:
        task: Simulates one chunk of paths with its own generator
        n_paths: Total number of paths
        variates: Parent generator; one child is spawned per chunk
        options: Worker count, chunk size, deadline, cancellation
        operation: Name used in log and error messages

    Returns:
        Chunk results in chunk order

    Raises:
        SimulationCancelledError: deadline passed or cancel_event set
    """
    options = options or ExecutionOptions()
    sizes = partition(n_paths, options.chunk_size)
    children = variates.spawn(len(sizes))
    guard = RunGuard(operation, len(sizes), options)

    if options.n_workers == 1 or len(sizes) == 1:
        results = []
        for size, child in zip(sizes, children):
            guard.check()
            results.append(task(child, size))
            guard.mark_done()
        return results

    def run_chunk(index: int) -> tuple[int, T]:
        guard.check()
        result = task(children[index], sizes[index])
        guard.mark_done()
        return index, result

    logger.debug(
        f"{operation}: {n_paths} paths in {len(sizes)} chunks on {options.n_workers} workers"
    )

    ordered: list[T | None] = [None] * len(sizes)
    with ThreadPoolExecutor(max_workers=options.n_workers) as executor:
        futures = [executor.submit(run_chunk, i) for i in range(len(sizes))]
        try:
            for future in as_completed(futures, timeout=guard.remaining()):
                index, result = future.result()
                ordered[index] = result
        except FutureTimeoutError:
            guard.stop.set()
            for future in futures:
                future.cancel()
            raise guard.error(f"exceeded deadline of {options.deadline}s") from None
        except SimulationCancelledError:
            guard.stop.set()
            for future in futures:
                future.cancel()
            raise

    return ordered
