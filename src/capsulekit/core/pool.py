"""Bounded worker pool - run a batch of jobs over a fixed number of threads.

One pool serves one batch: `min(max_workers, job_count)` workers pull from
a job queue sized to the batch and push one result per job into a result
queue of the same size. Closing the input waits for every worker before
the result side is closed.

The pool has no retry or cancellation. Every job yields exactly one
`JobResult`; an exception from the worker function lands in its `error`.
"""

from __future__ import annotations

import queue
import threading
import traceback
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass
from typing import Generic, TypeVar

from capsulekit.core.logging import get_logger

J = TypeVar("J")
R = TypeVar("R")

_logger = get_logger(__name__)

# Queue terminator; never a valid job or result.
_DONE = object()


@dataclass(frozen=True, slots=True)
class JobResult(Generic[J, R]):
    """Outcome of one job: `value` on success, `error` when the function raised."""

    job: J
    value: R | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class BoundedWorkerPool(Generic[J, R]):
    """Parallel map over a fixed-size batch.

    Example:
        pool = BoundedWorkerPool(max_workers=16, job_count=len(paths))
        pool.start(scan_one)
        for p in paths:
            pool.submit(p)
        pool.close()
        flags = [r.value for r in pool.results() if r.ok]
    """

    def __init__(self, max_workers: int, job_count: int) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        if job_count < 0:
            raise ValueError("job_count must be >= 0")

        self.job_count = job_count
        self.worker_count = min(max_workers, job_count)
        self._jobs: queue.Queue[object] = queue.Queue(maxsize=job_count + self.worker_count)
        self._results: queue.Queue[object] = queue.Queue(maxsize=job_count + 1)
        self._threads: list[threading.Thread] = []
        self._submitted = 0
        self._closed = False

    def start(self, fn: Callable[[J], R]) -> None:
        """Spawn the workers. Must be called once, before close()."""
        if self._threads:
            raise RuntimeError("pool already started")

        for i in range(self.worker_count):
            t = threading.Thread(
                target=self._work, args=(fn,), name=f"capsulekit-pool-{i}", daemon=True
            )
            t.start()
            self._threads.append(t)

    def submit(self, job: J) -> None:
        if self._closed:
            raise RuntimeError("pool input already closed")
        if self._submitted >= self.job_count:
            raise RuntimeError(f"pool sized for {self.job_count} jobs")
        self._submitted += 1
        self._jobs.put(job)

    def close(self) -> None:
        """Close the job input, wait for all workers, then close the results."""
        if self._closed:
            return
        self._closed = True

        for _ in self._threads:
            self._jobs.put(_DONE)
        for t in self._threads:
            t.join()
        self._results.put(_DONE)

    def results(self) -> Iterator[JobResult[J, R]]:
        """Yield one result per job, in completion order, until the result side is closed."""
        while True:
            item = self._results.get()
            if item is _DONE:
                return
            yield item  # type: ignore[misc]

    def _work(self, fn: Callable[[J], R]) -> None:
        while True:
            job = self._jobs.get()
            if job is _DONE:
                return
            try:
                result = fn(job)  # type: ignore[arg-type]
            except Exception as e:
                _logger.error(
                    f"worker function raised for job {job!r}: {type(e).__name__}: {e}\n"
                    f"{traceback.format_exc()}"
                )
                self._results.put(JobResult(job, error=e))
                continue
            self._results.put(JobResult(job, result))


def parallel_map(
    fn: Callable[[J], R], jobs: Iterable[J], max_workers: int
) -> list[JobResult[J, R]]:
    """Run `fn` over `jobs` with a bounded pool; one result per job, in completion order."""
    batch = list(jobs)
    if not batch:
        return []

    pool: BoundedWorkerPool[J, R] = BoundedWorkerPool(max_workers, len(batch))
    pool.start(fn)
    for job in batch:
        pool.submit(job)
    pool.close()
    return list(pool.results())
