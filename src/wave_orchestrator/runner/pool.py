"""Bounded worker pool for jobs that block on subprocesses."""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Mapping
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")


class BoundedWorkerPool:
    """Run keyed jobs with at most ``max_workers`` in flight.

    Jobs are queued up front and a new one starts as soon as a running one
    returns. Jobs are expected to handle their own per-item failures; an
    exception escaping a job cancels jobs that have not started yet and is
    re-raised once the running ones finish.
    """

    def __init__(self, max_workers: int) -> None:
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.max_workers = max_workers

    def run(self, jobs: Mapping[K, Callable[[], T]]) -> dict[K, T]:
        results: dict[K, T] = {}
        if not jobs:
            return results

        with ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(jobs)),
            thread_name_prefix="wave-worker",
        ) as executor:
            future_to_key: dict[Future[T], K] = {
                executor.submit(job): key for key, job in jobs.items()
            }
            for future in as_completed(future_to_key):
                key = future_to_key[future]
                try:
                    results[key] = future.result()
                except Exception:
                    logger.error("Job %s aborted the pool", key)
                    for pending in future_to_key:
                        pending.cancel()
                    raise
        return results
