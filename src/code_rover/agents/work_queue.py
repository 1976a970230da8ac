"""Bounded-parallelism work queue on threads."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable, Sequence
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def run_work_queue(  # noqa: PLR0913
    items: Sequence[T],
    *,
    concurrency: int,
    handle: Callable[[T], R],
    on_error: Callable[[T, Exception], R],
    on_result: Callable[[R], None] | None = None,
    thread_name: str = "rover-worker",
) -> list[R]:
    """Process every item on `min(concurrency, len(items))` worker threads.

    Each worker claims the next item from a shared queue, runs it to
    completion and claims again until the queue is empty. An item whose
    handler raises is turned into a result by `on_error`; the worker keeps
    going. Results are returned in completion order.
    """

    if concurrency <= 0:
        raise ValueError("concurrency must be a positive integer.")
    if not items:
        return []

    pending: queue.Queue[T] = queue.Queue()
    for item in items:
        pending.put(item)

    results: list[R] = []
    results_lock = threading.Lock()

    def _worker() -> None:
        while True:
            try:
                item = pending.get_nowait()
            except queue.Empty:
                return
            try:
                result = handle(item)
            except Exception as error:
                logger.exception("Work item %r failed", item)
                result = on_error(item, error)
            with results_lock:
                results.append(result)
            if on_result is not None:
                try:
                    on_result(result)
                except Exception:
                    logger.exception("Result callback failed for %r", item)

    worker_count = min(concurrency, len(items))
    threads = [
        threading.Thread(target=_worker, name=f"{thread_name}-{index + 1}", daemon=True)
        for index in range(worker_count)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    logger.debug("Work queue drained %d items on %d workers", len(items), worker_count)
    return results
