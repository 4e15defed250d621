"""Worker pool draining the work queue."""

import threading
from typing import Callable, List

from vapgen.controller.queue import RateLimitingQueue
from vapgen.core import metrics
from vapgen.core.logging import get_logger

logger = get_logger(__name__)

ReconcileFunc = Callable[[str], None]


def handle_error(queue: RateLimitingQueue, key: str, error: Exception, max_retries: int) -> None:
    """Requeue ``key`` with backoff, or drop it once retries are exhausted."""
    if queue.num_requeues(key) < max_retries:
        logger.info(f"Failed to reconcile {key}, retrying: {error}", extra={"policy": key})
        queue.add_rate_limited(key)
        return

    logger.error(
        f"Dropping {key} out of the queue after {max_retries} retries: {error}",
        extra={"policy": key},
    )
    metrics.queue_dropped.inc()
    queue.forget(key)


def process_next_item(queue: RateLimitingQueue, reconcile: ReconcileFunc, max_retries: int) -> bool:
    """Process one key. Returns False once the queue is shut down."""
    key, shutdown = queue.get()
    if shutdown:
        return False
    try:
        reconcile(key)
    except Exception as e:
        handle_error(queue, key, e, max_retries)
    else:
        queue.forget(key)
    finally:
        queue.done(key)
    return True


def worker(queue: RateLimitingQueue, reconcile: ReconcileFunc, max_retries: int) -> None:
    while process_next_item(queue, reconcile, max_retries):
        pass


def run(
    queue: RateLimitingQueue,
    reconcile: ReconcileFunc,
    workers: int,
    stop_event: threading.Event,
    max_retries: int,
    name: str = "",
) -> None:
    """Run ``workers`` threads until ``stop_event`` is set.

    In-flight reconciles finish before this returns; queued keys are left
    unprocessed.
    """
    name = name or queue.name or "controller"
    logger.info(f"Starting {name} with {workers} workers")

    threads: List[threading.Thread] = []
    for i in range(workers):
        t = threading.Thread(
            target=worker,
            args=(queue, reconcile, max_retries),
            name=f"{name}-worker-{i}",
            daemon=True,
        )
        t.start()
        threads.append(t)

    stop_event.wait()
    logger.info(f"Stopping {name}")
    queue.shut_down()
    for t in threads:
        t.join()
    logger.info(f"Stopped {name}")
