"""Bounded worker pool for fan-out work.

ThreadPoolExecutor queues without limit; BoundedExecutor caps the
number of in-flight plus queued tasks and blocks the submitter when
the cap is reached. Detection sweeps and bulk sends both use it so a
school of thousands of students never materialises thousands of
pending futures.
"""
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable


class CancellationToken:
    """Cooperative cancellation flag shared between a caller and workers."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class BoundedExecutor:
    """Thread pool whose submit() blocks once ``max_workers + queue_size`` tasks are pending."""

    def __init__(self, max_workers: int, queue_size: int = 0, thread_name_prefix: str = "eduguard"):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if queue_size < 0:
            raise ValueError("queue_size must not be negative")

        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix=thread_name_prefix,
        )
        self._slots = threading.BoundedSemaphore(max_workers + queue_size)

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        self._slots.acquire()
        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except Exception:
            self._slots.release()
            raise
        future.add_done_callback(lambda _: self._slots.release())
        return future

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "BoundedExecutor":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown(wait=True)
