"""
Fan-Out Pipeline

One producer thread feeds a bounded queue that a fixed pool of worker
threads drains. The first error raised by any thread sets a shared
cancellation event; every thread checks it whenever it would block on the
queue and exits, and the error is re-raised once all threads are done.
"""

import os
import queue
import threading

from concurrent.futures import ThreadPoolExecutor, wait
from typing import Any, Callable, Iterable, Optional

# Seconds between cancellation checks while blocked on the queue
POLL_INTERVAL = 0.05

_DONE = object()


class TileCounter:
    """Thread-safe counter"""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    def add(self, n: int = 1) -> int:
        """Add n and return the new value"""
        with self._lock:
            self._value += n
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value


class FanOutPipeline:
    """Bounded producer / worker pool with shared cancellation"""

    def __init__(self, workers: Optional[int] = None,
                 queue_size: Optional[int] = None) -> None:
        """Initialize a new FanOutPipeline instance

           Arguments:
           workers (optional[int]):    number of worker threads. defaults to
                                       the number of CPUs.
           queue_size (optional[int]): capacity of the queue between the
                                       producer and the workers. defaults to
                                       twice the number of workers.
        """
        self.workers = workers or os.cpu_count() or 1
        self.queue_size = queue_size or self.workers * 2
        self.cancelled = threading.Event()
        self._queue = None
        self._error = None
        self._lock = threading.Lock()

    def _fail(self, error: BaseException) -> None:
        """Record the first error and cancel every thread"""
        with self._lock:
            if self._error is None:
                self._error = error
        self.cancelled.set()

    def _put(self, item: Any) -> bool:
        """Block until the item is queued, returning False on cancellation"""
        while not self.cancelled.is_set():
            try:
                self._queue.put(item, timeout=POLL_INTERVAL)
                return True
            except queue.Full:
                continue
        return False

    def _get(self) -> Any:
        """Block until an item is available, returning _DONE on
           cancellation
        """
        while not self.cancelled.is_set():
            try:
                return self._queue.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue
        return _DONE

    def _produce(self, produce: Callable[[], Iterable]) -> None:
        try:
            items = produce()
            try:
                for item in items:
                    if not self._put(item):
                        break
            finally:
                # Release a generator's open files when stopping early
                if hasattr(items, "close"):
                    items.close()
        except BaseException as e:
            self._fail(e)
        finally:
            # One end marker per worker
            for _ in range(self.workers):
                if not self._put(_DONE):
                    break

    def _work(self, handle: Callable[[Any], None]) -> None:
        while True:
            item = self._get()
            if item is _DONE:
                return
            try:
                handle(item)
            except BaseException as e:
                self._fail(e)
                return

    def run(self, produce: Callable[[], Iterable],
            handle: Callable[[Any], None]) -> None:
        """Run the pipeline to completion

           Arguments:
           produce (callable): returns an iterable of work items, consumed
                               on the producer thread
           handle (callable):  processes a single work item on a worker
                               thread. long-running handlers should poll
                               the cancelled event.

           Raises the first error raised by the producer or any worker
        """
        self._queue = queue.Queue(maxsize=self.queue_size)
        self.cancelled.clear()
        self._error = None

        with ThreadPoolExecutor(max_workers=self.workers + 1) as executor:
            futures = [executor.submit(self._produce, produce)]
            for _ in range(self.workers):
                futures.append(executor.submit(self._work, handle))
            try:
                wait(futures)
            except KeyboardInterrupt:
                self.cancelled.set()
                raise

        if self._error is not None:
            raise self._error
