import atexit
import logging
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor
from threading import Lock
from typing import Callable, Iterable, List, Optional, Protocol, TypeVar

from omstore.config import config

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

_lock = Lock()
_executor: Optional[ThreadPoolExecutor] = None


class Synchronizer(Protocol):
    """Base class for synchronizers."""

    def __getitem__(self, item):
        # see subclasses
        ...


class ThreadSynchronizer(Synchronizer):
    """Provides synchronization using thread locks, one per chunk key."""

    def __init__(self):
        self.mutex = Lock()
        self.locks = defaultdict(Lock)

    def __getitem__(self, item):
        with self.mutex:
            return self.locks[item]

    def __getstate__(self):
        return True

    def __setstate__(self, *args):
        # reinitialize from scratch
        self.__init__()


def max_workers() -> int:
    """Configured worker count; ``None`` picks the executor default."""
    n = config.get("threading.max_workers", None)
    if n is None:
        return _get_executor()._max_workers
    return int(n)


def _get_executor() -> ThreadPoolExecutor:
    """Return the shared chunk worker pool.

    The executor is allocated on first use.
    """
    global _executor
    with _lock:
        if _executor is None:
            n = config.get("threading.max_workers", None)
            logger.debug("Creating omstore ThreadPoolExecutor with max_workers=%s", n)
            _executor = ThreadPoolExecutor(max_workers=n, thread_name_prefix="omstore_pool")
    return _executor


def cleanup_resources() -> None:
    global _executor
    with _lock:
        if _executor is not None:
            _executor.shutdown(wait=True, cancel_futures=True)
        _executor = None


atexit.register(cleanup_resources)


def map_chunks(func: Callable[[T], R], items: Iterable[T],
               workers: Optional[int] = None) -> List[R]:
    """Apply `func` to every item, on the worker pool when more than one
    worker is allowed. Results keep the order of `items`; the first failure
    is re-raised after all submitted tasks have finished."""
    items = list(items)
    if workers is None:
        workers = max_workers()
    if workers <= 1 or len(items) <= 1:
        return [func(item) for item in items]

    executor = _get_executor()
    results = []
    # bounded submission keeps at most `workers` tasks in flight
    for i in range(0, len(items), workers):
        futures = [executor.submit(func, item) for item in items[i:i + workers]]
        error = None
        for future in futures:
            try:
                results.append(future.result())
            except Exception as e:
                if error is None:
                    error = e
        if error is not None:
            raise error
    return results
