"""A rate-limited work queue that feeds object keys to a sync handler from worker threads."""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Hashable, Optional, Union

_log = logging.getLogger(__name__)

MAX_ERR_RETRIES = 3

Duration = Union[float, timedelta]


def _seconds(duration: Duration) -> float:
    return duration.total_seconds() if isinstance(duration, timedelta) else float(duration)


@dataclass
class Result:
    """What a sync handler asks of the queue once it has handled an item.

    ``requeue_after`` greater than zero implies ``requeue``; ``max_requeue_times``
    only applies when the item is requeued.
    """

    requeue: bool = False
    requeue_after: Duration = 0.0
    max_requeue_times: int = 0


class KeyFuncError(ValueError):
    """Raised when no key can be derived from an object."""


SyncHandler = Callable[[Any], Optional[Result]]
KeyFunc = Callable[[Any], Hashable]

_MISSING = object()
_NO_KEY = object()


def passthrough_key_func(obj: Any) -> Any:
    """Use the object itself as its key; it must be hashable to be queued."""
    try:
        hash(obj)
    except TypeError as err:
        raise KeyFuncError(f"object cannot be used as a key: {err}") from err
    return obj


def _field(source: Any, name: str) -> Any:
    if isinstance(source, Mapping):
        return source.get(name, _MISSING)
    return getattr(source, name, _MISSING)


def meta_namespace_key(obj: Any) -> str:
    """Return ``namespace/name`` of an object, or ``name`` when it has no namespace.

    Strings are taken to be keys already.
    """
    if isinstance(obj, str):
        return obj
    meta = obj.get("metadata", obj) if isinstance(obj, Mapping) else getattr(obj, "metadata", obj)
    name = _field(meta, "name") if meta is not None else _MISSING
    if name is _MISSING:
        raise KeyFuncError(f"object has no meta: {obj!r}")
    namespace = _field(meta, "namespace")
    if namespace is _MISSING or not namespace:
        return str(name)
    return f"{namespace}/{name}"


class _ControllerRateLimiter:
    """Per-item exponential backoff combined with an overall token bucket.

    The delay for an item is the larger of the two; only the per-item
    failure count is tracked and forgotten.
    """

    def __init__(
        self,
        base: float = 0.005,
        maximum: float = 1000.0,
        qps: float = 10.0,
        burst: int = 100,
    ) -> None:
        self._lock = threading.Lock()
        self._failures: dict[Hashable, int] = {}
        self._base = base
        self._maximum = maximum
        self._qps = qps
        self._burst = burst
        self._tokens = float(burst)
        self._last = time.monotonic()

    def _backoff(self, item: Hashable) -> float:
        exp = self._failures.get(item, 0)
        self._failures[item] = exp + 1
        if exp > 64:
            return self._maximum
        return min(self._base * 2 ** exp, self._maximum)

    def _bucket_delay(self) -> float:
        now = time.monotonic()
        self._tokens = min(self._burst, self._tokens + (now - self._last) * self._qps)
        self._last = now
        self._tokens -= 1
        return 0.0 if self._tokens >= 0 else -self._tokens / self._qps

    def when(self, item: Hashable) -> float:
        with self._lock:
            return max(self._backoff(item), self._bucket_delay())

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class RateLimitingQueue:
    """A deduplicating FIFO work queue with delayed and rate-limited adds.

    An item is never handed out twice at once: an item added while it is being
    processed is queued again when it is marked done.
    """

    def __init__(self, rate_limiter=None) -> None:
        self._rate_limiter = rate_limiter or _ControllerRateLimiter()
        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._dirty: set = set()
        self._processing: set = set()
        self._shutting_down = False

        self._delay_cond = threading.Condition()
        self._heap: list = []
        self._waiting: dict = {}
        self._sequence = itertools.count()
        self._waiter = threading.Thread(target=self._wait_loop, daemon=True)
        self._waiter.start()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def add(self, item: Hashable) -> None:
        with self._cond:
            if self._shutting_down or item in self._dirty:
                return
            self._dirty.add(item)
            if item in self._processing:
                return
            self._queue.append(item)
            self._cond.notify()

    def add_after(self, item: Hashable, delay: Duration) -> None:
        if self.shutting_down():
            return
        seconds = _seconds(delay)
        if seconds <= 0:
            self.add(item)
            return
        ready = time.monotonic() + seconds
        with self._delay_cond:
            current = self._waiting.get(item)
            if current is not None and current <= ready:
                return
            self._waiting[item] = ready
            heapq.heappush(self._heap, (ready, next(self._sequence), item))
            self._delay_cond.notify()

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self._rate_limiter.when(item))

    def get(self) -> tuple[Any, bool]:
        """Block for the next item; return ``(item, shutdown)``.

        ``shutdown`` is true, with no item, once the queue is shut down and drained.
        """
        with self._cond:
            while not self._queue and not self._shutting_down:
                self._cond.wait()
            if not self._queue:
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty:
                self._queue.append(item)
                self._cond.notify()

    def forget(self, item: Hashable) -> None:
        self._rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self._rate_limiter.num_requeues(item)

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()
        with self._delay_cond:
            self._delay_cond.notify_all()

    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _wait_loop(self) -> None:
        with self._delay_cond:
            while not self.shutting_down():
                now = time.monotonic()
                while self._heap and self._heap[0][0] <= now:
                    ready, _, item = heapq.heappop(self._heap)
                    if self._waiting.get(item) == ready:
                        del self._waiting[item]
                        self.add(item)
                timeout = self._heap[0][0] - now if self._heap else None
                self._delay_cond.wait(timeout)


class SyncQueue:
    """Runs ``sync_handler`` on the keys of enqueued objects from worker threads.

    The handler is never called concurrently for the same key. A handler that
    raises has its item retried with backoff, up to ``max_err_retries`` times.
    """

    def __init__(
        self,
        gvk: Any,
        sync_handler: SyncHandler,
        key_func: Optional[KeyFunc] = None,
        queue: Optional[RateLimitingQueue] = None,
    ) -> None:
        self.gvk = gvk
        self.queue = queue if queue is not None else RateLimitingQueue()
        self._sync_handler = sync_handler
        self._key_func = key_func or meta_namespace_key
        self.max_err_retries = MAX_ERR_RETRIES
        self._stop = threading.Event()
        self._workers: list[threading.Thread] = []

    def run(self, workers: int) -> None:
        """Start ``workers`` worker threads."""
        for _ in range(workers):
            thread = threading.Thread(target=self._run_worker, daemon=True)
            thread.start()
            self._workers.append(thread)

    def shut_down(self) -> None:
        """Shut the queue down and wait for the workers to finish."""
        self._stop.set()
        self.queue.shut_down()
        current = threading.current_thread()
        for thread in self._workers:
            if thread is not current:
                thread.join()

    def is_shutting_down(self) -> bool:
        return self.queue.shutting_down()

    def set_max_err_retries(self, maximum: int) -> None:
        if maximum > 0:
            self.max_err_retries = maximum

    def _key(self, obj: Any) -> Any:
        try:
            return self._key_func(obj)
        except Exception as err:
            _log.error("failed to get key for %s %r: %s", self.gvk, obj, err)
            return _NO_KEY

    def enqueue(self, obj: Any) -> None:
        if self.is_shutting_down():
            return
        key = self._key(obj)
        if key is not _NO_KEY:
            self.queue.add(key)

    def enqueue_rate_limited(self, obj: Any) -> None:
        if self.is_shutting_down():
            return
        key = self._key(obj)
        if key is not _NO_KEY:
            self.queue.add_rate_limited(key)

    def enqueue_after(self, obj: Any, after: Duration) -> None:
        if self.is_shutting_down():
            return
        key = self._key(obj)
        if key is not _NO_KEY:
            self.queue.add_after(key, after)

    def dequeue(self, obj: Any) -> None:
        """Stop tracking the key of ``obj``."""
        if self.is_shutting_down():
            return
        key = self._key(obj)
        if key is not _NO_KEY:
            self.queue.forget(key)
            self.queue.done(key)

    def _run_worker(self) -> None:
        while not self._stop.is_set():
            while self.process_next_work_item():
                pass
            if self._stop.wait(1.0):
                break

    def _short_key(self, obj: Any) -> Any:
        try:
            return meta_namespace_key(obj)
        except KeyFuncError:
            return obj

    def process_next_work_item(self) -> bool:
        """Handle one item; return whether the worker should keep going."""
        obj, quit_ = self.queue.get()
        if quit_:
            return False
        forget = False
        try:
            try:
                result = self._sync_handler(obj) or Result()
            except Exception as err:
                retries = self.queue.num_requeues(obj)
                if retries < self.max_err_retries:
                    _log.warning(
                        "error syncing object (gvk: %s, key: %s) retry: %d, err: %s",
                        self.gvk, self._short_key(obj), retries, err,
                    )
                    self.queue.add_rate_limited(obj)
                    return False
                _log.warning(
                    "dropping object (gvk: %s, key: %s) from the queue",
                    self.gvk, self._short_key(obj),
                )
                self.queue.forget(obj)
                return True

            requeue_after = 0.0
            if _seconds(result.requeue_after) > 0:
                requeue_after = _seconds(result.requeue_after)
            elif result.requeue:
                requeue_after = 0.001
            if (
                requeue_after > 0
                and result.max_requeue_times > 0
                and self.queue.num_requeues(obj) >= result.max_requeue_times
            ):
                requeue_after = 0.0

            forget = requeue_after == 0 or result.max_requeue_times == 0
            if requeue_after > 0:
                self.enqueue_after(obj, requeue_after)
            return True
        finally:
            if forget:
                self.queue.forget(obj)
            self.queue.done(obj)