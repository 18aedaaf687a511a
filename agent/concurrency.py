"""
Concurrency primitives for the agent core.

All primitives are asyncio-based and non-reentrant: they order interleaved
coroutines on one event loop (cache writes, rule mutations, transcript
appends). Ownership is handed directly to the next FIFO waiter on release,
so a newly arriving caller can never overtake a queued one.
"""

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, List, Optional, Sequence, TypeVar, Union

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

Task = Callable[[], Union[Awaitable[T], T]]


async def _call(fn: Callable[[], Any]) -> Any:
    """Invoke a zero-arg callable, awaiting the result if it is awaitable."""
    result = fn()
    if inspect.isawaitable(result):
        result = await result
    return result


async def _wait_for_handoff(waiters: Deque[asyncio.Future], on_abandon: Callable[[], None]) -> None:
    """Queue a future and wait until a releaser resolves it.

    If the waiter is cancelled after ownership was already handed over,
    ``on_abandon`` gives it back so the primitive is never left held.
    """
    fut = asyncio.get_running_loop().create_future()
    waiters.append(fut)
    try:
        await fut
    except asyncio.CancelledError:
        if fut.done() and not fut.cancelled():
            on_abandon()
        else:
            try:
                waiters.remove(fut)
            except ValueError:
                pass
        raise


def _wake_next(waiters: Deque[asyncio.Future]) -> bool:
    """Resolve the first live waiter. Returns False if nobody was waiting."""
    while waiters:
        fut = waiters.popleft()
        if not fut.done():
            fut.set_result(True)
            return True
    return False


class Mutex:
    """At most one holder; FIFO hand-off."""

    def __init__(self):
        self._locked = False
        self._waiters: Deque[asyncio.Future] = deque()

    def locked(self) -> bool:
        return self._locked

    async def acquire(self) -> None:
        if not self._locked:
            self._locked = True
            return
        await _wait_for_handoff(self._waiters, self.release)

    def release(self) -> None:
        if not self._locked:
            raise RuntimeError("Mutex released while not held")
        if not _wake_next(self._waiters):
            self._locked = False

    async def run_exclusive(self, fn: Task[T]) -> T:
        await self.acquire()
        try:
            return await _call(fn)
        finally:
            self.release()

    async def __aenter__(self) -> "Mutex":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class Semaphore:
    """At most ``permits`` concurrent holders; FIFO wait queue."""

    def __init__(self, permits: int):
        if permits <= 0:
            raise ValueError("Semaphore needs at least one permit")
        self._permits = permits
        self._waiters: Deque[asyncio.Future] = deque()

    @property
    def available(self) -> int:
        return self._permits

    @property
    def waiting(self) -> int:
        return sum(1 for f in self._waiters if not f.done())

    async def acquire(self) -> None:
        if self._permits > 0:
            self._permits -= 1
            return
        await _wait_for_handoff(self._waiters, self.release)

    def release(self) -> None:
        if not _wake_next(self._waiters):
            self._permits += 1

    async def run_with_permit(self, fn: Task[T]) -> T:
        await self.acquire()
        try:
            return await _call(fn)
        finally:
            self.release()

    async def __aenter__(self) -> "Semaphore":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class _LockGuard:
    """Async context manager returned by ReadWriteLock.read_locked/write_locked."""

    def __init__(self, acquire: Callable[[], Awaitable[None]], release: Callable[[], None]):
        self._acquire = acquire
        self._release = release

    async def __aenter__(self) -> None:
        await self._acquire()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self._release()


class ReadWriteLock:
    """Many readers or one writer, never both.

    Writer-preferring: once a writer is queued, new readers queue behind it.
    Releasing the write lock hands off to the next writer if one is waiting,
    otherwise admits every queued reader at once.
    """

    def __init__(self):
        self._readers = 0
        self._writer = False
        self._read_waiters: Deque[asyncio.Future] = deque()
        self._write_waiters: Deque[asyncio.Future] = deque()

    @property
    def readers(self) -> int:
        return self._readers

    @property
    def writers(self) -> int:
        return 1 if self._writer else 0

    def _has_queued_writer(self) -> bool:
        return any(not f.done() for f in self._write_waiters)

    async def read_lock(self) -> None:
        if not self._writer and not self._has_queued_writer():
            self._readers += 1
            return
        await _wait_for_handoff(self._read_waiters, self.read_unlock)

    async def write_lock(self) -> None:
        if self._readers == 0 and not self._writer:
            self._writer = True
            return
        try:
            await _wait_for_handoff(self._write_waiters, self.write_unlock)
        except asyncio.CancelledError:
            # readers parked behind this writer must not wait forever
            if not self._writer and not self._has_queued_writer():
                while _wake_next(self._read_waiters):
                    self._readers += 1
            raise

    def read_unlock(self) -> None:
        if self._readers <= 0:
            raise RuntimeError("read_unlock without a held read lock")
        self._readers -= 1
        if self._readers == 0:
            self._writer = _wake_next(self._write_waiters)

    def write_unlock(self) -> None:
        if not self._writer:
            raise RuntimeError("write_unlock without a held write lock")
        if _wake_next(self._write_waiters):
            return
        self._writer = False
        while _wake_next(self._read_waiters):
            self._readers += 1

    async def with_read_lock(self, fn: Task[T]) -> T:
        await self.read_lock()
        try:
            return await _call(fn)
        finally:
            self.read_unlock()

    async def with_write_lock(self, fn: Task[T]) -> T:
        await self.write_lock()
        try:
            return await _call(fn)
        finally:
            self.write_unlock()

    def read_locked(self) -> _LockGuard:
        return _LockGuard(self.read_lock, self.read_unlock)

    def write_locked(self) -> _LockGuard:
        return _LockGuard(self.write_lock, self.write_unlock)


# ---------------------------------------------------------------------------
# Bounded-concurrency task runner
# ---------------------------------------------------------------------------

@dataclass
class SettledResult:
    """Outcome of one task in run_settled_with_concurrency."""
    status: str  # "fulfilled" | "rejected"
    value: Any = None
    reason: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.status == "fulfilled"


async def _run_workers(tasks: Sequence[Task[Any]], max_concurrency: int,
                       on_result: Callable[[int, Any, Optional[Exception]], None]) -> None:
    next_index = 0

    async def worker() -> None:
        nonlocal next_index
        while next_index < len(tasks):
            index = next_index
            next_index += 1
            try:
                value = await _call(tasks[index])
            except Exception as e:
                on_result(index, None, e)
            else:
                on_result(index, value, None)

    workers = [worker() for _ in range(min(max_concurrency, len(tasks)))]
    await asyncio.gather(*workers)


async def run_with_concurrency(tasks: Sequence[Task[T]], max_concurrency: int) -> List[Any]:
    """Run tasks with at most ``max_concurrency`` in flight.

    Results come back in input order; a task that raised has its exception
    object stored in its slot.
    """
    if max_concurrency <= 0:
        raise ValueError("max_concurrency must be positive")
    results: List[Any] = [None] * len(tasks)

    def _store(index: int, value: Any, error: Optional[Exception]) -> None:
        results[index] = error if error is not None else value

    await _run_workers(tasks, max_concurrency, _store)
    return results


async def run_settled_with_concurrency(tasks: Sequence[Task[T]], max_concurrency: int) -> List[SettledResult]:
    """Like run_with_concurrency but reports fulfilled/rejected per task."""
    if max_concurrency <= 0:
        raise ValueError("max_concurrency must be positive")
    results: List[Optional[SettledResult]] = [None] * len(tasks)

    def _store(index: int, value: Any, error: Optional[Exception]) -> None:
        if error is not None:
            results[index] = SettledResult(status="rejected", reason=error)
        else:
            results[index] = SettledResult(status="fulfilled", value=value)

    await _run_workers(tasks, max_concurrency, _store)
    return results  # type: ignore[return-value]


async def map_with_concurrency(items: Sequence[T], fn: Callable[[T, int], Union[Awaitable[R], R]],
                               max_concurrency: int) -> List[Any]:
    tasks = [lambda item=item, i=i: fn(item, i) for i, item in enumerate(items)]
    return await run_with_concurrency(tasks, max_concurrency)


def chunk(items: Sequence[T], size: int) -> List[List[T]]:
    if size <= 0:
        raise ValueError("chunk size must be positive")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


class TaskQueue:
    """Submit tasks one at a time; at most ``max_concurrency`` run together."""

    def __init__(self, max_concurrency: int = 5):
        self._semaphore = Semaphore(max_concurrency)
        self._pending = 0
        self._active = 0

    @property
    def pending(self) -> int:
        return self._pending

    @property
    def active(self) -> int:
        return self._active

    async def add(self, task: Task[T]) -> T:
        self._pending += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._pending -= 1
        self._active += 1
        try:
            return await _call(task)
        finally:
            self._active -= 1
            self._semaphore.release()
