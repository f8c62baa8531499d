"""Per-user serialization for session and process state."""

import asyncio


class ReentrantLock:
    """An asyncio lock the owning task may re-acquire.

    Supervisor and recovery operations call into the session registry while
    already holding the user's lock, so nested acquisitions from the same task
    must not deadlock. Other tasks wait as with a plain ``asyncio.Lock``.

    Ownership belongs to the task that called ``acquire``, so ``release`` must
    run in that same task. Do not wrap ``acquire`` in ``asyncio.wait_for``:
    before Python 3.12 it runs the coroutine in an inner task, which then
    becomes the owner.
    """

    def __init__(self):
        self._lock = asyncio.Lock()
        self._owner: asyncio.Task | None = None
        self._depth = 0

    async def acquire(self) -> None:
        task = asyncio.current_task()
        if task is not None and self._owner is task:
            self._depth += 1
            return
        await self._lock.acquire()
        self._owner = task
        self._depth = 1

    def release(self) -> None:
        if self._owner is not asyncio.current_task():
            raise RuntimeError("Lock released by a task that does not hold it")
        self._depth -= 1
        if self._depth == 0:
            self._owner = None
            self._lock.release()

    def locked(self) -> bool:
        return self._lock.locked()

    async def __aenter__(self) -> "ReentrantLock":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()


class UserLocks:
    """One reentrant lock per user id, created on first use."""

    def __init__(self):
        self._locks: dict[str, ReentrantLock] = {}

    def __call__(self, user_id: str) -> ReentrantLock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = ReentrantLock()
        return lock

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._locks
