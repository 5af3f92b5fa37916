import anyio
from anyio import TASK_STATUS_IGNORED
from anyio.abc import TaskStatus


class Task:
    """A task that can be awaited independent of a TaskGroup.

    Subclasses implement `__call__` and are started with
    `await task_group.start(task)`. Awaiting the task itself blocks until
    it signalled that it is running.
    """

    def __init__(self):
        self._running = anyio.Event()
        self._stop = anyio.Event()

    @property
    def is_running(self):
        return self._running.is_set()

    async def wait_started(self):
        await self._running.wait()

    def __await__(self):
        return self.wait_started().__await__()

    async def __call__(self, task_status: TaskStatus[None] = TASK_STATUS_IGNORED):
        raise NotImplementedError()

    def stop(self):
        raise NotImplementedError()


class Lifecycle:
    """One-shot cancellation token.

    Owned by whoever calls `cancel`; everybody else only waits on it.
    """

    def __init__(self):
        self._cancelled = anyio.Event()

    def __repr__(self):
        state = 'cancelled' if self.cancelled else 'active'
        return f'<Lifecycle {state}>'

    @property
    def cancelled(self):
        return self._cancelled.is_set()

    def cancel(self):
        self._cancelled.set()

    async def wait(self):
        await self._cancelled.wait()
