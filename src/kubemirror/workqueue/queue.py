import logging

import anyio
from anyio import TASK_STATUS_IGNORED
from anyio.abc import TaskStatus

from ..exceptions import QueueShutDown
from ..tasks import Task
from .limiters import default_rate_limiter


log = logging.getLogger(__name__)


class Workqueue(Task):
    """Rate limited, deduplicating queue of work items.

    An item that is added several times before it is taken by `get` is
    only handed out once. An item that is added while it is being
    processed is handed out again after `done` was called for it, so one
    item is never processed by two consumers at the same time.

    Items added before the queue is started are kept aside and queued on
    startup.
    """

    def __init__(self, rate_limiter=None):
        super().__init__()
        self._rate_limiter = rate_limiter or default_rate_limiter()
        self._task_group = None
        self._pending = []
        # dict as insertion ordered set
        self._ready = {}
        self._dirty = set()
        self._processing = set()
        self._waiting = {}
        # Replaced after every wakeup, anyio events can not be cleared.
        self._wakeup = anyio.Event()
        self._shutting_down = False

    def __len__(self):
        return len(self._ready)

    def __repr__(self):
        state = [
            f'ready={len(self._ready)}',
            f'waiting={len(self._waiting)}',
            f'processing={len(self._processing)}',
        ]
        if self._pending:
            state.append(f'pending={len(self._pending)}')
        if self._shutting_down:
            state.append('shutting down')
        return f'<Workqueue {" ".join(state)}>'

    @property
    def shutting_down(self):
        return self._shutting_down

    def __aiter__(self):
        return self

    async def __anext__(self):
        """Next item, until the queue is shut down and drained.

        The consumer still has to call `done` for every item.
        """
        try:
            return await self.get()
        except QueueShutDown:
            raise StopAsyncIteration

    def _notify(self):
        wakeup, self._wakeup = self._wakeup, anyio.Event()
        wakeup.set()

    def _shut_down(self):
        if not self._shutting_down:
            self._shutting_down = True
            self._notify()

    async def _enqueue(self, item):
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        # A processed item comes back through done().
        if item not in self._processing:
            self._ready[item] = None
            self._notify()

    async def add(self, item):
        """Mark the item as needing processing."""
        if self._shutting_down:
            return
        if not self.is_running:
            self._pending.append(item)
            return
        await self._enqueue(item)

    async def get(self):
        """Wait for an item and mark it as being processed.

        Raises QueueShutDown once the queue was stopped and is empty.
        """
        while not self._ready:
            if self._shutting_down:
                raise QueueShutDown('workqueue is shut down')
            await self._wakeup.wait()
        item = next(iter(self._ready))
        del self._ready[item]
        self._dirty.discard(item)
        self._processing.add(item)
        return item

    async def done(self, item):
        """Mark the item as processed.

        If it was added again in the meantime it is queued once more.
        """
        self._processing.discard(item)
        if item in self._dirty:
            self._ready[item] = None
            self._notify()

    async def _enqueue_later(self, item, delay):
        self._waiting[item] = delay
        try:
            await anyio.sleep(delay)
            await self.add(item)
        finally:
            self._waiting.pop(item, None)

    async def add_after(self, item, delay):
        """Add the item once `delay` seconds have passed."""
        if delay <= 0:
            await self.add(item)
            return
        if self._task_group is None:
            if not self._shutting_down:
                log.debug('queue not started, %r is added on startup', item)
                self._pending.append(item)
            return
        self._task_group.start_soon(self._enqueue_later, item, delay)

    async def add_rate_limited(self, item):
        """Add the item after the delay its rate limiter asks for."""
        await self.add_after(item, self._rate_limiter.delay(item))

    async def forget(self, item):
        """Reset the rate limiter history of the item."""
        self._rate_limiter.forget(item)

    async def num_requeues(self, item):
        return self._rate_limiter.count(item)

    def stop(self):
        self._stop.set()
        if self._task_group is None:
            # Not running, nothing else would wake up waiting consumers.
            self._shut_down()

    async def __call__(self, task_status: TaskStatus[None] = TASK_STATUS_IGNORED):
        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg
                pending, self._pending = self._pending, []
                for item in pending:
                    await self._enqueue(item)
                self._running.set()
                task_status.started()
                await self._stop.wait()
                # Items still waiting for their delay are dropped.
                tg.cancel_scope.cancel()
        finally:
            self._task_group = None
            self._shut_down()
