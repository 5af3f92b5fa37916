import dataclasses
import functools
import inspect
import logging
import typing

import anyio


__all__ = [
    'ResourceEventHandler',
    'nonblocking',
]

log = logging.getLogger(__name__)


def is_async_fn(fn) -> bool:
    if fn is None:
        return False
    elif isinstance(fn, functools.partial):
        return is_async_fn(fn.func)
    elif hasattr(fn, '__wrapped__'):  # @functools.wraps()
        return is_async_fn(fn.__wrapped__)
    else:
        return inspect.iscoroutinefunction(fn)


def nonblocking(func):
    """Decorator that marks a sync handler as safe to call on the event loop.

    Unmarked sync handlers are run in a worker thread.
    """
    func.__nonblocking__ = True
    return func


async def invoke(func, *args, **kwargs):
    if is_async_fn(func):
        return await func(*args, **kwargs)
    else:
        if hasattr(func, '__nonblocking__'):
            return func(*args, **kwargs)
        else:
            return await anyio.to_thread.run_sync(
                functools.partial(func, *args, **kwargs)
            )


@dataclasses.dataclass
class ResourceEventHandler:
    """Callbacks for the three kinds of transitions a watcher observes.

    on_add(obj), on_update(old, new), on_delete(obj). Any of them may be
    omitted.
    """
    on_add: typing.Callable = None
    on_update: typing.Callable = None
    on_delete: typing.Callable = None

    def _callback(self, event_name):
        match event_name:
            case 'add':
                return self.on_add
            case 'update':
                return self.on_update
            case 'delete':
                return self.on_delete
        raise ValueError(f'unknown event: {event_name}')

    async def dispatch(self, event_name, *objs):
        """Invoke the callback for the given event.

        Returns False if the callback raised. The error is logged and
        not propagated so a misbehaving handler can not stop the caller.
        """
        callback = self._callback(event_name)
        if callback is None:
            return True
        try:
            await invoke(callback, *objs)
        except Exception:
            log.exception('%s handler %r failed for %r', event_name, callback, objs[-1])
            return False
        return True
