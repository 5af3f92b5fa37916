import contextlib
import copy
import dataclasses
import logging
import math
import random
import typing

import anyio
from anyio import TASK_STATUS_IGNORED
from anyio.abc import TaskStatus

from ..dynamic import ListOptions
from ..exceptions import Error, ResourceVersionTooOld, StoreKeyError, StreamError
from ..handlers import ResourceEventHandler
from ..resources import GroupVersionResource, Unstructured, is_same_version
from ..tasks import Lifecycle, Task
from ..workqueue import ItemExponentialFailureRateLimiter, Workqueue
from .index import NAMESPACE_INDEX, Indexer
from .store import meta_namespace_key


__all__ = [
    'ResourceWatcher',
]

log = logging.getLogger(__name__)


def _default_resync():
    return 10 * 60 * 60 + 60 * random.randint(0, 9)  # 10 hours + 0..9 Minutes


def _default_watch_timeout():
    # Spread reconnects of many watchers over time.
    return 5 * 60 + random.randint(0, 5 * 60)


def _default_backoff():
    return ItemExponentialFailureRateLimiter(base_delay=0.8, max_delay=30)


def _status_error(status):
    code = status.get('code')
    message = status.get('message')
    if code == 410 or status.get('reason') in ('Expired', 'Gone'):
        return ResourceVersionTooOld(message)
    return StreamError(f'watch error {code}: {message}')


@dataclasses.dataclass(eq=False)
class ResourceWatcher(Task):
    """Mirrors one collection, optionally limited to a namespace, into a
    local indexed cache and reports every change.

    Start it with `await task_group.start(watcher)`, which returns once the
    cache has been filled by the initial list. `stop()` ends it for good.

    Changes are delivered twice: to the handlers registered with
    `add_event_handler` and as cache keys to `queue`.
    """
    api_client: object
    resource: GroupVersionResource
    namespace: str = None
    resync_after: float = dataclasses.field(default_factory=_default_resync)
    indexers: dict = None
    tweak_list_options: typing.Callable = None
    transformer: typing.Callable = None
    lifecycle: Lifecycle = None
    # Seconds a single list may take.
    timeout: float = 60
    # Seconds after which the server should end a watch.
    watch_timeout: int = dataclasses.field(default_factory=_default_watch_timeout)
    backoff: object = dataclasses.field(default_factory=_default_backoff)

    def __post_init__(self):
        super().__init__()
        self.store = Indexer(indexers=self.indexers)
        self.queue = Workqueue()
        self.resource_version = None
        self._handlers = []
        self._stopped = False
        self._wait_scope = None
        self._task_group = None

    def __hash__(self):
        return id(self)

    def __repr__(self):
        _out = []
        _out.append(str(id(self)))
        _out.append(str(self.resource))
        if self.namespace is not None:
            _out.append(self.namespace)
        if self.resource_version:
            _out.append(self.resource_version)
        _s = ' '.join(_out)
        return f'<ResourceWatcher {_s}>'

    @property
    def has_synced(self):
        """True once the initial list has been put into the cache, until the
        watcher is stopped."""
        return self.is_running and not self._stopped

    @property
    def stopped(self):
        return self._stopped

    def add_event_handler(self, on_add=None, on_update=None, on_delete=None):
        """Register callbacks. They only see changes made after registration.

        Callbacks are called one at a time in the order the changes were
        observed. Exceptions they raise are logged and otherwise ignored.
        """
        handler = ResourceEventHandler(on_add, on_update, on_delete)
        self._handlers.append(handler)
        return handler

    def remove_event_handler(self, handler):
        self._handlers.remove(handler)

    def add_indexers(self, indexers):
        self.store.add_indexers(indexers)

    def get_index(self, index_name):
        return self.store.get_index(
            index_name,
            resource=self.resource,
        )

    def get_object(self, namespace, name):
        """Return `(obj, exists)` from the local cache.

        Never talks to the server, so the answer may lag behind it.
        """
        key = meta_namespace_key(namespace, name)
        obj = self.store.get_by_key(key)
        if obj is None:
            return None, False
        # We return a copy, so that external changes don't change the
        # original in the store.
        return copy.deepcopy(obj), True

    def get_objects_in_namespace(self, namespace):
        objs = self.store.by_index(NAMESPACE_INDEX, namespace or '')
        return [copy.deepcopy(obj) for obj in objs]

    def list_objects(self):
        return [copy.deepcopy(obj) for obj in self.store.list()]

    def list_keys(self):
        return list(self.store.keys())

    def stop(self):
        """Stop watching. Safe to call repeatedly and before the watcher ran."""
        if self._stopped:
            return
        log.debug('stop %s', self)
        self._stopped = True
        self._stop.set()
        if self._wait_scope is not None:
            self._wait_scope.cancel()

    async def _interruptible(self, func, *args, deadline=math.inf):
        """Await `func(*args)` unless stop() is called or the deadline passes.

        Returns `(True, result)` or `(False, None)` if interrupted.
        """
        with anyio.CancelScope(deadline=deadline) as scope:
            self._wait_scope = scope
            if self._stopped:
                scope.cancel()
            try:
                return True, await func(*args)
            finally:
                self._wait_scope = None
        return False, None

    def _list_options(self):
        options = ListOptions()
        if callable(self.tweak_list_options):
            self.tweak_list_options(options)
        return options

    def _in_scope(self, obj):
        if self.namespace:
            return (obj.get('metadata') or {}).get('namespace') == self.namespace
        return True

    def _key(self, obj):
        return self.store.key_func(obj)

    async def _dispatch(self, event_name, *objs):
        for handler in list(self._handlers):
            await handler.dispatch(event_name, *objs)
        await self.queue.add(self._key(objs[-1]))

    async def _add_or_update(self, obj):
        try:
            old = self.store.get(obj)
        except KeyError:
            self.store.add(obj)
            await self._dispatch('add', obj)
        else:
            if not is_same_version(obj, old):
                self.store.update(obj)
                await self._dispatch('update', old, obj)

    async def _delete(self, obj):
        key = self._key(obj)
        if key not in self.store:
            # Never seen or already gone, nothing to report.
            return
        self.store.delete(obj)
        await self._dispatch('delete', obj)

    async def _fetch(self):
        try:
            with anyio.fail_after(self.timeout):
                return await self.api_client.list(
                    self.resource,
                    namespace=self.namespace,
                    options=self._list_options(),
                )
        except TimeoutError as e:
            raise StreamError(f'timeout while listing {self.resource}') from e

    async def _list(self):
        """List everything and reconcile the cache with the result.

        Returns False if interrupted by stop().
        """
        log.debug('start listing %s', self)
        done, resource_list = await self._interruptible(self._fetch)
        if not done:
            return False

        listed = set()
        for obj in resource_list.items:
            obj = self._transform(obj)
            if not self._in_scope(obj):
                continue
            try:
                listed.add(self._key(obj))
            except StoreKeyError as e:
                log.warning('%s: skipping %s', self, e)
                continue
            await self._add_or_update(obj)

        # Whatever we still have but the server does not is gone.
        # Report it with the last state we know of.
        for key in list(self.store.keys()):
            if key not in listed:
                obj = self.store[key]
                log.debug('%s vanished while not watching', key)
                await self._delete(obj)

        self.resource_version = resource_list.resource_version
        log.debug('done listing %s', self)
        return True

    async def _watch(self, deadline):
        log.debug('start watching %s', self)
        events = self.api_client.watch(
            self.resource,
            namespace=self.namespace,
            resource_version=self.resource_version,
            options=self._list_options(),
            timeout_seconds=self.watch_timeout,
        )
        async with contextlib.aclosing(events):
            while not self._stopped:
                try:
                    done, event = await self._interruptible(
                        events.__anext__, deadline=deadline
                    )
                except StopAsyncIteration:
                    log.debug('watch ended %s', self)
                    return
                if not done:
                    if not self._stopped:
                        log.debug('resyncing %s', self)
                    return
                await self._process_event(*event)

    def _transform(self, obj):
        if callable(self.transformer):
            obj = self.transformer(obj)
        if not isinstance(obj, Unstructured):
            obj = Unstructured(obj)
        return obj

    async def _process_event(self, event_type, obj):
        if event_type == 'ERROR':
            raise _status_error(obj)
        if event_type == 'BOOKMARK':
            self.resource_version = obj.resource_version
            return

        obj = self._transform(obj)
        if not self._in_scope(obj):
            log.debug('ignoring %r outside of namespace %s', obj, self.namespace)
            return
        try:
            self._key(obj)
        except StoreKeyError as e:
            log.warning('%s: skipping %s event: %s', self, event_type, e)
            return
        match event_type:
            case 'ADDED' | 'MODIFIED':
                await self._add_or_update(obj)
            case 'DELETED':
                await self._delete(obj)
            case _:
                log.warning('unknown watch event type %r for %r', event_type, obj)
                return
        self.resource_version = obj.resource_version or self.resource_version

    async def _backoff(self, error):
        delay = self.backoff.delay(self)
        log.warning('%s: %s, relisting in %.1fs', self, error, delay)
        await self._interruptible(anyio.sleep, delay)

    async def _listwatch(self, task_status):
        started = False
        try:
            while not self._stopped:
                try:
                    if not await self._list():
                        break
                    self.backoff.forget(self)

                    if not started:
                        # We are running and our cache is synced.
                        started = True
                        self._running.set()
                        task_status.started()
                        log.info('started %s', self)

                    if self.resync_after:
                        deadline = anyio.current_time() + self.resync_after
                    else:
                        deadline = math.inf
                    await self._watch(deadline)

                except ResourceVersionTooOld as e:
                    # Relist right away, that is the only way forward.
                    log.info('%s: %s, relisting', self, e)
                except Error as e:
                    await self._backoff(e)
        finally:
            if not started:
                task_status.started()

    async def _observe_lifecycle(self):
        await self.lifecycle.wait()
        log.debug('lifecycle of %s ended', self)
        self.stop()

    async def __call__(self, task_status: TaskStatus[None] = TASK_STATUS_IGNORED):
        if self._stopped:
            log.debug('not starting stopped %s', self)
            # Consumers of the queue must not wait forever.
            self.queue.stop()
            task_status.started()
            return

        log.debug('starting %s', self)
        try:
            async with anyio.create_task_group() as tg:
                self._task_group = tg
                await tg.start(self.queue)
                if self.lifecycle is not None:
                    tg.start_soon(self._observe_lifecycle)
                try:
                    await self._listwatch(task_status)
                finally:
                    log.debug('stopping %s', self)
                    self._stopped = True
                    self.queue.stop()
                    tg.cancel_scope.cancel()
        finally:
            self._task_group = None
            log.info('stopped %s', self)
