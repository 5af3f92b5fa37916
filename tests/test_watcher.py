"""Tests for the ResourceWatcher list/watch/reconcile loop."""

import anyio
import httpx
import pytest

from conftest import CONFIGMAPS, FakeApiServer, fast_backoff, make_dynamic_client, wait_for
from kubemirror.cache import ResourceWatcher
from kubemirror.handlers import nonblocking
from kubemirror.tasks import Lifecycle

pytestmark = pytest.mark.anyio


def make_watcher(server, **kwargs):
    kwargs.setdefault('backoff', fast_backoff())
    return ResourceWatcher(server, CONFIGMAPS, **kwargs)


class Recorder:
    """Collects (event, key, resourceVersion) tuples from handler calls."""

    def __init__(self):
        self.events = []

    def register(self, watcher):
        watcher.add_event_handler(
            on_add=self.on_add,
            on_update=self.on_update,
            on_delete=self.on_delete,
        )

    def _record(self, event, obj):
        self.events.append((event, obj.name, obj.resource_version))

    async def on_add(self, obj):
        self._record('add', obj)

    async def on_update(self, old, new):
        self._record('update', new)

    async def on_delete(self, obj):
        self._record('delete', obj)

    def names(self, event):
        return [name for e, name, _ in self.events if e == event]


# ---------------------------------------------------------------------------
# Initial list
# ---------------------------------------------------------------------------


class TestInitialList:
    async def test_start_returns_with_synced_cache(self, server) -> None:
        await server.create('a')
        await server.create('b')
        watcher = make_watcher(server)
        recorder = Recorder()
        recorder.register(watcher)

        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            assert watcher.has_synced
            assert sorted(recorder.names('add')) == ['a', 'b']
            obj, exists = watcher.get_object('default', 'a')
            assert exists
            assert obj.name == 'a'
            watcher.stop()

    async def test_awaiting_the_watcher_waits_for_sync(self, server) -> None:
        await server.create('a')
        watcher = make_watcher(server)

        async with anyio.create_task_group() as tg:
            tg.start_soon(watcher)
            with anyio.fail_after(5):
                await watcher
            assert watcher.has_synced
            assert watcher.list_keys() == ['default/a']
            watcher.stop()

    async def test_missing_object(self, server) -> None:
        watcher = make_watcher(server)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            assert watcher.get_object('default', 'nope') == (None, False)
            watcher.stop()

    async def test_get_object_returns_a_copy(self, server) -> None:
        await server.create('a', data={'k': 'v'})
        watcher = make_watcher(server)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            obj, _ = watcher.get_object('default', 'a')
            obj['data']['k'] = 'changed'
            again, _ = watcher.get_object('default', 'a')
            assert again['data']['k'] == 'v'
            watcher.stop()

    async def test_list_is_retried_with_backoff(self, server) -> None:
        server.fail_lists = 2
        await server.create('a')
        watcher = make_watcher(server)
        async with anyio.create_task_group() as tg:
            with anyio.fail_after(5):
                await tg.start(watcher)
            assert server.list_calls == 3
            assert watcher.get_object('default', 'a')[1]
            watcher.stop()


# ---------------------------------------------------------------------------
# Watching
# ---------------------------------------------------------------------------


class TestWatch:
    async def test_events_are_delivered_in_order(self, server) -> None:
        watcher = make_watcher(server)
        recorder = Recorder()
        recorder.register(watcher)

        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.watching)
            await server.create('a')
            await server.modify('a', data={'x': '1'})
            await server.modify('a', data={'x': '2'})
            await server.delete('a')
            await wait_for(lambda: len(recorder.events) == 4)
            assert [e for e, _, _ in recorder.events] == ['add', 'update', 'update', 'delete']
            versions = [int(rv) for _, _, rv in recorder.events]
            assert versions == sorted(versions)
            assert watcher.get_object('default', 'a') == (None, False)
            watcher.stop()

    async def test_update_handler_gets_old_and_new(self, server) -> None:
        await server.create('a', data={'x': '1'})
        watcher = make_watcher(server)
        seen = []

        async def on_update(old, new):
            seen.append((old['data'], new['data']))

        watcher.add_event_handler(on_update=on_update)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.watching)
            await server.modify('a', data={'x': '2'})
            await wait_for(lambda: seen)
            assert seen == [({'x': '1'}, {'x': '2'})]
            watcher.stop()

    async def test_sync_handlers_are_called(self, server) -> None:
        watcher = make_watcher(server)
        added = []
        watcher.add_event_handler(on_add=lambda obj: added.append(obj.name))

        @nonblocking
        def on_delete(obj):
            added.remove(obj.name)

        watcher.add_event_handler(on_delete=on_delete)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.watching)
            await server.create('a')
            await wait_for(lambda: added == ['a'])
            await server.delete('a')
            await wait_for(lambda: added == [])
            watcher.stop()

    async def test_failing_handler_does_not_stop_the_watcher(self, server) -> None:
        watcher = make_watcher(server)
        recorder = Recorder()

        async def broken(obj):
            raise RuntimeError('boom')

        watcher.add_event_handler(on_add=broken)
        recorder.register(watcher)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.watching)
            await server.create('a')
            await server.create('b')
            await wait_for(lambda: len(recorder.events) == 2)
            assert recorder.names('add') == ['a', 'b']
            watcher.stop()

    async def test_unchanged_version_is_not_reported(self, server) -> None:
        obj = await server.create('a')
        watcher = make_watcher(server)
        recorder = Recorder()
        recorder.register(watcher)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.watching)
            await server._emit('MODIFIED', obj)
            await server.create('b')
            await wait_for(lambda: len(recorder.events) == 2)
            assert recorder.names('update') == []
            watcher.stop()

    async def test_delete_of_unknown_object_is_ignored(self, server) -> None:
        watcher = make_watcher(server)
        recorder = Recorder()
        recorder.register(watcher)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.watching)
            await server.create('a', notify=False)
            await server.delete('a')
            await server.create('b')
            await wait_for(lambda: recorder.events)
            assert recorder.names('delete') == []
            watcher.stop()

    async def test_bookmark_advances_resource_version(self, server) -> None:
        watcher = make_watcher(server)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.watching)
            await server.send_bookmark()
            await wait_for(lambda: watcher.resource_version == '1')
            assert len(watcher.store) == 0
            watcher.stop()

    async def test_keys_are_queued(self, server) -> None:
        await server.create('a')
        watcher = make_watcher(server)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            with anyio.fail_after(5):
                key = await watcher.queue.get()
            assert key == 'default/a'
            await watcher.queue.done(key)
            watcher.stop()


# ---------------------------------------------------------------------------
# Relisting
# ---------------------------------------------------------------------------


class TestRelist:
    async def test_delete_while_disconnected_is_reported_once(self, server) -> None:
        await server.create('a')
        await server.create('b')
        watcher = make_watcher(server)
        recorder = Recorder()
        recorder.register(watcher)

        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.watching)
            deleted = await server.delete('a', notify=False)
            server.disconnect()
            await wait_for(lambda: recorder.names('delete'))
            await wait_for(lambda: server.watching)
            # The same object is gone, a second notice must not be reported.
            await server._emit('DELETED', deleted)
            await server.create('c')
            await wait_for(lambda: 'c' in recorder.names('add'))
            assert recorder.names('delete') == ['a']
            # The delete carries the last state we have seen.
            delete_event = [e for e in recorder.events if e[0] == 'delete'][0]
            assert delete_event[2] == '1'
            watcher.stop()

    async def test_changes_while_disconnected_are_picked_up(self, server) -> None:
        await server.create('a')
        watcher = make_watcher(server)
        recorder = Recorder()
        recorder.register(watcher)

        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.watching)
            await server.modify('a', data={'x': '1'}, notify=False)
            await server.create('b', notify=False)
            server.disconnect()
            await wait_for(lambda: len(recorder.events) == 3)
            assert recorder.names('update') == ['a']
            assert recorder.names('add') == ['a', 'b']
            watcher.stop()

    async def test_expired_resource_version_relists(self, server) -> None:
        watcher = make_watcher(server)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.watching)
            await server.send_error(410, 'too old resource version')
            await wait_for(lambda: server.list_calls == 2)
            await wait_for(lambda: server.watch_calls == 2)
            watcher.stop()

    async def test_watch_error_relists(self, server) -> None:
        watcher = make_watcher(server)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.watching)
            await server.send_error(500, 'internal error')
            await wait_for(lambda: server.list_calls == 2)
            watcher.stop()

    async def test_resync_relists_without_duplicate_events(self, server) -> None:
        await server.create('a')
        watcher = make_watcher(server, resync_after=0.05)
        recorder = Recorder()
        recorder.register(watcher)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.list_calls >= 3)
            assert recorder.events == [('add', 'a', '1')]
            watcher.stop()

    async def test_malformed_list_response_is_retried(self) -> None:
        lists = []

        def handler(request):
            lists.append(request)
            return httpx.Response(200, text='<html>502 bad gateway</html>')

        watcher = ResourceWatcher(make_dynamic_client(handler), CONFIGMAPS, backoff=fast_backoff())
        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                tg.start_soon(watcher)
                await wait_for(lambda: len(lists) >= 3)
                assert not watcher.has_synced
                watcher.stop()
        assert watcher.stopped


# ---------------------------------------------------------------------------
# Namespace scope
# ---------------------------------------------------------------------------


class TestNamespaceScope:
    async def test_objects_of_other_namespaces_are_dropped(self) -> None:
        server = FakeApiServer(honor_namespace=False)
        await server.create('a', namespace='team-a')
        await server.create('b', namespace='team-b')
        watcher = make_watcher(server, namespace='team-a')
        recorder = Recorder()
        recorder.register(watcher)

        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            await wait_for(lambda: server.watching)
            await server.create('c', namespace='team-b')
            await server.create('d', namespace='team-a')
            await wait_for(lambda: 'd' in recorder.names('add'))
            assert recorder.names('add') == ['a', 'd']
            assert watcher.get_object('team-b', 'b') == (None, False)
            assert watcher.get_object('team-b', 'c') == (None, False)
            names = sorted(o.name for o in watcher.get_objects_in_namespace('team-a'))
            assert names == ['a', 'd']
            watcher.stop()

    async def test_namespace_index(self, server) -> None:
        await server.create('a', namespace='team-a')
        await server.create('b', namespace='team-b')
        await server.create('c', namespace='team-b')
        watcher = make_watcher(server)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            names = sorted(o.name for o in watcher.get_objects_in_namespace('team-b'))
            assert names == ['b', 'c']
            assert len(watcher.list_objects()) == 3
            watcher.stop()


# ---------------------------------------------------------------------------
# Stopping
# ---------------------------------------------------------------------------


class TestStop:
    async def test_stop_is_idempotent(self, server) -> None:
        watcher = make_watcher(server)
        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                await tg.start(watcher)
                watcher.stop()
                watcher.stop()
        assert watcher.stopped
        watcher.stop()

    async def test_stop_before_start(self, server) -> None:
        watcher = make_watcher(server)
        watcher.stop()
        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                await tg.start(watcher)
        assert not watcher.has_synced
        assert server.list_calls == 0

    async def test_stop_before_start_releases_queue_consumers(self, server) -> None:
        watcher = make_watcher(server)
        keys = []

        async def consume():
            async for key in watcher.queue:
                keys.append(key)

        watcher.stop()
        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                tg.start_soon(consume)
                await tg.start(watcher)
        assert keys == []
        assert watcher.queue.shutting_down

    async def test_not_synced_after_stop(self, server) -> None:
        await server.create('a')
        watcher = make_watcher(server)
        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                await tg.start(watcher)
                assert watcher.has_synced
                watcher.stop()
        assert not watcher.has_synced
        # The cache keeps its last state.
        assert watcher.list_keys() == ['default/a']

    async def test_stop_during_backoff(self, server) -> None:
        server.fail_lists = 1000
        watcher = ResourceWatcher(server, CONFIGMAPS)
        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                tg.start_soon(watcher)
                await wait_for(lambda: server.list_calls >= 1)
                watcher.stop()
        assert not watcher.has_synced

    async def test_no_events_after_stop(self, server) -> None:
        watcher = make_watcher(server)
        recorder = Recorder()
        recorder.register(watcher)
        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                await tg.start(watcher)
                await wait_for(lambda: server.watching)
                watcher.stop()
        await server.create('a')
        assert recorder.events == []

    async def test_lifecycle_cancel_stops_watcher(self, server) -> None:
        lifecycle = Lifecycle()
        watcher = make_watcher(server, lifecycle=lifecycle)
        with anyio.fail_after(5):
            async with anyio.create_task_group() as tg:
                await tg.start(watcher)
                lifecycle.cancel()
        assert watcher.stopped
        assert lifecycle.cancelled
