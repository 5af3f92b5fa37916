import pathlib

import anyio

import kubemirror
from kubemirror.cache import split_meta_namespace_key


PODS = kubemirror.GroupVersionResource('', 'v1', 'pods')


# Strip 'managed fields' to reduce local memory footprint.
def transform(obj):
    obj.get('metadata', {}).pop('managedFields', None)
    return obj


async def on_add(obj):
    print(f'added: {obj}')


async def on_update(old, new):
    print(f'updated: {old} -> {new}')


async def on_delete(obj):
    print(f'deleted: {obj}')


async def consume(watcher):
    """Another receiver of the same changes, as cache keys."""
    async for key in watcher.queue:
        namespace, name = split_meta_namespace_key(key)
        obj, exists = watcher.get_object(namespace, name)
        print(f'queue: {key} exists: {exists}')
        await watcher.queue.done(key)


async def main():
    kubeconfig = pathlib.Path('~/.kube/config').expanduser().read_bytes()
    async with await kubemirror.connect_with_kubeconfig_bytes('local', kubeconfig) as connection:
        watcher = connection.watcher(PODS, namespace='default', transformer=transform)
        watcher.add_event_handler(on_add=on_add, on_update=on_update, on_delete=on_delete)
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            tg.start_soon(consume, watcher)


if __name__ == '__main__':
    anyio.run(main)
