import pathlib

import anyio

import kubemirror


PODS = kubemirror.GroupVersionResource('', 'v1', 'pods')


def index_by_ip(obj):
    status = obj.get('status') or {}
    return [item['ip'] for item in status.get('podIPs') or []]


async def main():
    kubeconfig = pathlib.Path('~/.kube/config').expanduser().read_bytes()
    async with await kubemirror.connect_with_kubeconfig_bytes('local', kubeconfig) as connection:
        watcher = connection.watcher(PODS, indexers={'by_ip': index_by_ip})
        async with anyio.create_task_group() as tg:
            await tg.start(watcher)
            by_ip = watcher.get_index('by_ip')
            for ip, pods in sorted(by_ip.items()):
                print(ip, [pod.name for pod in pods])
            connection.stop()


if __name__ == '__main__':
    anyio.run(main)
