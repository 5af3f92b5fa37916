"""Shared fixtures for the kubemirror tests.

Provides an in-memory api server that speaks the list/watch surface of the
dynamic client, so watchers can be exercised without a cluster.
"""

import copy

import anyio
import httpx
import pytest
import yaml
from lightkube import AsyncClient, KubeConfig

from kubemirror.dynamic import DynamicClient, ResourceList
from kubemirror.exceptions import ConnectivityError
from kubemirror.resources import GroupVersionResource, Unstructured
from kubemirror.workqueue import ItemExponentialFailureRateLimiter


CONFIGMAPS = GroupVersionResource('', 'v1', 'configmaps')

# Nothing listens there, every request fails right away.
UNREACHABLE = 'http://127.0.0.1:1'

KUBECONFIG = f"""
apiVersion: v1
kind: Config
clusters:
- name: test
  cluster:
    server: {UNREACHABLE}
users:
- name: test
  user:
    token: secret
contexts:
- name: test
  context:
    cluster: test
    user: test
current-context: test
""".encode()


@pytest.fixture
def anyio_backend():
    return 'asyncio'


async def wait_for(predicate, timeout=5.0):
    """Poll until predicate() is true or fail after timeout seconds."""
    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)


def make_object(name, namespace='default', data=None, resource_version=None):
    metadata = {'name': name}
    if namespace is not None:
        metadata['namespace'] = namespace
    if resource_version is not None:
        metadata['resourceVersion'] = resource_version
    return Unstructured({
        'apiVersion': 'v1',
        'kind': 'ConfigMap',
        'metadata': metadata,
        'data': data or {},
    })


def fast_backoff():
    return ItemExponentialFailureRateLimiter(base_delay=0.01, max_delay=0.05)


class FakeApiServer:
    """Keeps objects in memory and fans changes out to open watch streams.

    With `honor_namespace=False` the server sends objects of every
    namespace, also to namespaced requests.
    """

    def __init__(self, honor_namespace=True):
        self.honor_namespace = honor_namespace
        self.objects = {}
        self.list_calls = 0
        self.watch_calls = 0
        # Number of upcoming list requests that fail.
        self.fail_lists = 0
        self._resource_version = 0
        self._streams = []

    @property
    def watching(self):
        return len(self._streams)

    def _next_version(self):
        self._resource_version += 1
        return str(self._resource_version)

    @staticmethod
    def _key(obj):
        return (obj.namespace, obj.name)

    def _visible(self, obj, namespace):
        if not namespace or not self.honor_namespace:
            return True
        return obj.namespace == namespace

    async def _emit(self, event_type, obj):
        for send in list(self._streams):
            await send.send((event_type, copy.deepcopy(obj)))

    async def create(self, name, namespace='default', data=None, notify=True):
        obj = make_object(name, namespace, data, resource_version=self._next_version())
        self.objects[self._key(obj)] = obj
        if notify:
            await self._emit('ADDED', obj)
        return obj

    async def modify(self, name, namespace='default', data=None, notify=True):
        obj = copy.deepcopy(self.objects[(namespace, name)])
        obj['data'] = data or {}
        obj['metadata']['resourceVersion'] = self._next_version()
        self.objects[self._key(obj)] = obj
        if notify:
            await self._emit('MODIFIED', obj)
        return obj

    async def delete(self, name, namespace='default', notify=True):
        obj = self.objects.pop((namespace, name))
        obj['metadata']['resourceVersion'] = self._next_version()
        if notify:
            await self._emit('DELETED', obj)
        return obj

    async def send_error(self, code, message='error'):
        status = Unstructured({
            'kind': 'Status',
            'apiVersion': 'v1',
            'status': 'Failure',
            'code': code,
            'message': message,
        })
        await self._emit('ERROR', status)

    async def send_bookmark(self):
        bookmark = make_object('', resource_version=self._next_version())
        await self._emit('BOOKMARK', bookmark)

    def disconnect(self):
        """End every open watch stream."""
        streams, self._streams = self._streams, []
        for send in streams:
            send.close()

    async def list(self, resource, namespace=None, options=None):
        self.list_calls += 1
        if self.fail_lists:
            self.fail_lists -= 1
            raise ConnectivityError('connection refused')
        items = [
            copy.deepcopy(obj)
            for obj in self.objects.values()
            if self._visible(obj, namespace)
        ]
        return ResourceList(items, resource_version=str(self._resource_version))

    async def watch(self, resource, namespace=None, resource_version=None,
            options=None, timeout_seconds=None):
        self.watch_calls += 1
        send, receive = anyio.create_memory_object_stream(100)
        self._streams.append(send)
        try:
            async with receive:
                async for event_type, obj in receive:
                    if event_type in ('ADDED', 'MODIFIED', 'DELETED'):
                        if not self._visible(obj, namespace):
                            continue
                    yield event_type, obj
        finally:
            if send in self._streams:
                self._streams.remove(send)
            send.close()


@pytest.fixture
def server():
    return FakeApiServer()


# Discovery documents served by FakeTypedClient, by path.
DISCOVERY = {
    '/api/v1': {
        'kind': 'APIResourceList',
        'groupVersion': 'v1',
        'resources': [
            {'name': 'configmaps', 'kind': 'ConfigMap', 'namespaced': True},
            {'name': 'namespaces', 'kind': 'Namespace', 'namespaced': False},
            {'name': 'pods', 'kind': 'Pod', 'namespaced': True},
        ],
    },
    '/apis/apps/v1': {
        'kind': 'APIResourceList',
        'groupVersion': 'apps/v1',
        'resources': [
            {'name': 'deployments', 'kind': 'Deployment', 'namespaced': True},
        ],
    },
}


class FakeTypedClient:
    """Stands in for a kubernetes ApiClient, answering discovery requests."""

    def __init__(self, documents=None):
        self.documents = DISCOVERY if documents is None else documents
        self.paths = []

    def call_api(self, path, method, **kwargs):
        self.paths.append(path)
        return self.documents.get(path, {'resources': []})


def make_dynamic_client(handler, typed_client=None):
    """A DynamicClient whose lightkube client talks to `handler`."""
    kube_config = KubeConfig.from_dict(yaml.safe_load(KUBECONFIG))
    client = AsyncClient(kube_config, transport=httpx.MockTransport(handler))
    return DynamicClient(client, typed_client or FakeTypedClient())
