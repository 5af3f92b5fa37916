import contextlib
import dataclasses
import functools
import logging
import typing

import anyio
import httpx
import lightkube
import urllib3
from kubernetes import client as k8s_client
from kubernetes.client.exceptions import ApiException
from lightkube.core import resource as lkr
from lightkube.generic_resource import create_global_resource, create_namespaced_resource

from .exceptions import (
    ConnectivityError,
    DiscoveryError,
    HttpError,
    ResourceVersionTooOld,
    StreamError,
)
from .resources import GroupVersion, GroupVersionResource, Unstructured


__all__ = [
    'DynamicClient',
    'ListOptions',
    'ResourceList',
]

log = logging.getLogger(__name__)

# lightkube lists and watches namespaced collections across all
# namespaces when asked for this one.
ALL_NAMESPACES = '*'


@dataclasses.dataclass
class ListOptions:
    """Server side filters for list and watch requests.

    `labels` and `fields` take lightkube selectors, e.g.
    `{'app': 'web', 'tier': lightkube.operators.in_(['a', 'b'])}`.
    """
    labels: dict = None
    fields: dict = None
    # Page size for list requests.
    chunk_size: int = 500


@dataclasses.dataclass
class ResourceList:
    items: typing.List[Unstructured]
    resource_version: str = None

    def __iter__(self):
        return iter(self.items)

    def __len__(self):
        return len(self.items)


@contextlib.contextmanager
def _api_errors(action):
    try:
        yield
    except lightkube.ApiError as e:
        if e.response.status_code == 410:
            raise ResourceVersionTooOld(f'{action}: {e.status.message}') from e
        raise HttpError.from_api_error(e) from e
    except httpx.TransportError as e:
        raise ConnectivityError(f'{action} failed: {e!r}') from e
    except httpx.HTTPError as e:
        raise StreamError(f'{action} failed: {e!r}') from e
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        # Not json, or json that does not look like a kubernetes object.
        raise StreamError(f'{action}: malformed response: {e!r}') from e


@contextlib.contextmanager
def _discovery_errors(path):
    try:
        yield
    except ApiException as e:
        if not e.status:
            raise ConnectivityError(f'GET {path} failed: {e.reason}') from e
        raise HttpError.from_api_exception(e, 'GET', path) from e
    except urllib3.exceptions.HTTPError as e:
        raise ConnectivityError(f'GET {path} failed: {e!r}') from e


class DynamicClient:
    """Untyped client for any collection the api server serves.

    Objects go in and come out as `Unstructured` dicts. Collections are
    addressed by `GroupVersionResource`, so callers need to know the plural
    name, see `KindResolver` to map a kind to it.

    Reads, writes and watches go through a lightkube `AsyncClient` using
    generic resources. Discovery and the version query go through the
    kubernetes `ApiClient` of the connection.
    """

    def __init__(self, client: lightkube.AsyncClient, api_client, timeout=30):
        self.client = client
        self.api_client = api_client
        self.timeout = timeout
        # GroupVersionResource -> (lightkube resource class, namespaced)
        self._resources = {}

    def __repr__(self):
        return f'<DynamicClient {len(self._resources)} resources>'

    async def aclose(self):
        await self.client.close()

    @staticmethod
    def group_version_path(group_version: GroupVersion):
        if group_version.group:
            return f'/apis/{group_version.group}/{group_version.version}'
        return f'/api/{group_version.version}'

    async def _get_json(self, path):
        call = functools.partial(
            self.api_client.call_api,
            path,
            'GET',
            header_params={'Accept': 'application/json'},
            auth_settings=['BearerToken'],
            response_type='object',
            _return_http_data_only=True,
            _request_timeout=self.timeout,
        )
        with _discovery_errors(path):
            body = await anyio.to_thread.run_sync(call)
        if not isinstance(body, dict):
            raise StreamError(f'GET {path}: expected an object, got {body!r:.200}')
        return body

    async def server_version(self):
        """Query `/version`. Used to verify we can talk to the server."""
        version_api = k8s_client.VersionApi(self.api_client)
        with _discovery_errors('/version'):
            return await anyio.to_thread.run_sync(
                functools.partial(version_api.get_code, _request_timeout=self.timeout)
            )

    async def server_resources_for_group_version(self, group_version: GroupVersion):
        """Return the resources (name, kind, namespaced, verbs, ...) served
        for the given group version."""
        resource_list = await self._get_json(self.group_version_path(group_version))
        resources = resource_list.get('resources') or []
        if not isinstance(resources, list):
            raise StreamError(f'{group_version}: malformed resource list')
        return resources

    async def _resource(self, resource: GroupVersionResource):
        try:
            return self._resources[resource]
        except KeyError:
            pass
        for entry in await self.server_resources_for_group_version(resource.group_version):
            if entry.get('name') == resource.resource:
                break
        else:
            raise DiscoveryError(
                resource, f'{resource.group_version} does not serve {resource.resource}'
            )
        namespaced = bool(entry.get('namespaced'))
        if namespaced:
            create = create_namespaced_resource
        else:
            create = create_global_resource
        res = create(resource.group, resource.version, entry['kind'], resource.resource)
        log.debug('created generic resource %s for %s', entry['kind'], resource)
        self._resources[resource] = (res, namespaced)
        return self._resources[resource]

    @staticmethod
    def _unstructured(res, obj):
        obj = Unstructured(obj.to_dict())
        # List items carry neither apiVersion nor kind.
        info = lkr.api_info(res)
        obj.setdefault('apiVersion', info.resource.api_version)
        obj.setdefault('kind', info.resource.kind)
        return obj

    async def list(self, resource: GroupVersionResource, namespace=None, options=None):
        """List all objects. lightkube follows the continue tokens."""
        if options is None:
            options = ListOptions()
        res, namespaced = await self._resource(resource)
        if namespaced and not namespace:
            namespace = ALL_NAMESPACES
        items = []
        with _api_errors(f'list {resource}'):
            resource_list = self.client.list(
                res,
                namespace=namespace,
                chunk_size=options.chunk_size,
                labels=options.labels,
                fields=options.fields,
            )
            async for obj in resource_list:
                items.append(self._unstructured(res, obj))
            resource_version = resource_list.resourceVersion
        return ResourceList(items, resource_version=resource_version)

    async def watch(self, resource: GroupVersionResource, namespace=None,
            resource_version=None, options=None, timeout_seconds=None):
        """Yield `(event_type, obj)` tuples.

        lightkube reconnects on its own when the server ends a watch, so
        this only ends on errors or when the consumer closes it.
        """
        if options is None:
            options = ListOptions()
        res, namespaced = await self._resource(resource)
        if namespaced and not namespace:
            namespace = ALL_NAMESPACES
        events = self.client.watch(
            res,
            namespace=namespace,
            labels=options.labels,
            fields=options.fields,
            server_timeout=timeout_seconds,
            resource_version=resource_version,
        )
        async with contextlib.aclosing(events):
            with _api_errors(f'watch {resource}'):
                async for event_type, obj in events:
                    yield event_type, self._unstructured(res, obj)

    async def get(self, resource: GroupVersionResource, name, namespace=None):
        res, namespaced = await self._resource(resource)
        with _api_errors(f'get {resource} {name}'):
            obj = await self.client.get(res, name, namespace=namespace if namespaced else None)
        return self._unstructured(res, obj)

    async def create(self, resource: GroupVersionResource, obj, namespace=None, field_manager=None):
        res, namespaced = await self._resource(resource)
        with _api_errors(f'create {resource}'):
            created = await self.client.create(
                res.from_dict(dict(obj)),
                namespace=namespace if namespaced else None,
                field_manager=field_manager,
            )
        return self._unstructured(res, created)

    async def delete(self, resource: GroupVersionResource, name, namespace=None):
        res, namespaced = await self._resource(resource)
        with _api_errors(f'delete {resource} {name}'):
            await self.client.delete(res, name, namespace=namespace if namespaced else None)
