import base64
import copy
import logging
import os

import anyio
import yaml
from anyio import TASK_STATUS_IGNORED
from anyio.abc import TaskStatus
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.config import ConfigException
from lightkube import AsyncClient, KubeConfig
from lightkube.core.exceptions import ConfigError as KubeConfigError

from .apply import Applier
from .cache.watcher import ResourceWatcher
from .discovery import KindResolver
from .dynamic import DynamicClient
from .exceptions import ConfigError, ConnectivityError, Error
from .resources import GroupVersionResource
from .scheme import SchemeRegistry
from .tasks import Lifecycle, Task


__all__ = [
    'AUTH_TYPE_IN_CLUSTER',
    'AUTH_TYPE_KUBECONFIG_BYTES',
    'AUTH_TYPE_TOKEN',
    'ClusterConnection',
    'connect_in_cluster',
    'connect_with_kubeconfig_bytes',
    'connect_with_secret_dir',
    'connect_with_token',
]

log = logging.getLogger(__name__)


AUTH_TYPE_TOKEN = 'TOKEN'
AUTH_TYPE_KUBECONFIG_BYTES = 'KUBECONFIG_BYTES'
AUTH_TYPE_IN_CLUSTER = 'IN_CLUSTER'

STAGE_TRANSPORT = 'transport'
STAGE_TYPED_CLIENT = 'typed-client'
STAGE_DYNAMIC_CLIENT = 'dynamic-client'
STAGE_CONNECTIVITY = 'connectivity'


class ClusterConnection(Task):
    """Everything needed to talk to one cluster.

    Holds a typed client (kubernetes) and a dynamic client (lightkube), a scheme
    registry of its own and the lifecycle every watcher of this connection
    is bound to. Use one of the `connect_*` functions to create one.

    The connection can optionally manage watchers in the background, for
    that it has to be started with `await task_group.start(connection)`.
    """

    def __init__(self, cluster_id, auth_type, configuration, typed_client, dynamic_client,
            kube_config=None):
        super().__init__()
        self.cluster_id = cluster_id
        self._auth_type = auth_type
        # kubernetes client Configuration of the typed client
        self.configuration = configuration
        # lightkube config of the dynamic client
        self.kube_config = kube_config
        self.typed_client = typed_client
        self.dynamic_client = dynamic_client
        self.scheme = SchemeRegistry()
        self.lifecycle = Lifecycle()
        self.resolver = KindResolver(dynamic_client)
        self._applier = Applier(dynamic_client, self.resolver)
        self._watchers = set()
        self._task_group = None
        self._closed = False

    def __repr__(self):
        return f'<ClusterConnection {self.cluster_id} {self._auth_type} {self.configuration.host}>'

    @property
    def auth_type(self):
        return self._auth_type

    def add_scheme(self, group_version, add_func):
        """Register the models of a group version, at most once.

        Returns True if `add_func` was called.
        """
        return self.scheme.add_scheme(group_version, add_func)

    def watcher(self, resource: GroupVersionResource, namespace=None, **kwargs):
        """Create a watcher for the given collection bound to this connection.

        The watcher still has to be started, either by the caller or by
        handing it to `add_watcher`.
        """
        kwargs.setdefault('lifecycle', self.lifecycle)
        return ResourceWatcher(self.dynamic_client, resource, namespace=namespace, **kwargs)

    async def add_watcher(self, watcher):
        """Let the connection run the watcher in the background."""
        if watcher in self._watchers:
            return
        self._watchers.add(watcher)
        if self._task_group is not None:
            await self._task_group.start(watcher)

    async def resolve(self, kind):
        return await self.resolver.resolve(kind)

    async def apply_one(self, obj, field_manager):
        return await self._applier.apply_one(obj, field_manager)

    async def apply_batch(self, objs, field_manager):
        return await self._applier.apply_batch(objs, field_manager)

    def stop(self):
        """Stop every watcher of this connection. Safe to call repeatedly."""
        if not self.lifecycle.cancelled:
            log.debug('stop %s', self)
        self.lifecycle.cancel()
        self._stop.set()

    async def __call__(self, task_status: TaskStatus[None] = TASK_STATUS_IGNORED):
        log.debug('starting %s', self)
        try:
            async with anyio.create_task_group() as tg:
                for watcher in list(self._watchers):
                    await tg.start(watcher)
                self._task_group = tg
                self._running.set()
                task_status.started()
                log.info('started %s', self)
                await self._stop.wait()
                log.debug('stopping %s', self)
        finally:
            self._task_group = None
            log.info('stopped %s', self)

    async def aclose(self):
        if self._closed:
            return
        self._closed = True
        self.stop()
        await self.dynamic_client.aclose()
        self.typed_client.close()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.aclose()


def _token_kubeconfig(server, token, ca_pem=None, tls_server_name=None, skip_tls_verify=False):
    cluster = {'server': server}
    if ca_pem:
        if isinstance(ca_pem, str):
            ca_pem = ca_pem.encode()
        cluster['certificate-authority-data'] = base64.b64encode(ca_pem).decode()
    if skip_tls_verify:
        cluster['insecure-skip-tls-verify'] = True
    if tls_server_name:
        cluster['tls-server-name'] = tls_server_name
    return {
        'apiVersion': 'v1',
        'kind': 'Config',
        'clusters': [{'name': 'cluster', 'cluster': cluster}],
        'users': [{'name': 'cluster', 'user': {'token': token}}],
        'contexts': [{
            'name': 'cluster',
            'context': {'cluster': 'cluster', 'user': 'cluster', 'namespace': 'default'},
        }],
        'current-context': 'cluster',
    }


def _override_tls_server_name(kubeconfig, tls_server_name, context=None):
    """Set the TLS server name of the cluster the selected context uses."""
    kubeconfig = copy.deepcopy(kubeconfig)
    context_name = context or kubeconfig.get('current-context')
    cluster_name = None
    for entry in kubeconfig.get('contexts') or []:
        if entry.get('name') == context_name:
            cluster_name = (entry.get('context') or {}).get('cluster')
    for entry in kubeconfig.get('clusters') or []:
        if entry.get('name') == cluster_name:
            entry.setdefault('cluster', {})['tls-server-name'] = tls_server_name
    return kubeconfig


def _load_kubeconfig(kubeconfig, context=None):
    configuration = k8s_client.Configuration()
    k8s_config.load_kube_config_from_dict(
        kubeconfig,
        context=context,
        client_configuration=configuration,
        persist_config=False,
    )
    kube_config = KubeConfig.from_dict(kubeconfig).get(context_name=context)
    return configuration, kube_config


def _load_in_cluster():
    configuration = k8s_client.Configuration()
    k8s_config.load_incluster_config(client_configuration=configuration)
    return configuration, KubeConfig.from_service_account().get()


async def _connect(cluster_id, auth_type, load_func, tls_server_name=None, check_server=True):
    """Build a connection stage by stage.

    Every stage wraps its failures in a ClusterError naming the stage.
    """
    log.debug('connecting to %s (%s)', cluster_id, auth_type)

    try:
        configuration, kube_config = await anyio.to_thread.run_sync(load_func)
    except (ConfigException, KubeConfigError, ValueError, TypeError, KeyError, OSError) as e:
        raise ConfigError(f'{cluster_id}: invalid configuration: {e}', stage=STAGE_TRANSPORT) from e
    if tls_server_name:
        configuration.tls_server_name = tls_server_name

    try:
        typed_client = k8s_client.ApiClient(configuration)
    except (ValueError, TypeError, OSError) as e:
        raise ConfigError(f'{cluster_id}: {e}', stage=STAGE_TYPED_CLIENT) from e

    try:
        dynamic_client = DynamicClient(AsyncClient(kube_config), typed_client)
    except (KubeConfigError, ValueError, TypeError, OSError) as e:
        typed_client.close()
        raise ConfigError(f'{cluster_id}: {e}', stage=STAGE_DYNAMIC_CLIENT) from e

    connection = ClusterConnection(
        cluster_id, auth_type, configuration, typed_client, dynamic_client,
        kube_config=kube_config,
    )

    if check_server:
        try:
            version = await dynamic_client.server_version()
        except Error as e:
            await connection.aclose()
            raise ConnectivityError(
                f'{cluster_id}: api server not reachable: {e}', stage=STAGE_CONNECTIVITY
            ) from e
        log.info('connected to %s, server version %s', cluster_id, version.git_version)
    else:
        log.info('created %s', connection)

    return connection


async def connect_with_token(cluster_id, server, token, ca_pem=None,
        tls_server_name=None, skip_tls_verify=False):
    """Connect with a bearer token.

    Connectivity is not verified, problems show up on first use.
    """
    kubeconfig = _token_kubeconfig(
        server,
        token,
        ca_pem=ca_pem,
        tls_server_name=tls_server_name,
        skip_tls_verify=skip_tls_verify,
    )
    return await _connect(
        cluster_id,
        AUTH_TYPE_TOKEN,
        lambda: _load_kubeconfig(kubeconfig),
        tls_server_name=tls_server_name,
        check_server=False,
    )


async def connect_with_secret_dir(cluster_id, secret_dir, server, tls_server_name=None):
    """Connect with the `token` and `ca.crt` of a mounted service account secret."""
    try:
        async with await anyio.open_file(os.path.join(secret_dir, 'token')) as f:
            token = (await f.read()).strip()
        async with await anyio.open_file(os.path.join(secret_dir, 'ca.crt'), 'rb') as f:
            ca_pem = await f.read()
    except OSError as e:
        raise ConfigError(f'{cluster_id}: can not read secret: {e}', stage=STAGE_TRANSPORT) from e
    return await connect_with_token(
        cluster_id,
        server,
        token,
        ca_pem=ca_pem,
        tls_server_name=tls_server_name,
    )


async def connect_with_kubeconfig_bytes(cluster_id, kubeconfig, tls_server_name=None, context=None):
    """Connect with a complete kubeconfig document and verify the server answers."""
    try:
        config_dict = yaml.safe_load(kubeconfig)
    except yaml.YAMLError as e:
        raise ConfigError(f'{cluster_id}: kubeconfig is not valid yaml: {e}', stage=STAGE_TRANSPORT) from e
    if not isinstance(config_dict, dict):
        raise ConfigError(f'{cluster_id}: kubeconfig is not a mapping', stage=STAGE_TRANSPORT)
    if tls_server_name:
        config_dict = _override_tls_server_name(config_dict, tls_server_name, context=context)
    return await _connect(
        cluster_id,
        AUTH_TYPE_KUBECONFIG_BYTES,
        lambda: _load_kubeconfig(config_dict, context=context),
        tls_server_name=tls_server_name,
    )


async def connect_in_cluster(cluster_id):
    """Connect with the service account of the pod we run in."""
    return await _connect(cluster_id, AUTH_TYPE_IN_CLUSTER, _load_in_cluster)
