import logging

from .exceptions import DiscoveryError, Error, KindNotFound
from .resources import GroupVersionKind, GroupVersionResource


__all__ = [
    'KindResolver',
]

log = logging.getLogger(__name__)


class KindResolver:
    """Map a kind to the collection that serves it using server discovery.

    Nothing is cached, every call asks the server. The answer changes when
    custom resource definitions are installed or removed.
    """

    def __init__(self, api_client):
        self.api_client = api_client

    async def resolve(self, kind: GroupVersionKind) -> GroupVersionResource:
        try:
            resources = await self.api_client.server_resources_for_group_version(
                kind.group_version
            )
        except Error as e:
            raise DiscoveryError(kind, f'discovery failed: {e}') from e

        for resource in resources:
            name = resource.get('name', '')
            # Subresources like `deployments/scale` have their own kind.
            if '/' in name:
                continue
            if resource.get('kind') == kind.kind:
                gvr = GroupVersionResource(kind.group, kind.version, name)
                log.debug('resolved %s to %s', kind, gvr)
                return gvr

        raise KindNotFound(kind, f'{kind.group_version} does not serve {kind.kind}')
