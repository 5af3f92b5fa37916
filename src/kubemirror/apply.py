import dataclasses
import logging
import typing

from .exceptions import ApplyError, Error
from .resources import GroupVersionKind, Unstructured


__all__ = [
    'ApplyResult',
    'Applier',
]

log = logging.getLogger(__name__)


@dataclasses.dataclass
class ApplyResult:
    kind: GroupVersionKind
    success: bool
    error: Exception = None
    result_object: Unstructured = None

    def __repr__(self):
        obj = self.result_object
        state = 'ok' if self.success else f'failed: {self.error}'
        return f'<ApplyResult {obj!r} {state}>'


def _failed(kind, obj, cause, message=None):
    error = ApplyError(obj, message or str(cause))
    error.__cause__ = cause
    return ApplyResult(kind=kind, success=False, error=error, result_object=obj)


class Applier:
    """Create objects through the dynamic client.

    This only ever creates. Objects that already exist are reported as
    failed, merging or patching them is up to the caller.
    """

    def __init__(self, api_client, resolver):
        self.api_client = api_client
        self.resolver = resolver

    async def apply_one(self, obj, field_manager, _resources=None) -> ApplyResult:
        try:
            obj = Unstructured(obj)
        except (TypeError, ValueError) as e:
            return _failed(None, obj, e, 'not a kubernetes object')
        try:
            kind = obj.group_version_kind
        except (TypeError, ValueError) as e:
            return _failed(None, obj, e, 'object has no valid apiVersion')
        if not kind.kind:
            return _failed(kind, obj, ValueError('missing kind'), 'object has no kind')

        try:
            if _resources is not None and kind in _resources:
                resource = _resources[kind]
            else:
                resource = await self.resolver.resolve(kind)
                if _resources is not None:
                    _resources[kind] = resource
            result = await self.api_client.create(
                resource,
                obj,
                namespace=obj.namespace,
                field_manager=field_manager,
            )
        except Error as e:
            log.debug('failed to create %r: %s', obj, e)
            return _failed(kind, obj, e)

        log.debug('created %r', result)
        return ApplyResult(kind=kind, success=True, result_object=result)

    async def apply_batch(self, objs, field_manager) -> typing.Tuple[list, list]:
        """Create every object in order. A failure does not stop the batch.

        Returns the successful and the failed results, both in input order.
        """
        succeeded = []
        failed = []
        # Kinds are only resolved once per batch.
        resources = {}
        for obj in objs:
            result = await self.apply_one(obj, field_manager, _resources=resources)
            if result.success:
                succeeded.append(result)
            else:
                failed.append(result)
        log.info(
            'applied %d objects, %d succeeded, %d failed',
            len(succeeded) + len(failed), len(succeeded), len(failed),
        )
        return succeeded, failed
