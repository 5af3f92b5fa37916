import logging
import threading

from .resources import GroupVersion, GroupVersionKind


__all__ = [
    'SchemeRegistry',
]

log = logging.getLogger(__name__)


class SchemeRegistry:
    """Maps kinds of a connection to typed kubernetes client models.

    Every connection owns its own registry. Registration of a group version
    happens at most once, also with concurrent callers.
    """

    def __init__(self):
        # Reentrant so registration callbacks can call `register`.
        self._lock = threading.RLock()
        self._versions = {}

    def __repr__(self):
        versions = sorted(str(gv) for gv in self._versions)
        return f'<SchemeRegistry {versions}>'

    def __contains__(self, kind: GroupVersionKind):
        with self._lock:
            return kind.kind in self._versions.get(kind.group_version, {})

    def is_version_registered(self, group_version: GroupVersion):
        with self._lock:
            return group_version in self._versions

    def register(self, group_version: GroupVersion, kind, model):
        """Register a model class (e.g. `kubernetes.client.V1Pod`) for a kind."""
        with self._lock:
            self._versions.setdefault(group_version, {})[kind] = model

    def add_scheme(self, group_version: GroupVersion, add_func):
        """Call `add_func(registry)` unless the group version is known already.

        Returns True if `add_func` was called. The group version only counts
        as registered once `add_func` returned without error.
        """
        with self._lock:
            if group_version in self._versions:
                return False
            log.debug('adding scheme %s', group_version)
            try:
                add_func(self)
            except Exception:
                self._versions.pop(group_version, None)
                raise
            # Mark the version registered even if add_func added no kinds.
            self._versions.setdefault(group_version, {})
            return True

    def load(self, api_version, kind):
        """Return the registered model for the given apiVersion and kind."""
        group_version = GroupVersion.parse(api_version)
        with self._lock:
            try:
                return self._versions[group_version][kind]
            except KeyError as e:
                raise KeyError(f'{api_version}/{kind} is not registered') from e

    def decode(self, obj):
        """Convert an unstructured object to its registered model.

        Objects of unregistered kinds are returned unchanged.
        """
        try:
            model = self.load(obj.get('apiVersion'), obj.get('kind'))
        except (KeyError, ValueError):
            return obj
        return model.from_dict(dict(obj))
