from ..exceptions import IndexerConflict
from .store import Store


NAMESPACE_INDEX = 'namespace'


def index_by_namespace(obj):
    # Cluster scoped objects all end up below the empty namespace.
    namespace = (obj.get('metadata') or {}).get('namespace') or ''
    return [namespace]


class IndexView:
    """Read-only mapping of index value to the objects that produced it."""

    def __init__(self, indexer, index_name, resource=None):
        self.indexer = indexer
        self.index_name = index_name
        self.resource = resource

    def __repr__(self):
        if self.resource:
            return f'<IndexView {self.resource} {self.index_name}>'
        return f'<IndexView {self.index_name}>'

    def __getitem__(self, value):
        keys = self.indexer._indices[self.index_name][value]
        return [self.indexer[key] for key in keys]

    def __contains__(self, value):
        return value in self.indexer._indices[self.index_name]

    def __len__(self):
        return len(self.indexer._indices[self.index_name])

    def get(self, value, default=None):
        if value in self:
            return self[value]
        return default

    def keys(self):
        return list(self.indexer._indices[self.index_name])

    def items(self):
        return [(value, self[value]) for value in self.keys()]

    def values(self):
        return [self[value] for value in self.keys()]


class Indexer(Store):
    """A store that keeps secondary indices over its objects.

    Index functions take an object and return a list of index values.
    They must be deterministic and must not modify the object.
    The namespace index is always there.
    """

    def __init__(self, key_func=None, indexers=None):
        super().__init__(key_func=key_func)
        # index name -> index function
        self._indexers = {}
        # index name -> index value -> set of keys
        self._indices = {}
        self.add_indexers({NAMESPACE_INDEX: index_by_namespace})
        if indexers:
            self.add_indexers(indexers)

    def __setitem__(self, key, obj):
        old = self._items.get(key)
        self._items[key] = obj
        for name in self._indexers:
            self._reindex(name, key, old, obj)

    def __delitem__(self, key):
        old = self._items.pop(key, None)
        if old is None:
            return
        for name in self._indexers:
            self._reindex(name, key, old, None)

    def _values(self, name, obj):
        if obj is None:
            return set()
        return set(self._indexers[name](obj))

    def _reindex(self, name, key, old, new):
        old_values = self._values(name, old)
        new_values = self._values(name, new)
        if old_values == new_values:
            return
        index = self._indices[name]
        for value in old_values - new_values:
            keys = index.get(value)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del index[value]
        for value in new_values - old_values:
            index.setdefault(value, set()).add(key)

    def add_indexers(self, indexers):
        conflicts = sorted(set(self._indexers) & set(indexers))
        if conflicts:
            raise IndexerConflict(f'indexers already registered: {conflicts}')
        for name, index_func in indexers.items():
            self._indexers[name] = index_func
            self._indices[name] = {}
            # Objects stored before the indexer was added.
            for key, obj in self._items.items():
                self._reindex(name, key, None, obj)

    def index(self, index_name):
        """Decorator that registers an index function under the given name."""

        def decorator(f):
            self.add_indexers({index_name: f})
            return f

        return decorator

    def get_index(self, index_name, resource=None):
        if index_name not in self._indexers:
            raise KeyError(index_name)
        return IndexView(self, index_name, resource=resource)

    def by_index(self, index_name, value):
        """Return all objects whose index function yielded the given value."""
        keys = self._indices[index_name].get(value, ())
        return [self._items[key] for key in keys]
