from ..exceptions import StoreKeyError


def meta_namespace_key(namespace, name):
    """Compose a cache key: `namespace/name`, or `name` if not namespaced."""
    if namespace:
        return f'{namespace}/{name}'
    return name


def split_meta_namespace_key(key):
    """Inverse of `meta_namespace_key`, returns `(namespace, name)`.

    The namespace is None for keys of cluster scoped objects.
    """
    namespace, _, name = key.rpartition('/')
    return namespace or None, name


def meta_namespace_key_func(obj):
    """Cache key of an unstructured object."""
    try:
        metadata = obj['metadata']
        name = metadata['name']
        namespace = metadata.get('namespace')
    except (KeyError, TypeError, AttributeError) as e:
        raise StoreKeyError(obj, 'object has no name') from e
    if not name:
        raise StoreKeyError(obj, 'object has no name')
    return meta_namespace_key(namespace, name)


class Store:
    """Objects by cache key.

    Only the watcher that owns a store writes to it. Readers get the stored
    objects themselves, copying them is up to the caller.
    """

    def __init__(self, key_func=None):
        self.key_func = key_func or meta_namespace_key_func
        self._items = {}

    def __repr__(self):
        return f'<{self.__class__.__name__} {len(self)} objects>'

    def __len__(self):
        return len(self._items)

    def __contains__(self, key):
        return key in self._items

    def __getitem__(self, key):
        return self._items[key]

    def __setitem__(self, key, obj):
        self._items[key] = obj

    def __delitem__(self, key):
        del self._items[key]

    def add(self, obj):
        self[self.key_func(obj)] = obj

    # Whether a key is new or known makes no difference for storage.
    update = add

    def delete(self, obj):
        del self[self.key_func(obj)]

    def get(self, obj):
        """Return the stored object with the key of `obj`. Raises KeyError."""
        return self[self.key_func(obj)]

    def get_by_key(self, key, default=None):
        return self._items.get(key, default)

    def keys(self):
        return self._items.keys()

    def list(self):
        """Snapshot of all stored objects."""
        return list(self._items.values())

    def clear(self):
        # Item by item, so subclasses see every removal.
        for key in list(self.keys()):
            del self[key]
