from .store import Store, meta_namespace_key, meta_namespace_key_func, split_meta_namespace_key
from .index import NAMESPACE_INDEX, Indexer
from .watcher import ResourceWatcher

__all__ = [
    'Indexer',
    'NAMESPACE_INDEX',
    'ResourceWatcher',
    'Store',
    'meta_namespace_key',
    'meta_namespace_key_func',
    'split_meta_namespace_key',
]
