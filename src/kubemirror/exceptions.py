import json


__all__ = [
    'ApplyError',
    'ClusterError',
    'ConfigError',
    'ConnectivityError',
    'DiscoveryError',
    'Error',
    'FatalError',
    'HttpError',
    'IndexerConflict',
    'KindNotFound',
    'ObjectError',
    'QueueShutDown',
    'ResourceVersionTooOld',
    'StoreKeyError',
    'StreamError',
    'iterate_errors',
]


def iterate_errors(exc):
    """
    iterate over all non-exceptiongroup parts of an exception(group)
    """
    if isinstance(exc, BaseExceptionGroup):
        for e in exc.exceptions:
            yield from iterate_errors(e)
    else:
        yield exc


class FatalError(Exception):
    """A fatal error that we can not recover from."""


class Error(Exception):
    """Base class for all custom Exceptions."""

    def __init__(self, message=None):
        super().__init__(message)
        self.message = message

    def __str__(self):
        return self.__repr__()

    def __repr__(self):
        return f'{self.__class__.__name__}: {self.message}'


class ClusterError(Error):
    """Building a connection to a cluster failed at the given stage."""

    def __init__(self, message=None, stage=None):
        super().__init__(message)
        self.stage = stage

    def __repr__(self):
        if self.stage:
            return f'{self.__class__.__name__}: [{self.stage}] {self.message}'
        return super().__repr__()


class ConfigError(ClusterError):
    """Credentials or kubeconfig are malformed. Retrying will not help."""


class ConnectivityError(ClusterError):
    """The api server could not be reached or rejected us."""


class HttpError(Error):
    """The api server answered with a non-success status."""

    def __init__(self, http_method, url, status_code, message=None, reason=None):
        super().__init__(message)
        self.http_method = http_method
        self.url = url
        self.status_code = status_code
        self.reason = reason

    @classmethod
    def from_api_error(cls, error):
        """Build from a lightkube ApiError, which carries the parsed Status."""
        return cls(
            error.request.method,
            error.request.url,
            error.response.status_code,
            message=error.status.message,
            reason=error.status.reason,
        )

    @classmethod
    def from_api_exception(cls, error, http_method, url):
        """Build from a kubernetes client ApiException, whose body is the
        raw Status document."""
        message = None
        reason = error.reason
        try:
            status = json.loads(error.body or '')
        except (TypeError, ValueError):
            status = None
        if isinstance(status, dict):
            message = status.get('message')
            reason = status.get('reason') or reason
        return cls(http_method, url, error.status, message=message, reason=reason)

    def __str__(self):
        detail = self.message or self.reason
        if detail:
            return f'{self.status_code} {detail}'
        return f'{self.http_method} {self.url} returned {self.status_code}'

    def __repr__(self):
        return f'{self.__class__.__name__}: {self}'


class DiscoveryError(Error):
    """Mapping a kind to its collection failed."""

    def __init__(self, kind, message=None):
        super().__init__(message)
        self.kind = kind

    def __repr__(self):
        if self.message:
            return f'{self.__class__.__name__}: {self.kind}: {self.message}'
        return f'{self.__class__.__name__}: {self.kind}'


class KindNotFound(DiscoveryError):
    """The api server does not serve the given kind."""


class StreamError(Error):
    """Listing or watching failed. Handled by the watcher itself."""


class ResourceVersionTooOld(StreamError):
    """The resource version we tried to resume from has been compacted away."""


def _describe(obj):
    try:
        metadata = obj.get('metadata') or {}
        api_version = obj.get('apiVersion')
        kind = obj.get('kind')
        namespace = metadata.get('namespace')
        name = metadata.get('name')
    except AttributeError:
        return repr(obj)
    out = []
    if api_version is not None and kind is not None:
        out.append(f'{api_version}/{kind}')
    if namespace is not None:
        out.append(f'{namespace}/{name}')
    elif name is not None:
        out.append(name)
    return ' '.join(out)


class ObjectError(Error):
    def __init__(self, obj, message=None):
        super().__init__(message)
        self.obj = obj

    def __repr__(self):
        msg = _describe(self.obj)
        if self.message:
            msg = f'{msg}: {self.message}'
        return f'{self.__class__.__name__}: {msg}'


class StoreKeyError(ObjectError):
    pass


class ApplyError(ObjectError):
    """Creating a single object failed."""


class IndexerConflict(Error):
    pass


class QueueShutDown(Error):
    """The workqueue was stopped and has no more items."""
