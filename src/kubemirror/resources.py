import dataclasses

import yaml


__all__ = [
    'GroupVersion',
    'GroupVersionKind',
    'GroupVersionResource',
    'Unstructured',
    'is_same_version',
    'objects_to_yaml',
]


def _split_api_version(api_version):
    if not api_version:
        raise ValueError(f'invalid apiVersion: {api_version!r}')
    if '/' in api_version:
        group, version = api_version.split('/', 1)
    else:
        # The core group has no name: `v1`.
        group, version = '', api_version
    return group, version


@dataclasses.dataclass(frozen=True)
class GroupVersion:
    group: str
    version: str

    @classmethod
    def parse(cls, api_version):
        return cls(*_split_api_version(api_version))

    @property
    def api_version(self):
        if self.group:
            return f'{self.group}/{self.version}'
        return self.version

    def __str__(self):
        return self.api_version


@dataclasses.dataclass(frozen=True)
class GroupVersionKind:
    """Abstract identity of a resource type."""
    group: str
    version: str
    kind: str

    @classmethod
    def from_api_version(cls, api_version, kind):
        group, version = _split_api_version(api_version)
        return cls(group, version, kind)

    @classmethod
    def from_object(cls, obj):
        return cls.from_api_version(obj.get('apiVersion'), obj.get('kind'))

    @property
    def group_version(self):
        return GroupVersion(self.group, self.version)

    @property
    def api_version(self):
        return self.group_version.api_version

    def __str__(self):
        return f'{self.api_version}/{self.kind}'


@dataclasses.dataclass(frozen=True)
class GroupVersionResource:
    """A concrete collection on the api server, e.g. `apps/v1/deployments`."""
    group: str
    version: str
    resource: str

    @property
    def group_version(self):
        return GroupVersion(self.group, self.version)

    @property
    def api_version(self):
        return self.group_version.api_version

    def __str__(self):
        return f'{self.api_version}/{self.resource}'


class Unstructured(dict):
    """A kubernetes object as plain decoded JSON.

    Only the fields we need to address, key and order objects get
    accessors, everything else is left as is.
    """

    def __repr__(self):
        out = []
        out.append(f'{self.api_version}/{self.kind}')
        if self.namespace is not None:
            out.append(f'{self.namespace}/{self.name}')
        elif self.name is not None:
            out.append(f'{self.name}')
        if self.resource_version is not None:
            out.append(self.resource_version)
        ident = ' '.join(out)
        return f'<Object {ident}>'

    @property
    def api_version(self):
        return self.get('apiVersion')

    @property
    def kind(self):
        return self.get('kind')

    @property
    def metadata(self):
        return self.get('metadata') or {}

    @property
    def name(self):
        return self.metadata.get('name')

    @property
    def namespace(self):
        # The api server omits the field or sends an empty string for
        # cluster scoped objects.
        return self.metadata.get('namespace') or None

    @property
    def resource_version(self):
        return self.metadata.get('resourceVersion')

    @property
    def uid(self):
        return self.metadata.get('uid')

    @property
    def group_version_kind(self):
        return GroupVersionKind.from_object(self)


def is_same_version(o1, o2):
    o1_resource_version = o1.resource_version
    o2_resource_version = o2.resource_version
    return (
        o1_resource_version is not None and o1_resource_version == o2_resource_version
    )


class YamlDumper(yaml.SafeDumper):
    def ignore_aliases(self, data):
        return True


def _str_presenter(dumper, data):
    """
    Preserve multiline strings when dumping yaml.
    https://github.com/yaml/pyyaml/issues/240
    """
    if '\n' in data:
        # Remove trailing spaces messing out the output.
        block = '\n'.join([line.rstrip() for line in data.splitlines()])
        if data.endswith('\n'):
            block += '\n'
        return dumper.represent_scalar('tag:yaml.org,2002:str', block, style='|')
    return dumper.represent_scalar('tag:yaml.org,2002:str', data)


yaml.add_representer(str, _str_presenter, Dumper=YamlDumper)
yaml.add_representer(Unstructured, YamlDumper.represent_dict, Dumper=YamlDumper)


def objects_to_yaml(*objects):
    """Serialize objects to a multi document yaml stream kubectl understands.

    Keys keep their order and no alias references are emitted.
    """
    return yaml.dump_all(objects, sort_keys=False, Dumper=YamlDumper)
