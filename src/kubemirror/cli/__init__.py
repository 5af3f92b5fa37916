import functools
import logging
import os
import pathlib
import signal
import sys

from typing import List
from typing_extensions import Annotated

import anyio
import uvloop
import yaml
from anyio import open_signal_receiver
from anyio.abc import CancelScope

import typer.core

typer.core.rich = None

import typer  # noqa: E402

from ..connection import connect_in_cluster, connect_with_kubeconfig_bytes  # noqa: E402
from ..exceptions import ConfigError, Error, iterate_errors  # noqa: E402
from ..handlers import nonblocking  # noqa: E402
from ..resources import (  # noqa: E402
    GroupVersion,
    GroupVersionKind,
    GroupVersionResource,
    objects_to_yaml,
)


app = typer.Typer(add_completion=False)

log = logging.getLogger(__name__)


async def signal_handler(scope: CancelScope):
    with open_signal_receiver(signal.SIGINT, signal.SIGTERM) as signals:
        async for signum in signals:
            if signum == signal.SIGINT:
                print('Ctrl+C pressed!', file=sys.stderr)
            else:
                print('Terminated!', file=sys.stderr)

            scope.cancel()
            return


def _default_kubeconfig():
    paths = os.environ.get('KUBECONFIG', '').split(os.pathsep)
    # Only the first file of a KUBECONFIG list is used.
    if paths[0]:
        return pathlib.Path(paths[0])
    return pathlib.Path('~/.kube/config').expanduser()


async def _connect(options):
    if options['in_cluster']:
        return await connect_in_cluster('in-cluster')
    path = options['kubeconfig'] or _default_kubeconfig()
    try:
        kubeconfig = pathlib.Path(path).expanduser().read_bytes()
    except OSError as e:
        raise ConfigError(f'can not read kubeconfig: {e}', stage='transport') from e
    return await connect_with_kubeconfig_bytes(
        str(path),
        kubeconfig,
        tls_server_name=options['tls_server_name'],
        context=options['context'],
    )


def _run(func, *args, **kwargs):
    try:
        return anyio.run(
            functools.partial(func, *args, **kwargs),
            backend_options={'loop_factory': uvloop.new_event_loop},
        )
    except (Error, ExceptionGroup) as exc:
        errors = list(iterate_errors(exc))
        if not all(isinstance(e, Error) for e in errors):
            raise
        for e in errors:
            print(f'error: {e}', file=sys.stderr)
        raise typer.Exit(code=1)


@app.callback()
def main(
    ctx: typer.Context,
    verbose: Annotated[bool, typer.Option('--verbose', '-v')] = False,
    debug: Annotated[bool, typer.Option('--debug', '-d')] = False,
    kubeconfig: Annotated[
        pathlib.Path,
        typer.Option(help='Path to the kubeconfig file. [default: $KUBECONFIG or ~/.kube/config]'),
    ] = None,
    context: Annotated[
        str, typer.Option(help='The kubeconfig context to use.')
    ] = None,
    in_cluster: Annotated[
        bool, typer.Option('--in-cluster', help='Use the service account of the pod we run in.')
    ] = False,
    tls_server_name: Annotated[
        str, typer.Option(help='Server name to use for TLS verification.')
    ] = None,
) -> None:
    """
    Mirror and modify kubernetes resources.
    """
    setattr(ctx, 'obj', {})

    logging.basicConfig(
        level=logging.ERROR,
        format='%(levelname)s: %(module)s: %(message)s',
        stream=sys.stderr,
    )
    log = logging.getLogger('kubemirror')
    log_level = logging.ERROR
    if verbose:
        log_level = logging.INFO
    elif debug:
        log_level = logging.DEBUG
    log.setLevel(log_level)
    ctx.obj['log_level'] = log_level
    ctx.obj['log'] = log
    ctx.obj['kubeconfig'] = kubeconfig
    ctx.obj['context'] = context
    ctx.obj['in_cluster'] = in_cluster
    ctx.obj['tls_server_name'] = tls_server_name


def _printer(event_type, output):
    @nonblocking
    def show(*objs):
        obj = objs[-1]
        if output == 'yaml':
            print(f'# {event_type}')
            print(objects_to_yaml(obj), end='')
        else:
            print(f'{event_type} {obj.api_version}/{obj.kind} {obj.namespace or ""} {obj.name}')

    return show


async def _watch(options, api_version, resource, namespace, output):
    group_version = GroupVersion.parse(api_version)
    gvr = GroupVersionResource(group_version.group, group_version.version, resource)
    async with await _connect(options) as connection:
        watcher = connection.watcher(gvr, namespace=namespace)
        watcher.add_event_handler(
            on_add=_printer('ADDED', output),
            on_update=_printer('MODIFIED', output),
            on_delete=_printer('DELETED', output),
        )
        async with anyio.create_task_group() as tg:
            tg.start_soon(signal_handler, tg.cancel_scope)
            await tg.start(watcher)
            log.info('watching %s', watcher)


@app.command(name='watch', short_help='Print changes of a resource collection')
def watch(
    ctx: typer.Context,
    api_version: Annotated[str, typer.Argument(help='e.g. v1 or apps/v1')],
    resource: Annotated[str, typer.Argument(help='Plural resource name, e.g. pods')],
    namespace: Annotated[
        str, typer.Option('--namespace', '-n', help='Only watch the given namespace.')
    ] = None,
    output: Annotated[
        str, typer.Option('--output', '-o', help='Output format: name or yaml.')
    ] = 'name',
) -> None:
    if output not in ('name', 'yaml'):
        raise typer.BadParameter(f'unknown output format: {output}', param_hint='--output')
    _run(_watch, ctx.obj, api_version, resource, namespace, output)


async def _resolve(options, api_version, kind):
    async with await _connect(options) as connection:
        return await connection.resolve(GroupVersionKind.from_api_version(api_version, kind))


@app.command(name='resolve', short_help='Print the collection that serves a kind')
def resolve(
    ctx: typer.Context,
    api_version: Annotated[str, typer.Argument(help='e.g. v1 or apps/v1')],
    kind: Annotated[str, typer.Argument(help='e.g. Deployment')],
) -> None:
    gvr = _run(_resolve, ctx.obj, api_version, kind)
    print(gvr.resource)


def _load_documents(paths):
    objs = []
    for path in paths:
        try:
            with open(path) as f:
                objs.extend(doc for doc in yaml.safe_load_all(f) if doc is not None)
        except (OSError, yaml.YAMLError) as e:
            raise typer.BadParameter(f'{path}: {e}', param_hint='FILES') from e
    return objs


async def _apply(options, objs, field_manager):
    async with await _connect(options) as connection:
        return await connection.apply_batch(objs, field_manager)


@app.command(name='apply', short_help='Create all objects of the given yaml files')
def apply(
    ctx: typer.Context,
    files: Annotated[List[pathlib.Path], typer.Argument(help='Yaml files, may contain several documents.')],
    field_manager: Annotated[
        str, typer.Option(help='Name of the actor making the change.')
    ] = 'kubemirror',
) -> None:
    objs = _load_documents(files)
    succeeded, failed = _run(_apply, ctx.obj, objs, field_manager)
    for result in succeeded:
        print(f'created {result.result_object!r}')
    for result in failed:
        print(f'failed {result.error}', file=sys.stderr)
    if failed:
        raise typer.Exit(code=1)


if __name__ == '__main__':
    app()
