"""Main CLI entrypoint for Stackup."""

import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from ..builder import Builder
from ..engines import LocalEngine, get_engine
from ..errors import StackupError
from ..events import EventTypes, emit_event, read_events, tail_events
from ..ids import new_run_id
from ..labels import parse_user_labels
from ..manifest import (
    derive_connection_string, find_manifest, load_manifest, plan_batches, render_manifest,
    validate_manifest,
)
from ..obs.status import StatusDeriver
from ..recipes import get_template, list_templates, render_recipe, select_template
from ..smoke import run_smoke_test, smoke_url, wait_for_port
from ..state import (
    create_run_dir, get_engine_name, get_log_level, get_run_dir, list_runs, read_outputs_json,
    read_run_json, run_exists, write_run_json,
)
from ..topology import BringUpResult, TopologyManager

logger = logging.getLogger(__name__)


@click.group()
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.option('-v', '--verbose', is_flag=True, help='Log debug output to stderr')
@click.option('--engine', envvar='STACKUP_ENGINE', default=None,
              type=click.Choice(['docker', 'local']), help='Container engine')
@click.pass_context
def main(ctx, output_json, verbose, engine):
    """Stackup - build images and bring up multi-service topologies."""
    ctx.ensure_object(dict)
    ctx.obj['json'] = output_json
    ctx.obj['engine'] = engine or get_engine_name()
    logging.basicConfig(
        level=logging.DEBUG if verbose else get_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _json_output(data: Any) -> None:
    click.echo(json.dumps(data, indent=None, default=str))


def _human_output(message: str) -> None:
    if not click.get_current_context().obj.get('json', False):
        click.echo(message)


def _fail(error: StackupError, exit_code: int = 1) -> None:
    """Report a StackupError and exit."""
    ctx = click.get_current_context()
    if ctx.obj.get('json'):
        _json_output({'error': error.to_dict()})
    else:
        click.echo(f"Error: {error.message}", err=True)
        errors = getattr(error, 'errors', None) or []
        for item in errors[1:]:
            click.echo(f"  - {item}", err=True)
        if error.hint:
            click.echo(f"Hint: {error.hint}", err=True)
    ctx.exit(exit_code)


def _manifest_option(func):
    return click.option('-f', '--file', 'manifest_path', default=None,
                        help='Manifest file (default: compose.yaml in the current directory)')(func)


def _load(manifest_path: Optional[str], project: Optional[str] = None):
    return load_manifest(manifest_path or find_manifest("."), project=project)


def _unknown_run(run_id: str) -> None:
    ctx = click.get_current_context()
    message = f"Run {run_id} not found"
    if ctx.obj.get('json'):
        _json_output({'error': {'code': 'unknown_run', 'message': message}})
    else:
        click.echo(f"Error: {message}", err=True)
    ctx.exit(2)


@main.command()
@_manifest_option
@click.option('--no-recipes', is_flag=True, help='Skip reading build recipes')
@click.pass_context
def validate(ctx, manifest_path, no_recipes):
    """Check a manifest for errors and warnings."""
    try:
        manifest = _load(manifest_path)
    except StackupError as e:
        _fail(e)
        return
    report = validate_manifest(manifest, check_recipes=not no_recipes)

    if ctx.obj['json']:
        _json_output({'project': manifest.project, **report.to_dict()})
    else:
        for error in report.errors:
            click.echo(click.style("error: ", fg='red') + error)
        for warning in report.warnings:
            click.echo(click.style("warning: ", fg='yellow') + warning)
        if report.ok:
            click.echo(f"{manifest.project}: {len(manifest.services)} services, manifest OK")
    ctx.exit(0 if report.ok else 1)


@main.command()
@_manifest_option
@click.pass_context
def plan(ctx, manifest_path):
    """Show the order services would start in."""
    try:
        manifest = _load(manifest_path)
        batches = plan_batches(manifest)
    except StackupError as e:
        _fail(e)
        return

    if ctx.obj['json']:
        _json_output({'project': manifest.project, 'batches': batches})
        return
    for index, batch in enumerate(batches, 1):
        click.echo(f"{index}. {', '.join(batch)}")
        for name in batch:
            svc = manifest.service(name)
            source = f"build {svc.build.recipe_path()}" if svc.build else f"image {svc.image}"
            click.echo(f"     {name}: {source}")


@main.command()
@click.argument('what', type=click.Choice(['compose', 'recipe']))
@click.argument('service', required=False)
@_manifest_option
@click.pass_context
def render(ctx, what, service, manifest_path):
    """Print the normalized manifest, or a service's parsed recipe."""
    try:
        manifest = _load(manifest_path)
        if what == 'compose':
            click.echo(render_manifest(manifest), nl=False)
            return
        if not service:
            raise click.UsageError("render recipe needs a SERVICE")
        if service not in manifest.services:
            raise click.UsageError(f"Unknown service: {service}")
        svc = manifest.service(service)
        if svc.build is None:
            raise click.UsageError(f"Service '{service}' has no build configuration")
        recipe = Builder(get_engine(ctx.obj['engine'])).load_recipe(manifest, svc)
        click.echo(render_recipe(recipe), nl=False)
    except StackupError as e:
        _fail(e)


@main.command()
@click.argument('name', required=False)
@click.option('--context', 'context_dir', default='.', type=click.Path(file_okay=False),
              help='Build context the template targets')
@click.option('--arg', 'build_args', multiple=True, help='Build argument to thread through both stages')
@click.option('--binary', default=None, help='Artifact name (default: from the project manifest)')
@click.option('--port', type=int, default=None, help='Port to EXPOSE')
@click.option('-o', '--output', type=click.Path(dir_okay=False), help='Write the recipe to a file')
@click.option('--list', 'list_only', is_flag=True, help='List available templates')
@click.pass_context
def template(ctx, name, context_dir, build_args, binary, port, output, list_only):
    """Render a multi-stage recipe template."""
    if list_only:
        templates = list_templates()
        if ctx.obj['json']:
            _json_output(templates)
        else:
            for key, description in templates.items():
                click.echo(f"{key:8} {description}")
        return

    chosen = get_template(name) if name else select_template(context_dir)
    if chosen is None:
        raise click.UsageError(
            f"Unknown template '{name}'" if name else f"No template applies to {context_dir}"
        )

    text = chosen.render(context_dir, list(build_args), binary=binary, port=port)
    if output:
        Path(output).write_text(text)
        _human_output(f"Wrote {chosen.name} recipe to {output}")
    else:
        click.echo(text, nl=False)


@main.command()
@click.argument('services', nargs=-1)
@_manifest_option
@click.pass_context
def build(ctx, services, manifest_path):
    """Build images for services that declare a recipe."""
    try:
        manifest = _load(manifest_path)
        engine = get_engine(ctx.obj['engine'])
    except StackupError as e:
        _fail(e)
        return

    names = list(services) or [n for n, s in manifest.services.items() if s.build]
    unknown = [n for n in names if n not in manifest.services]
    if unknown:
        raise click.UsageError(f"Unknown service(s): {', '.join(unknown)}")

    builder = Builder(engine)
    results = {}
    for name in names:
        svc = manifest.service(name)
        if svc.build is None:
            _human_output(f"{name}: uses image {svc.image}, nothing to build")
            continue
        try:
            image = builder.build_service(manifest, svc)
        except StackupError as e:
            _fail(e)
            return
        results[name] = {'tag': image.ref, 'digest': image.digest, 'command': image.default_command}
        _human_output(f"{name}: built {image.ref} ({image.digest[:19]})")

    if ctx.obj['json']:
        _json_output(results)


@main.command()
@_manifest_option
@click.option('-p', '--project', default=None, help='Project name override')
@click.option('--no-build', is_flag=True, help='Use existing images for services with a recipe')
@click.option('--smoke', is_flag=True, help='After bring-up, check published ports accept connections')
@click.option('--smoke-path', default=None, help='HTTP path to probe on every published port')
@click.option('--smoke-timeout', default=30.0, type=float, help='Seconds to wait per published port')
@click.option('--label', 'labels', multiple=True, help='Extra container label key=value')
@click.option('--workers', default=4, type=int, help='Services started concurrently per batch')
@click.pass_context
def up(ctx, manifest_path, project, no_build, smoke, smoke_path, smoke_timeout, labels, workers):
    """Build and start every service in dependency order."""
    try:
        extra_labels = parse_user_labels(list(labels))
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint='--label')

    try:
        manifest = _load(manifest_path, project)
        engine = get_engine(ctx.obj['engine'])
    except StackupError as e:
        _fail(e)
        return

    run_id = new_run_id()
    create_run_dir(run_id)
    write_run_json(run_id, str(Path(manifest.path).resolve()), manifest.project, ctx.obj['engine'])
    emit_event(run_id, EventTypes.INIT, {'project': manifest.project, 'engine': ctx.obj['engine']})
    _human_output(f"Run {run_id}: bringing up {manifest.project}")

    manager = TopologyManager(manifest, engine, run_id=run_id, max_workers=workers,
                              extra_labels=extra_labels)
    try:
        result = manager.up(build=not no_build)
    except StackupError as e:
        emit_event(run_id, EventTypes.ERROR, e.to_dict())
        _fail(e)
        return

    smoke_ok = True
    if (smoke or smoke_path) and not result.cancelled:
        smoke_ok = _run_smoke(run_id, engine, result, smoke_path, smoke_timeout)

    if ctx.obj['json']:
        _json_output(result.to_dict())
    else:
        _print_result(result)

    ctx.exit(0 if result.ok and smoke_ok else 1)


def _run_smoke(run_id: str, engine, result: BringUpResult, path: Optional[str], timeout: float) -> bool:
    ok = True
    for service, endpoints in result.endpoints.items():
        for endpoint in endpoints:
            host, port = endpoint.rsplit(":", 1)
            if isinstance(engine, LocalEngine):
                passed = engine.accepts_connections(int(port))
                detail = "accepting connections" if passed else "not accepting connections"
            elif path:
                outcome = run_smoke_test(smoke_url(int(port), host), [{'path': path}],
                                         max_retries=max(1, int(timeout // 2)))
                passed, detail = outcome.success, outcome.message
            else:
                passed = wait_for_port(host, int(port), timeout=timeout)
                detail = "accepting connections" if passed else f"no connection within {timeout}s"

            event = EventTypes.SMOKE_OK if passed else EventTypes.SMOKE_FAIL
            emit_event(run_id, event, {'service': service, 'endpoint': endpoint, 'detail': detail})
            _human_output(f"  smoke {service} {endpoint}: {detail}")
            ok = ok and passed
    return ok


def _print_result(result: BringUpResult) -> None:
    colors = {'running': 'green', 'failed': 'red', 'waiting': 'yellow'}
    for name, state in result.states.items():
        line = f"  {name:16} {click.style(state.value, fg=colors.get(state.value, 'white'))}"
        if name in result.errors:
            line += f"  {result.errors[name]['message']}"
        elif name in result.blocked:
            line += f"  (waiting on {', '.join(result.blocked[name])})"
        click.echo(line)
    for name, endpoints in result.endpoints.items():
        click.echo(f"  {name} published at {', '.join(endpoints)}")
    for warning in result.warnings:
        click.echo(click.style("warning: ", fg='yellow') + warning)
    if result.cancelled:
        click.echo("Cancelled; services already started are left running")
    for name, error in result.errors.items():
        if error.get('hint'):
            click.echo(f"Hint ({name}): {error['hint']}")


@main.command()
@_manifest_option
@click.option('-p', '--project', default=None, help='Project name override')
@click.option('--volumes', 'remove_volumes', is_flag=True, help='Also remove named volumes (destroys data)')
@click.option('--yes', is_flag=True, help='Skip confirmation prompt when removing volumes')
@click.pass_context
def down(ctx, manifest_path, project, remove_volumes, yes):
    """Stop and remove the project's containers."""
    try:
        manifest = _load(manifest_path, project)
        engine = get_engine(ctx.obj['engine'])
    except StackupError as e:
        _fail(e)
        return

    if remove_volumes and not yes:
        if not click.confirm(f"Remove named volumes of {manifest.project}? Their data is lost"):
            _human_output("Volume removal cancelled")
            remove_volumes = False

    run_id = new_run_id()
    create_run_dir(run_id)
    write_run_json(run_id, str(Path(manifest.path).resolve()), manifest.project, ctx.obj['engine'])
    try:
        outcome = TopologyManager(manifest, engine, run_id=run_id).down(remove_volumes=remove_volumes)
    except StackupError as e:
        emit_event(run_id, EventTypes.ERROR, e.to_dict())
        _fail(e)
        return

    if ctx.obj['json']:
        _json_output({'run_id': run_id, **outcome})
        return
    for name in outcome['removed']:
        click.echo(f"Removed container {name}")
    for name in outcome['volumes_removed']:
        click.echo(f"Removed volume {name}")
    if not outcome['removed']:
        click.echo("No containers to remove")


@main.command()
@click.argument('run_id')
@click.pass_context
def status(ctx, run_id):
    """Show the status of a run."""
    try:
        if not run_exists(run_id):
            _unknown_run(run_id)
            return
    except ValueError:
        _unknown_run(run_id)
        return

    info = StatusDeriver().derive_status(read_events(run_id), read_outputs_json(run_id))
    if ctx.obj['json']:
        _json_output({'run_id': run_id, **info.to_dict()})
        return

    color = {'up': 'green', 'failed': 'red', 'degraded': 'yellow'}.get(info.status.value, 'white')
    click.echo(f"Run: {run_id}")
    click.echo(f"Status: {click.style(info.status.value, fg=color)} ({info.message})")
    for name, state in info.services.items():
        click.echo(f"  {name:16} {state}")
    for name, endpoints in info.endpoints.items():
        click.echo(f"  {name} published at {', '.join(endpoints)}")
    if info.failure_reason:
        click.echo(f"Failure: {info.failure_reason}")
    if info.failure_hint:
        click.echo(f"Hint: {info.failure_hint}")


@main.command()
@click.argument('run_id')
@click.option('--follow', is_flag=True, help='Follow logs in real-time')
@click.option('--service', default=None, help='Only events for this service')
@click.option('--build-output/--no-build-output', default=True, help='Include raw build lines')
@click.pass_context
def logs(ctx, run_id, follow, service, build_output):
    """View a run's event log."""
    try:
        if not run_exists(run_id):
            _unknown_run(run_id)
            return
    except ValueError:
        _unknown_run(run_id)
        return

    try:
        for event in tail_events(run_id, follow=follow):
            if not _should_show_event(event, service, build_output):
                continue
            if ctx.obj['json']:
                _json_output(event)
            else:
                _print_event_human(event)
    except KeyboardInterrupt:
        _human_output("Stopped following logs")


def _should_show_event(event: Dict[str, Any], service: Optional[str], build_output: bool) -> bool:
    if not build_output and event.get('type') == EventTypes.BUILD_LINE:
        return False
    if service is None:
        return True
    return event.get('data', {}).get('service') == service


def _print_event_human(event: Dict[str, Any]) -> None:
    event_type = event.get('type', 'UNKNOWN')
    data = event.get('data', {})
    time_str = event.get('ts', '')[11:19]

    if event_type in (EventTypes.BUILD_DONE, EventTypes.SMOKE_OK, EventTypes.DONE):
        color = 'green'
    elif event_type in (EventTypes.BUILD_FAILED, EventTypes.SERVICE_FAILED, EventTypes.SMOKE_FAIL,
                        EventTypes.ERROR):
        color = 'red'
    elif event_type.startswith('BUILD_'):
        color = 'blue'
    else:
        color = 'white'

    if event_type == EventTypes.BUILD_LINE:
        message = f"[{data.get('service')}] {data.get('line', '')}"
    elif event_type == EventTypes.SERVICE_STATE:
        message = f"{data.get('service')} -> {data.get('state')}"
    elif 'message' in data:
        message = data['message']
    else:
        message = ", ".join(f"{k}={v}" for k, v in data.items())

    click.echo(f"[{time_str}] {click.style(event_type, fg=color)}: {message}")


@main.command()
@click.option('--limit', default=20, type=int, help='Most recent runs to show')
@click.pass_context
def runs(ctx, limit):
    """List recent runs."""
    rows = []
    for run_id in list_runs()[:limit]:
        try:
            meta = read_run_json(run_id)
        except FileNotFoundError:
            meta = {}
        info = StatusDeriver().derive_status(read_events(run_id))
        rows.append({
            'run_id': run_id,
            'project': meta.get('project'),
            'engine': meta.get('engine'),
            'status': info.status.value,
        })

    if ctx.obj['json']:
        _json_output(rows)
        return
    if not rows:
        click.echo("No runs found")
    for row in rows:
        click.echo(f"{row['run_id']}  {row['project'] or '-':16} {row['engine'] or '-':7} {row['status']}")


@main.group()
def volume():
    """Manage named volumes."""


@volume.command('rm')
@click.argument('name')
@_manifest_option
@click.option('-p', '--project', default=None, help='Project name override')
@click.option('--yes', is_flag=True, help='Skip confirmation prompt')
@click.pass_context
def volume_rm(ctx, name, manifest_path, project, yes):
    """Destroy a declared volume and its data."""
    try:
        manifest = _load(manifest_path, project)
        engine = get_engine(ctx.obj['engine'])
    except StackupError as e:
        _fail(e)
        return

    if name not in manifest.volumes:
        raise click.UsageError(f"Volume '{name}' is not declared in the manifest")
    engine_name = manifest.volume_name(name)
    if not yes and not click.confirm(f"Destroy volume {engine_name} and all its data?"):
        _human_output("Volume removal cancelled")
        return

    try:
        TopologyManager(manifest, engine).remove_volume(name)
    except StackupError as e:
        _fail(e)
        return

    if ctx.obj['json']:
        _json_output({'removed': engine_name})
    else:
        click.echo(f"Removed volume {engine_name}")


@main.command()
@click.argument('service')
@_manifest_option
@click.option('--scheme', default='postgres', help='URL scheme')
@click.option('--show-password', is_flag=True, help='Print the password instead of ****')
@click.pass_context
def connstr(ctx, service, manifest_path, scheme, show_password):
    """Print the connection string other services use to reach SERVICE."""
    try:
        manifest = _load(manifest_path)
    except StackupError as e:
        _fail(e)
        return
    if service not in manifest.services:
        raise click.UsageError(f"Unknown service: {service}")

    conn = derive_connection_string(manifest, service, scheme=scheme)
    value = conn.format(redact=not show_password)
    consumers: List[str] = manifest.dependents_of(service)
    if ctx.obj['json']:
        _json_output({'service': service, 'connection_string': value, 'dependents': consumers})
    else:
        click.echo(value)


@main.command()
@click.option('--host', default='127.0.0.1', help='Interface to bind')
@click.option('--port', default=8080, type=int, envvar='PORT', help='Port to listen on')
def serve(host, port):
    """Run the HTTP API."""
    from ..api import serve as serve_api
    serve_api(host=host, port=port)


if __name__ == '__main__':
    main()
