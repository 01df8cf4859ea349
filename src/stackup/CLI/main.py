"""
Command Line Interface for Stackup.
"""
import json
import os

import click
import yaml
from jinja2 import Template

from ..PARSERS.stack_parser import StackParser
from ..MANAGERS.orchestrator import Orchestrator
from ..MANAGERS.profile_resolver import ProfileResolver
from ..MANAGERS.parameter_resolver import load_environment, parse_flag_pairs
from ..MODELS.stack_status import StatusSnapshot
from ..RUNNERS.container_runner import ContainerRunner
from ..RUNNERS.readiness_probe import ReadinessProbe
from ..UTILS.logging_config import setup_logging
from ..errors import (
    PartialStartupFailure,
    StackError,
    StartupCancelled,
    UnknownProfile,
    ValidationError,
)

EXIT_PARTIAL_FAILURE = 2
EXIT_INTERRUPTED = 130

STATUS_TEMPLATE = """\
Stack {{ project }}: {{ phase }}
{{ "%-20s %-10s %8s  %s"|format("SERVICE", "STATE", "ELAPSED", "DETAIL") }}
{% for name, st in services.items() %}
{{ "%-20s %-10s %7.1fs  %s"|format(name, st.phase.value, st.elapsed, st.reason or "") }}
{% endfor %}
"""

_status_template = Template(STATUS_TEMPLATE, trim_blocks=True, lstrip_blocks=True)


def render_status(project: str, snapshot: StatusSnapshot) -> str:
    """
    Renders a snapshot as the text table printed by ``status``.
    """
    return _status_template.render(
        project=project,
        phase=snapshot.phase.value,
        services=snapshot.services,
    ).rstrip()


param_option = click.option(
    '--param', 'params', multiple=True, metavar='NAME=VALUE',
    help='Set a stack parameter. Overrides its environment variable and default.')


@click.group()
@click.option('--file', '-f', default='stack.yml', envvar='STACKUP_FILE', show_default=True,
              help='Stack file path')
@click.option('--project', '-p', envvar='STACKUP_PROJECT', help='Project name (container prefix)')
@click.option('--env-file', help='Environment file (default: .env next to the stack file)')
@click.option('--docker-bin', default='docker', envvar='STACKUP_DOCKER', show_default=True,
              help='Container engine executable')
@click.option('--log-level', default='WARNING', envvar='STACKUP_LOG_LEVEL', show_default=True,
              type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR'], case_sensitive=False))
@click.pass_context
def cli(ctx, file, project, env_file, docker_bin, log_level):
    """
    Stackup - local service stack orchestrator.

    Starts the database, cache and web server containers of a development
    stack and waits until each one accepts connections.
    """
    setup_logging(log_level)
    ctx.ensure_object(dict)
    ctx.obj['file'] = file
    ctx.obj['project'] = project
    ctx.obj['env_file'] = env_file or os.path.join(os.path.dirname(os.path.abspath(file)), '.env')
    ctx.obj['docker_bin'] = docker_bin


def _load(ctx, params=()):
    """
    Parses the stack file with the given parameter flags.
    """
    file = ctx.obj['file']
    if not os.path.exists(file):
        raise click.ClickException(f"{file} not found.")
    try:
        parser = StackParser(load_environment(ctx.obj['env_file']))
        return parser.parse(file, flags=parse_flag_pairs(params), project=ctx.obj['project'])
    except ValidationError as e:
        raise click.ClickException(f"Invalid stack file {file}: {e}")


def _orchestrator(ctx, definition, timeout=None, interval=None, grace=10.0, on_change=None):
    runner = ContainerRunner(definition.project, base_dir=definition.base_dir,
                             docker_bin=ctx.obj['docker_bin'])
    probe = ReadinessProbe(
        timeout=timeout or definition.readiness.timeout,
        interval=interval or definition.readiness.interval,
    )
    return Orchestrator(definition, runner, probe=probe, on_change=on_change, grace=grace)


class _ProgressPrinter:
    """
    Echoes each service whose state changed since the previous snapshot.
    """
    def __init__(self):
        self.last = {}

    def __call__(self, snapshot: StatusSnapshot):
        for name, state in snapshot.services.items():
            if self.last.get(name) == state:
                continue
            detail = f" ({state.reason})" if state.reason else ""
            click.echo(f"{name:15} {state.phase.value}{detail}")
        self.last = dict(snapshot.services)


@cli.command()
@click.option('--profile', envvar='STACKUP_PROFILE', help='Also start services tagged with this profile')
@param_option
@click.option('--timeout', type=float, help='Readiness timeout per service, in seconds')
@click.option('--interval', type=float, help='Seconds between readiness attempts')
@click.option('--grace', type=click.FloatRange(min=0), default=10.0, show_default=True,
              help='Seconds a service gets to stop when tearing down')
@click.option('--teardown-on-failure', is_flag=True, help='Stop everything if any service fails')
@click.pass_context
def up(ctx, profile, params, timeout, interval, grace, teardown_on_failure):
    """Start services defined in the stack file."""
    definition = _load(ctx, params)
    orchestrator = _orchestrator(ctx, definition, timeout=timeout, interval=interval,
                                 grace=grace, on_change=_ProgressPrinter())
    try:
        orchestrator.up(profile)
        click.echo("Stack ready.")
    except (UnknownProfile, ValidationError) as e:
        raise click.ClickException(str(e))
    except PartialStartupFailure as e:
        for failure in e.failures:
            click.echo(f"Error: {failure}", err=True)
        if teardown_on_failure:
            click.echo("Stopping services...")
            orchestrator.down()
        ctx.exit(EXIT_PARTIAL_FAILURE)
    except StartupCancelled:
        click.echo("Startup cancelled, services stopped.", err=True)
        ctx.exit(EXIT_INTERRUPTED)
    except KeyboardInterrupt:
        click.echo("\nStopping services...", err=True)
        orchestrator.cancel()
        orchestrator.down()
        ctx.exit(EXIT_INTERRUPTED)
    except StackError as e:
        raise click.ClickException(str(e))


@cli.command()
@param_option
@click.option('--grace', type=click.FloatRange(min=0), default=10.0, show_default=True,
              help='Seconds each service gets to stop before it is killed')
@click.pass_context
def down(ctx, params, grace):
    """Stop all services of the stack."""
    definition = _load(ctx, params)
    orchestrator = _orchestrator(ctx, definition, grace=grace)
    try:
        orchestrator.down()
    except StackError as e:
        raise click.ClickException(str(e))
    for issue in orchestrator.stop_issues:
        click.echo(f"Warning: {issue.service} {issue.reason}", err=True)
    click.echo("Services stopped.")


@cli.command()
@click.option('--profile', envvar='STACKUP_PROFILE', help='Include services tagged with this profile')
@param_option
@click.option('--json', 'as_json', is_flag=True, help='Print the snapshot as JSON')
@click.pass_context
def status(ctx, profile, params, as_json):
    """Show service status"""
    definition = _load(ctx, params)
    orchestrator = _orchestrator(ctx, definition)
    try:
        snapshot = orchestrator.refresh(profile)
    except StackError as e:
        raise click.ClickException(str(e))

    if as_json:
        data = snapshot.to_dict()
        data['project'] = definition.project
        click.echo(json.dumps(data, indent=2))
    else:
        click.echo(render_status(definition.project, snapshot))


@cli.command()
@click.option('--profile', help='Only show services selected by this profile')
@param_option
@click.pass_context
def config(ctx, profile, params):
    """Validate the stack file and print the resolved definition"""
    definition = _load(ctx, params)
    data = definition.model_dump(mode='json')
    if profile is not None:
        try:
            selected = {svc.name for svc in ProfileResolver().resolve(definition, profile)}
        except UnknownProfile as e:
            raise click.ClickException(str(e))
        data['services'] = [svc for svc in data['services'] if svc['name'] in selected]
    data['profiles'] = sorted(data['profiles'])
    for svc in data['services']:
        svc['profiles'] = sorted(svc['profiles'])
    click.echo(yaml.safe_dump(data, sort_keys=False), nl=False)


@cli.command()
@param_option
@click.option('--follow', '-F', is_flag=True, help='Keep streaming new output')
@click.option('--tail', type=int, help='Number of lines to show from the end')
@click.argument('services', nargs=-1)
@click.pass_context
def logs(ctx, params, follow, tail, services):
    """Show container logs"""
    definition = _load(ctx, params)
    by_name = definition.by_name()
    unknown = [name for name in services if name not in by_name]
    if unknown:
        raise click.ClickException(f"Unknown service(s): {', '.join(unknown)}")

    runner = ContainerRunner(definition.project, base_dir=definition.base_dir,
                             docker_bin=ctx.obj['docker_bin'])
    names = list(services) or definition.names
    for name in names:
        if len(names) > 1:
            click.echo(f"==> {name} <==")
        try:
            runner.logs(by_name[name], follow=follow and len(names) == 1, tail=tail)
        except StackError as e:
            raise click.ClickException(str(e))
        except KeyboardInterrupt:
            break


def main():
    """
    Main entry point for the CLI.
    """
    cli(obj={})


if __name__ == '__main__':
    main()
