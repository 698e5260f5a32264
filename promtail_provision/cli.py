#!/usr/bin/env python3
"""
promtail-provision CLI
"""
import logging
import shutil
import sys
from pathlib import Path

import click

from logcore import setup_logging
from promtail_provision import __version__
from promtail_provision.configurer import build_config_document, check_secret_isolation, render_config
from promtail_provision.desired import load_desired_state
from promtail_provision.errors import ProvisionError
from promtail_provision.reconcile import Reconciler
from promtail_provision.service import SystemdController
from promtail_provision.state import DEFAULT_STATE_PATH, load_state

TEMPLATES_DIR = Path(__file__).parent / 'templates'

logger = logging.getLogger(__name__)


def _fail(message):
    click.echo(click.style(f'❌ {message}', fg='red'), err=True)
    sys.exit(1)


def _load(desired_file):
    try:
        return load_desired_state(desired_file)
    except ProvisionError as e:
        _fail(f'Invalid desired state: {e}')


def _actions(actions):
    return ', '.join(a.value for a in actions) if actions else 'none'


@click.group()
@click.version_option(version=__version__)
@click.option('--state', 'state_path', default=DEFAULT_STATE_PATH, show_default=True,
              help='Path to the persisted state file')
@click.option('--log-file', default=None, help='Also write logs to this file')
@click.option('--log-level', type=click.Choice(['DEBUG', 'INFO', 'WARNING', 'ERROR']),
              default='WARNING', show_default=True, help='Log level')
@click.option('--json-logs/--plain-logs', default=True, help='Log format')
@click.pass_context
def cli(ctx, state_path, log_file, log_level, json_logs):
    """Provision and maintain the Promtail log shipping agent"""
    setup_logging(level=getattr(logging, log_level), log_file=log_file, use_json=json_logs)
    ctx.obj = {'state_path': state_path}


@cli.command()
@click.argument('path', default='desired.yml')
def init(path):
    """Write a desired state template to PATH"""
    target = Path(path)

    if target.exists():
        _fail(f'{target} already exists')

    template_path = TEMPLATES_DIR / 'desired.yml.template'
    if not template_path.exists():
        _fail(f'Template not found: {template_path}')

    try:
        shutil.copy(template_path, target)
    except OSError as e:
        _fail(f'Cannot write {target}: {e}')

    click.echo(click.style(f'✓ Created {target}', fg='green'))
    click.echo(f'Edit {target} to describe the promtail installation')


@cli.command()
@click.argument('desired_file', type=click.Path())
def validate(desired_file):
    """Check DESIRED_FILE and the configuration it renders"""
    desired = _load(desired_file)
    try:
        document = build_config_document(desired)
        check_secret_isolation(document, desired.secrets)
        render_config(document)
    except ProvisionError as e:
        _fail(str(e))

    click.echo(click.style(f'✓ {desired_file} is valid', fg='green'))


@cli.command()
@click.argument('desired_file', type=click.Path())
def render(desired_file):
    """Print the promtail configuration DESIRED_FILE renders"""
    desired = _load(desired_file)
    try:
        document = build_config_document(desired)
        check_secret_isolation(document, desired.secrets)
        rendered = render_config(document)
    except ProvisionError as e:
        _fail(str(e))

    click.echo(rendered, nl=False)


@cli.command()
@click.argument('desired_file', type=click.Path())
@click.pass_context
def plan(ctx, desired_file):
    """Show what apply would change, without changing anything"""
    desired = _load(desired_file)
    try:
        result = Reconciler(desired, state_path=ctx.obj['state_path']).plan()
    except ProvisionError as e:
        _fail(str(e))

    click.echo(f'Install:  {_actions(result.install_actions)}')
    config_files = []
    if result.config.write_config:
        config_files.append(desired.config_file)
    config_files.extend(s.path for s in result.config.secrets_to_write)
    click.echo(f'Config:   {", ".join(config_files) if config_files else "up to date"}')
    click.echo(f'Unit:     {"changed" if result.unit_changed else "up to date"}')
    click.echo(f'Service:  {_actions(result.service_actions)}')

    if result.changed:
        click.echo(click.style('\nChanges pending', fg='yellow'))
    else:
        click.echo(click.style('\n✓ Host is converged', fg='green'))


@cli.command()
@click.argument('desired_file', type=click.Path())
@click.pass_context
def apply(ctx, desired_file):
    """Run one reconciliation pass for DESIRED_FILE"""
    desired = _load(desired_file)
    click.echo(f'\n=== Reconciling {desired.service_name} {desired.version} ({desired.install_method.value}) ===\n')

    try:
        result = Reconciler(desired, state_path=ctx.obj['state_path']).run()
    except ProvisionError as e:
        logger.exception('Reconciliation failed')
        _fail(f'Reconciliation failed: {e}')

    click.echo(f'Install:  {_actions(result.install_actions)}')
    click.echo(f'Config:   {"written" if result.config_written else "up to date"}')
    click.echo(f'Service:  {_actions(result.service_actions)}')

    if result.changed:
        click.echo(click.style('\n✓ Host converged', fg='green'))
    else:
        click.echo(click.style('\n✓ No changes', fg='green'))


@cli.command()
@click.argument('desired_file', type=click.Path())
@click.pass_context
def status(ctx, desired_file):
    """Show what is installed and whether the service is running"""
    desired = _load(desired_file)
    try:
        state = load_state(ctx.obj['state_path'])
        service = SystemdController().observe(desired.service_name)
    except ProvisionError as e:
        _fail(str(e))

    artifact = state.artifact
    if artifact:
        click.echo(f'Artifact: {artifact.method} {artifact.version or "(unknown version)"}')
    else:
        click.echo('Artifact: none recorded')
    click.echo(f'Config:   {state.config_checksum[:12] if state.config_checksum else "never applied"}')
    click.echo(f'Service:  {service.ensure.value}, {"enabled" if service.enabled else "disabled"}')
    if state.last_change:
        click.echo(f'Changed:  {state.last_change}')


def main():
    cli()


if __name__ == '__main__':
    main()
