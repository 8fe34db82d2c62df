#!/usr/bin/env python3
"""
Covenant Engine - Command Line Interface

Commit-reveal helpers, inspection of persisted contract handles, and
configuration display.
"""

import json
import logging
import sys
from typing import Any, Dict, Optional

import click
import yaml

from cli.config import ConfigurationError, ConfigurationManager, EngineSettings
from contracts.families import get_family, list_families
from crypto.commitments import Commitment, commit, reveal
from crypto.exceptions import CommitmentError
from workflow.exceptions import HandleStoreError
from workflow.store import HandleStore


class CLIContext:
    """Global CLI context for sharing state across commands."""

    def __init__(self):
        self.config_file: Optional[str] = None
        self.profile: Optional[str] = None
        self.output_format: str = "table"
        self.verbose: int = 0
        self.handles_dir: Optional[str] = None
        self.logger: Optional[logging.Logger] = None
        self._manager: Optional[ConfigurationManager] = None

    def setup_logging(self):
        """Configure logging based on verbosity level."""
        log_levels = {
            0: logging.WARNING,
            1: logging.INFO,
            2: logging.DEBUG,
        }
        level = log_levels.get(min(self.verbose, 2), logging.DEBUG)

        formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(formatter)

        root = logging.getLogger()
        root.setLevel(level)
        if not any(getattr(h, '_covenant_cli', False) for h in root.handlers):
            handler._covenant_cli = True
            root.addHandler(handler)
        self.logger = logging.getLogger('covenant-cli')

        if self.verbose < 2:
            logging.getLogger('requests').setLevel(logging.WARNING)
            logging.getLogger('urllib3').setLevel(logging.WARNING)

    @property
    def config_manager(self) -> ConfigurationManager:
        if self._manager is None:
            self._manager = ConfigurationManager(self.config_file, self.profile)
        return self._manager

    def settings(self) -> EngineSettings:
        return EngineSettings.from_config(self.config_manager.load())

    def output(self, data: Any, format_override: Optional[str] = None):
        """Output data in the selected format."""
        format_type = format_override or self.output_format
        if format_type == "json":
            click.echo(json.dumps(data, indent=2, default=str))
        elif format_type == "yaml":
            click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False).rstrip())
        else:
            self._output_table(data)

    def _output_table(self, data: Any):
        if isinstance(data, dict):
            for key, value in data.items():
                if isinstance(value, (dict, list)):
                    value = json.dumps(value, default=str)
                click.echo(f"{key:20} {value}")
        elif isinstance(data, list) and data and isinstance(data[0], dict):
            headers = list(data[0].keys())
            click.echo(" | ".join(f"{h:20}" for h in headers))
            click.echo("-" * (len(headers) * 23))
            for item in data:
                click.echo(" | ".join(f"{str(item.get(h, '')):20}" for h in headers))
        elif isinstance(data, list):
            for item in data:
                click.echo(item)
        else:
            click.echo(str(data))


pass_context = click.make_pass_decorator(CLIContext, ensure=True)


@click.group(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--config-file', '-c', help='Path to configuration file')
@click.option('--profile', '-p', help='Configuration profile (mainnet, testnet, regtest)')
@click.option('--output-format', '-o', type=click.Choice(['table', 'json', 'yaml']),
              default='table', help='Output format')
@click.option('--verbose', '-v', count=True,
              help='Increase verbosity (-v for INFO, -vv for DEBUG)')
@click.version_option(package_name='covenant-engine', prog_name='covenant')
@pass_context
def cli(ctx: CLIContext, config_file: Optional[str], profile: Optional[str],
        output_format: str, verbose: int):
    """
    Covenant transaction engine.

    Examples:
        covenant commit "my move"
        covenant verify-reveal <digest> "my move" <salt>
        covenant handle list
        covenant config show --key fees
    """
    ctx.config_file = config_file
    ctx.profile = profile
    ctx.output_format = output_format
    ctx.verbose = verbose
    ctx.setup_logging()
    ctx.logger.debug("CLI initialized")


# Commit-reveal

@cli.command('commit')
@click.argument('secret')
@pass_context
def commit_command(ctx: CLIContext, secret: str):
    """
    Commit to SECRET with a fresh random salt.

    Publish the digest; keep the salt private until the reveal.
    """
    commitment, salt = commit(secret)
    ctx.output({'digest': commitment.hex, 'salt': salt.hex()})


@cli.command('verify-reveal')
@click.argument('digest')
@click.argument('secret')
@click.argument('salt')
@pass_context
def verify_reveal_command(ctx: CLIContext, digest: str, secret: str, salt: str):
    """Check that SECRET and SALT open the commitment DIGEST."""
    try:
        commitment = Commitment.from_hex(digest)
        salt_bytes = bytes.fromhex(salt)
    except (CommitmentError, ValueError) as e:
        raise click.BadParameter(str(e))

    matches = reveal(commitment, secret, salt_bytes)
    ctx.output({'digest': commitment.hex, 'matches': matches})
    if not matches:
        sys.exit(1)


# Contract families

@cli.command('families')
@pass_context
def families_command(ctx: CLIContext):
    """List contract families and their transitions."""
    rows = []
    for name in list_families():
        family = get_family(name)
        rows.append({
            'family': name,
            'transitions': ', '.join(family.transitions),
            'settle': family.settle_transition or '-',
        })
    ctx.output(rows)


# Contract handles

@cli.group()
@click.option('--dir', 'handles_dir', type=click.Path(file_okay=False),
              help='Handle directory (defaults to storage.handles_dir)')
@pass_context
def handle(ctx: CLIContext, handles_dir: Optional[str]):
    """Inspect persisted contract handles."""
    ctx.handles_dir = handles_dir or ctx.settings().handles_dir


def _open_store(ctx: CLIContext) -> HandleStore:
    try:
        return HandleStore(ctx.handles_dir)
    except HandleStoreError as e:
        raise click.ClickException(str(e))


@handle.command('list')
@pass_context
def handle_list(ctx: CLIContext):
    """List stored handles."""
    store = _open_store(ctx)
    rows = []
    for handle_id in store.list():
        try:
            item = store.load(handle_id)
        except HandleStoreError as e:
            ctx.logger.warning(f"Skipping handle {handle_id}: {e}")
            continue
        rows.append({
            'handle_id': item.handle_id,
            'family': item.family,
            'phase': item.phase.value,
            'transactions': len(item.lineage),
        })
    if not rows:
        click.echo("No contract handles found.")
        return
    ctx.output(rows)


@handle.command('show')
@click.argument('handle_id')
@pass_context
def handle_show(ctx: CLIContext, handle_id: str):
    """Show one stored handle."""
    store = _open_store(ctx)
    try:
        item = store.load(handle_id)
    except HandleStoreError as e:
        raise click.ClickException(str(e))

    data: Dict[str, Any] = item.model_dump(mode='json', exclude={'artifact'})
    data['contract'] = item.artifact.get('contract')
    ctx.output(data)


# Configuration

@cli.group()
def config():
    """Show and validate configuration."""
    pass


@config.command('show')
@click.option('--key', help='Specific configuration key to show (dot notation)')
@click.option('--sources', is_flag=True, help='Show configuration sources')
@pass_context
def config_show(ctx: CLIContext, key: Optional[str], sources: bool):
    """Display the merged configuration."""
    try:
        manager = ctx.config_manager
        if sources:
            ctx.output(manager.get_sources())
            return
        if key:
            value = manager.get(key)
            if value is None:
                raise click.ClickException(f"Configuration key not found: {key}")
            ctx.output(value if isinstance(value, (dict, list)) else {key: value})
            return
        ctx.output(manager.load())
    except ConfigurationError as e:
        raise click.ClickException(str(e))


@config.command('validate')
@pass_context
def config_validate(ctx: CLIContext):
    """Validate the merged configuration."""
    try:
        errors = ctx.config_manager.validate()
    except ConfigurationError as e:
        raise click.ClickException(str(e))
    if errors:
        for error in errors:
            click.echo(f"Error: {error}", err=True)
        sys.exit(1)
    click.echo("Configuration is valid.")


def main():
    try:
        cli()
    except KeyboardInterrupt:
        click.echo("\nOperation cancelled by user.", err=True)
        sys.exit(130)


if __name__ == '__main__':
    main()
