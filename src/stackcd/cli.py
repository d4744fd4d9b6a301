"""stackcd operator CLI.

Usage:
    stackcd run                 # Run the controller in the foreground
    stackcd revisions           # List deployed revisions from the ledger
    stackcd show web            # Show the ledger record of one stack
    stackcd check-config        # Validate the configuration directory
    stackcd fingerprint FILE    # Print the content fingerprint of a file
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import BinaryIO

import click

from .config import DEFAULT_CONFIGS_PATH, DEFAULT_DB_PATH, parse_concurrency
from .config_loader import ConfigLoadError, load_configs
from .ledger import LedgerError, RevisionLedger, fingerprint, open_ledger
from .main import main as controller_main

db_option = click.option(
    "--db",
    "db_path",
    envvar="SWARMCD_DB",
    default=DEFAULT_DB_PATH,
    show_default=True,
    help="Revision ledger location",
)


def _open_ledger(db_path: str) -> RevisionLedger:
    try:
        return open_ledger(db_path)
    except LedgerError as e:
        raise click.ClickException(str(e)) from e


@click.group()
@click.version_option(version="0.1.0", prog_name="stackcd")
def cli() -> None:
    """stackcd - GitOps reconciliation for Docker Swarm stacks."""
    pass


@cli.command()
def run() -> None:
    """Run the controller until interrupted."""
    raise SystemExit(controller_main())


@cli.command()
@db_option
def revisions(db_path: str) -> None:
    """List the last deployed revision of every stack."""
    ledger = _open_ledger(db_path)
    try:
        records = ledger.list_all()
    except LedgerError as e:
        raise click.ClickException(str(e)) from e
    finally:
        ledger.close()

    if not records:
        click.echo("No revisions recorded")
        return

    width = max(len("STACK"), *(len(name) for name in records))
    click.echo(f"{'STACK':<{width}}  {'HASH':<8}  {'REPO REVISION':<12}  DEPLOYED AT")
    for name, metadata in records.items():
        click.echo(
            f"{name:<{width}}  {metadata.short_hash:<8}  "
            f"{metadata.repo_revision[:12]:<12}  {metadata.deployed_at.isoformat()}"
        )


@cli.command()
@click.argument("stack")
@db_option
@click.option("--json", "as_json", is_flag=True, help="Output as JSON")
def show(stack: str, db_path: str, as_json: bool) -> None:
    """Show the ledger record of STACK."""
    ledger = _open_ledger(db_path)
    try:
        metadata = ledger.load(stack)
    except LedgerError as e:
        raise click.ClickException(str(e)) from e
    finally:
        ledger.close()

    if as_json:
        click.echo(json.dumps({"stack": stack, **metadata.to_dict()}, indent=2))
        return

    if not metadata.is_deployed:
        click.echo(f"Stack {stack} has never been deployed")
        return

    click.echo(f"Stack:                   {stack}")
    click.echo(f"Repo revision:           {metadata.repo_revision}")
    click.echo(f"Deployed stack revision: {metadata.deployed_stack_revision}")
    click.echo(f"Hash:                    {metadata.hash}")
    click.echo(f"Deployed at:             {metadata.deployed_at.isoformat()}")


@cli.command("check-config")
@click.option(
    "--path",
    "configs_path",
    envvar="CONFIGS_PATH",
    default=DEFAULT_CONFIGS_PATH,
    show_default=True,
    type=click.Path(file_okay=False, path_type=Path),
    help="Directory holding config.yaml, repos.yaml and stacks.yaml",
)
@click.option("--concurrency", envvar="SWARMCD_CONCURRENCY", default=None, help="Worker count override")
def check_config(configs_path: Path, concurrency: str | None) -> None:
    """Validate the configuration directory."""
    try:
        snapshot = load_configs(configs_path, parse_concurrency(concurrency))
    except ConfigLoadError as e:
        raise click.ClickException(str(e)) from e

    click.echo(click.style("✓ Configuration is valid", fg="green"))
    click.echo(f"  Repos:           {len(snapshot.repos)}")
    click.echo(f"  Stacks:          {len(snapshot.stacks)}")
    click.echo(f"  Update interval: {snapshot.update_interval}s")
    click.echo(f"  Concurrency:     {snapshot.concurrency}")
    for name, stack in sorted(snapshot.stacks.items()):
        click.echo(f"    {name}: {stack.repo}@{stack.branch} {stack.compose_file}")


@cli.command("fingerprint")
@click.argument("file", type=click.File("rb"))
def fingerprint_command(file: BinaryIO) -> None:
    """Print the content fingerprint of FILE ('-' for stdin)."""
    click.echo(fingerprint(file.read()))


if __name__ == "__main__":
    cli()
