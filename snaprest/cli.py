"""
CLI interface for the snaprest backup orchestrator.

Setup run (interactive, all steps):

    snaprest run

Scheduled run (cron, recurring steps only):

    snaprest run --scheduled --yes
"""

import click
from pathlib import Path

from snaprest import __version__
from snaprest.errors import SnaprestError


@click.group()
@click.version_option(version=__version__, prog_name="snaprest")
@click.pass_context
def main(ctx):
    """
    snaprest - Resumable pgBackRest backup and snapshot orchestrator.

    Takes pgBackRest backups from a PostgreSQL standby and snapshots the
    backup volume, resuming from the last completed step after a failure.
    """
    from snaprest.config import load_config

    ctx.ensure_object(dict)
    try:
        ctx.obj["config"] = load_config()
    except Exception as e:
        # init and state commands work without a config; run checks below
        ctx.obj["config_error"] = str(e)


def _require_config(ctx):
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        click.echo("Run 'snaprest init' to create a configuration file.", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _state_path(ctx) -> Path:
    from snaprest.config import get_snaprest_home

    config = ctx.obj.get("config")
    if config is not None:
        return config.state_path()
    return get_snaprest_home() / "state.env"


def _print_plan(config, scheduled: bool) -> None:
    from snaprest.utils import print_banner, console

    print_banner("snaprest scheduled run" if scheduled else "snaprest setup")
    console.print(f"  Primary:      {config.primary_host}")
    console.print(f"  Source:       {config.source_host}")
    console.print(f"  Stanza:       {config.stanza}")
    console.print(f"  PG version:   {config.pg_version}")
    console.print(f"  Backup mode:  {config.backup_mode}{' (force full)' if config.force_full else ''}")
    console.print(f"  Skip backup:  {config.skip_backup}")
    console.print(f"  Skip snapshot: {config.skip_snapshot}")
    console.print(f"  Retention:    {config.retention_enabled}")
    console.print(f"  State file:   {config.state_path()}")


def _print_summary(result, state_path: Path) -> None:
    from rich.table import Table

    from snaprest.utils import console, print_success

    table = Table(title=f"{result.mode.value} run {result.run_date.isoformat()}")
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Artifacts")
    for outcome in result.outcomes:
        artifacts = ", ".join(f"{k}={v}" for k, v in outcome.artifacts.items())
        table.add_row(outcome.name, outcome.status.value, artifacts)
    console.print(table)
    print_success(f"Run completed. State file: {state_path}")


@main.command("run")
@click.option("--scheduled", is_flag=True, help="Scheduled (cron) mode: recurring steps only, no prompts")
@click.option("--primary", help="Primary server address")
@click.option("--source", help="Backup source (standby) address")
@click.option("--stanza", help="pgBackRest stanza name")
@click.option(
    "--backup-mode",
    type=click.Choice(["auto", "full", "incr", "skip"], case_sensitive=False),
    help="Backup type selection mode",
)
@click.option("--force-full", is_flag=True, help="Take a full backup even if today's backup already ran")
@click.option("--skip-backup", is_flag=True, help="Do not take a backup (snapshot only)")
@click.option("--skip-snapshot", is_flag=True, help="Do not create a snapshot")
@click.option("--retention/--no-retention", default=None, help="Enable or disable snapshot retention")
@click.option("--region", help="AWS region")
@click.option("--volume-id", help="Backup volume id (skips volume lookup)")
@click.option("--force-step", help="Run this step even if already complete")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def run(
    ctx,
    scheduled: bool,
    primary: str,
    source: str,
    stanza: str,
    backup_mode: str,
    force_full: bool,
    skip_backup: bool,
    skip_snapshot: bool,
    retention: bool,
    region: str,
    volume_id: str,
    force_step: str,
    yes: bool,
):
    """
    Run the orchestrator.

    Without --scheduled every step runs (setup). With --scheduled only the
    backup, snapshot and retention steps run, once per day.

    Examples:

        snaprest run

        snaprest run --scheduled --yes

        snaprest run --scheduled --force-full

        snaprest run --force-step repository
    """
    from snaprest.orchestrator import build_orchestrator
    from snaprest.schemas import RunMode
    from snaprest.utils import setup_logging

    config = _require_config(ctx)
    try:
        config = config.with_overrides(
            primary_host=primary,
            source_host=source,
            stanza=stanza,
            backup_mode=backup_mode.lower() if backup_mode else None,
            force_full=True if force_full else None,
            skip_backup=True if skip_backup else None,
            skip_snapshot=True if skip_snapshot else None,
            retention_enabled=retention,
            region=region,
            backup_volume_id=volume_id,
        )
    except SnaprestError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    setup_logging(config.log_file_path(), config.log_level, config.log_format)
    mode = RunMode.SCHEDULED if scheduled else RunMode.SETUP

    if not scheduled and not yes:
        _print_plan(config, scheduled)
        if not click.confirm("Proceed?", default=False):
            click.echo("Aborted.", err=True)
            raise SystemExit(1)

    try:
        orchestrator = build_orchestrator(config)
        result = orchestrator.run(mode, force_step=force_step)
    except SnaprestError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    _print_summary(result, config.state_path())


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize snaprest configuration."""
    from snaprest.config import default_config_dict, get_snaprest_home
    import yaml

    home = get_snaprest_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    cfg_path.write_text(yaml.safe_dump(default_config_dict(home), sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# PRIMARY_IP=...\n# STANDBY_IP=...\n# AWS_REGION=...\n")

    click.echo(f"Initialized snaprest config at {cfg_path}")
    click.echo("Edit primary_host, source_host and stanza before the first run.")


@main.group("state")
def state_group():
    """Inspect and reset orchestrator state."""
    pass


@state_group.command("show")
@click.pass_context
def show_state(ctx):
    """Show recorded step markers and artifacts."""
    from rich.table import Table

    from snaprest.state_store import FileStateStore
    from snaprest.utils import console

    path = _state_path(ctx)
    records = FileStateStore(path).list()
    if not records:
        click.echo(f"No state recorded at {path}")
        return

    table = Table(title=str(path))
    table.add_column("Key")
    table.add_column("Value")
    for key in sorted(records):
        table.add_row(key, records[key])
    console.print(table)


@state_group.command("reset")
@click.argument("keys", nargs=-1)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def reset_state(ctx, keys: tuple[str, ...], yes: bool):
    """
    Remove state keys (all keys when none are given).

    Examples:

        snaprest state reset BACKUP_COMPLETED

        snaprest state reset --yes
    """
    from snaprest.state_store import FileStateStore

    path = _state_path(ctx)
    target = ", ".join(keys) if keys else "ALL keys"
    if not yes and not click.confirm(f"Remove {target} from {path}?", default=False):
        click.echo("Aborted.", err=True)
        raise SystemExit(1)

    try:
        removed = FileStateStore(path).reset(keys or None)
    except ValueError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    if removed:
        click.echo(f"Removed {len(removed)} key(s): {', '.join(removed)}")
    else:
        click.echo("Nothing to remove")


if __name__ == "__main__":
    main()
