"""CLI for reviewing observations and promoting memories."""

import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .engine import HabitualEngine
from .errors import HabitualError, PartialPromotionError
from .models import SourceRef
from .timeutil import format_relative_time, parse_time_reference

console = Console()


def _setup_logging(log_path: Path, verbose: bool) -> None:
    log_path.parent.mkdir(parents=True, exist_ok=True)
    stderr = logging.StreamHandler(sys.stderr)
    stderr.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[logging.FileHandler(log_path), stderr],
        force=True,
    )


def _engine(ctx: click.Context) -> HabitualEngine:
    if "engine" not in ctx.obj:
        ctx.obj["engine"] = HabitualEngine(ctx.obj["settings"])
    return ctx.obj["engine"]


def _fail(message: str) -> None:
    console.print(f"[red]Error:[/red] {message}")
    sys.exit(1)


@click.group()
@click.option(
    "--home",
    envvar="HABITUAL_HOME",
    type=click.Path(path_type=Path),
    help="Storage directory (default: ~/.habitual)",
)
@click.option("-v", "--verbose", is_flag=True, help="Log debug output to stderr")
@click.pass_context
def cli(ctx, home, verbose):
    """Habitual - learn coding habits from assistant sessions."""
    ctx.ensure_object(dict)
    try:
        settings = load_settings(home)
    except HabitualError as e:
        _fail(str(e))
    ctx.obj["settings"] = settings
    _setup_logging(settings.log_path, verbose)


@cli.command()
@click.pass_context
def status(ctx):
    """Show counts at each memory level and the last run."""
    try:
        engine = _engine(ctx)
        counts = engine.hierarchy.counts()
        state = engine.run_state.get()
    except HabitualError as e:
        _fail(str(e))

    console.print(f"Pending observations: [bold]{counts.pending_observations}[/bold]")
    console.print(f"Long-term memories:   [bold]{counts.active_long_term}[/bold]")
    console.print(f"Core memories:        [bold]{counts.promoted_to_core}[/bold]")
    console.print()
    if state.last_run_at:
        console.print(f"Last run: {format_relative_time(state.last_run_at)}")
    else:
        console.print("Last run: [dim]never[/dim]")
    if state.last_error:
        console.print(f"[yellow]Last error:[/yellow] {state.last_error}")


@cli.command()
@click.option(
    "--status", "status_filter",
    type=click.Choice(["pending", "approved", "denied"]),
    default="pending",
    show_default=True,
)
@click.pass_context
def observations(ctx, status_filter):
    """List observations, most recently seen first."""
    try:
        items = _engine(ctx).observations.list_by_status(status_filter)
    except HabitualError as e:
        _fail(str(e))

    if not items:
        console.print(f"No {status_filter} observations.")
        return

    table = Table(title=f"{status_filter.capitalize()} observations")
    table.add_column("ID", style="dim")
    table.add_column("Pattern")
    table.add_column("Count", justify="right")
    table.add_column("Sources", justify="right")
    table.add_column("Last seen")
    for obs in items:
        table.add_row(
            obs.id,
            obs.text,
            str(obs.count),
            str(len(obs.source_refs)),
            format_relative_time(obs.last_seen_at),
        )
    console.print(table)


@cli.command()
@click.argument("text")
@click.option("--source", default="manual", help="Source session id")
@click.option("--tool", default="cli", help="Tool the pattern came from")
@click.pass_context
def add(ctx, text, source, tool):
    """Submit an observation by hand."""
    ref = SourceRef(source_id=source, tool_name=tool, timestamp=datetime.now(timezone.utc))
    try:
        obs = _engine(ctx).observations.submit(text, ref)
    except (HabitualError, ValueError) as e:
        _fail(str(e))

    if obs.count == 1:
        console.print(f"[green]+[/green] New observation {obs.id}")
    else:
        console.print(f"[blue]~[/blue] Merged into {obs.id} (count {obs.count})")


@cli.command()
@click.argument("observation_ids", nargs=-1, required=True)
@click.pass_context
def approve(ctx, observation_ids):
    """Approve observations and move them to long-term memory."""
    try:
        memories = _engine(ctx).approve(list(observation_ids))
    except HabitualError as e:
        _fail(str(e))

    for memory in memories:
        console.print(f"[green]✓[/green] {memory.observation_id} -> long-term {memory.id}")


@cli.command()
@click.argument("observation_id")
@click.pass_context
def deny(ctx, observation_id):
    """Deny an observation."""
    try:
        _engine(ctx).observations.deny(observation_id)
    except HabitualError as e:
        _fail(str(e))
    console.print(f"[red]✗[/red] Denied {observation_id}")


@cli.command()
@click.pass_context
def promotable(ctx):
    """List long-term memories ready for core promotion."""
    try:
        items = _engine(ctx).hierarchy.list_promotable()
    except HabitualError as e:
        _fail(str(e))

    if not items:
        console.print("Nothing ready for core memory.")
        return

    table = Table(title="Ready for core memory")
    table.add_column("ID", style="dim")
    table.add_column("Pattern")
    table.add_column("Count", justify="right")
    table.add_column("In long-term since")
    for memory in items:
        table.add_row(
            memory.id,
            memory.text,
            str(memory.count),
            format_relative_time(memory.promoted_to_long_term_at),
        )
    console.print(table)


@cli.command()
@click.argument("memory_id")
@click.option("--target", "targets", multiple=True, help="Core target id (repeatable)")
@click.pass_context
def promote(ctx, memory_id, targets):
    """Promote a long-term memory to core memory."""
    try:
        memory = _engine(ctx).hierarchy.promote_to_core(memory_id, list(targets) or None)
    except PartialPromotionError as e:
        for target in e.succeeded:
            console.print(f"  [green]✓[/green] {target}")
        for target, message in e.failed.items():
            console.print(f"  [red]✗[/red] {target}: {message}")
        retry = " ".join(f"--target {t}" for t in e.failed)
        _fail(f"Promotion incomplete. Retry with: promote {memory_id} {retry}")
    except (HabitualError, ValueError) as e:
        _fail(str(e))

    console.print(f"[green]✓[/green] Promoted {memory_id} to {', '.join(sorted(memory.core_targets))}")


@cli.command()
@click.argument("memory_id")
@click.pass_context
def reject(ctx, memory_id):
    """Reject a long-term memory for core promotion."""
    try:
        _engine(ctx).hierarchy.reject(memory_id)
    except HabitualError as e:
        _fail(str(e))
    console.print(f"[red]✗[/red] Rejected {memory_id}")


@cli.command("purge-denied")
@click.option("--before", help="Only purge those last seen before this (e.g. '30 days ago')")
@click.pass_context
def purge_denied(ctx, before):
    """Permanently remove denied observations."""
    try:
        cutoff = parse_time_reference(before) if before else None
        removed = _engine(ctx).observations.purge_denied(cutoff)
    except (HabitualError, ValueError) as e:
        _fail(str(e))
    console.print(f"Removed {removed} denied observations")


def main(argv: list[str] | None = None) -> int:
    """Console script entry point."""
    return cli.main(args=argv, prog_name="habitual")


if __name__ == "__main__":
    sys.exit(main())
