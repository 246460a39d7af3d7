import asyncio
import sys

import click
from rich.console import Console
from rich.table import Table

from tern.config import get_config
from tern.core.models import Turn
from tern.core.state import TurnState
from tern.errors import TernError
from tern.events import (
    PatchProposedEvent,
    TextDeltaEvent,
    ToolCallDetectedEvent,
    ToolResultEvent,
    TurnEvent,
    TurnWarningEvent,
)
from tern.logging import configure_logging
from tern.patch.engine import PartialFailure, RevertSelector
from tern.runtime import Runtime

console = Console()
err_console = Console(stderr=True)


def _make_confirm(assume_yes: bool):
    if assume_yes:
        return lambda summary: True
    if not sys.stdin.isatty():
        # non-interactive: confirm decisions resolve to deny
        return None
    return lambda summary: click.confirm(summary, default=False)


async def _render_event(event: TurnEvent) -> None:
    match event:
        case TextDeltaEvent(text=text):
            console.print(text, end="", markup=False, highlight=False, soft_wrap=True)
        case ToolCallDetectedEvent(server=server, name=name):
            console.print(f"\n[dim]→ {server}:{name}[/dim]")
        case ToolResultEvent(preview=preview, is_error=is_error):
            style = "red" if is_error else "dim"
            console.print(f"[{style}]  ← {preview or 'done'}[/{style}]")
        case TurnWarningEvent(warning=warning):
            err_console.print(f"[yellow]warning:[/yellow] {warning['message']}")
        case PatchProposedEvent(files=files, hunks=hunks):
            console.print(f"\n[bold]Patch proposed:[/bold] {hunks} hunk(s) in {', '.join(files)}")


def _print_turn_outcome(turn: Turn | None) -> None:
    if turn is None:
        return
    if turn.state is TurnState.ERRORED and turn.error is not None:
        err_console.print(f"[red]Error:[/red] {turn.error.message}")
    elif turn.state is TurnState.CANCELLED:
        err_console.print("[yellow]Cancelled.[/yellow]")


@click.group(invoke_without_command=True)
@click.option("--log-level", default=None, help="Log level (DEBUG, INFO, WARNING, ERROR)")
@click.pass_context
def main(ctx, log_level: str | None):
    """tern - streaming coding assistant with audited tool calls and revertible patches"""
    ctx.ensure_object(dict)
    try:
        config = get_config()
        if log_level:
            config.log_level = log_level
        ctx.obj["config"] = config
        configure_logging(config.log_level)
    except ValueError as e:
        ctx.obj["config_error"] = str(e)

    if ctx.invoked_subcommand is None:
        console.print("[bold]tern[/bold] - streaming coding assistant\n")
        console.print("Run [cyan]tern run -p \"...\"[/cyan] to execute one turn.")
        console.print("\nUse [cyan]tern --help[/cyan] for all commands.")


def _config_or_exit(ctx):
    if "config_error" in ctx.obj:
        err_console.print(f"[red]Error:[/red] {ctx.obj['config_error']}")
        raise SystemExit(1)
    return ctx.obj["config"]


@main.command()
@click.pass_context
def status(ctx):
    """Show configuration and session status."""
    config = _config_or_exit(ctx)
    console.print("[bold]tern status[/bold]\n")
    console.print(f"Workspace: [cyan]{config.workspace}[/cyan]")
    console.print(f"Data dir: [cyan]{config.data_dir}[/cyan]")
    console.print(f"Model: {config.model} via {config.api_base}")
    console.print(f"API key: {'set' if config.api_key else '[red]missing[/red]'}")
    servers = ", ".join(s.id for s in config.remote_servers) or "none"
    console.print(f"Remote tool servers: {servers}")
    console.print(f"Permission rules: {len(config.permissions.rules)}")
    asyncio.run(_print_session_status(config))


async def _print_session_status(config) -> None:
    runtime = Runtime(config)
    await runtime.connect()
    try:
        session = runtime.session
        console.print(f"Session: {session.session_id} ({len(session.messages)} messages, {len(session.journal)} patches)")
    finally:
        await runtime.close()


@main.command()
@click.option("-p", "--prompt", required=True, help="The prompt to execute")
@click.option("--apply", "apply_patch", is_flag=True, help="Apply a proposed patch instead of discarding it")
@click.option("-y", "--yes", "assume_yes", is_flag=True, help="Approve every confirmation prompt")
@click.option("--new-session", is_flag=True, help="Start a fresh session instead of resuming the latest")
@click.pass_context
def run(ctx, prompt: str, apply_patch: bool, assume_yes: bool, new_session: bool):
    """Run one turn with a prompt (headless mode)."""
    config = _config_or_exit(ctx)
    code = asyncio.run(_run_headless(config, prompt, apply_patch, assume_yes, not new_session))
    raise SystemExit(code)


async def _run_headless(config, prompt: str, apply_patch: bool, assume_yes: bool, resume: bool) -> int:
    runtime = Runtime(config, confirm=_make_confirm(assume_yes))
    runtime.bus.subscribe_all(_render_event)
    await runtime.connect(resume=resume)
    orchestrator = runtime.orchestrator
    try:
        ack = await orchestrator.submit(prompt)
        await orchestrator.join()
        console.print()

        turn = orchestrator.turn
        if turn is not None and turn.state is TurnState.PATCH_PROPOSED:
            if not apply_patch:
                await orchestrator.discard()
                console.print("[dim]Patch discarded (use --apply to write it).[/dim]")
                return 0
            try:
                result = await orchestrator.apply()
            except TernError as e:
                err_console.print(f"[red]Apply failed:[/red] {e.message}")
                return 1
            if isinstance(result, PartialFailure):
                err_console.print(f"[red]Patch partially applied:[/red]\n{result.summary()}")
                if result.record is not None:
                    console.print(f"Journal record {result.record.id} covers the files that were written.")
                return 1
            console.print(f"[green]Applied[/green] patch {result.id} to {', '.join(result.paths)}")
            return 0

        archived = [t for t in runtime.session.archived_turns if t.id == ack.turn_id]
        final = archived[-1] if archived else turn
        _print_turn_outcome(final)
        return 1 if final is not None and final.state is TurnState.ERRORED else 0
    finally:
        await runtime.close()


@main.command()
@click.pass_context
def journal(ctx):
    """List applied patches that can be reverted."""
    config = _config_or_exit(ctx)
    asyncio.run(_show_journal(config))


async def _show_journal(config) -> None:
    runtime = Runtime(config)
    await runtime.connect()
    try:
        records = runtime.session.journal.records
        if not records:
            console.print("[dim]No applied patches.[/dim]")
            return
        table = Table(title=f"Revert journal ({runtime.session.session_id})")
        table.add_column("id", justify="right")
        table.add_column("applied")
        table.add_column("turn")
        table.add_column("files")
        for record in records:
            table.add_row(
                str(record.id),
                record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
                record.turn_id,
                ", ".join(record.paths),
            )
        console.print(table)
    finally:
        await runtime.close()


@main.command()
@click.option("--id", "record_id", type=int, default=None, help="Revert the journal record with this id")
@click.option("--count", type=int, default=None, help="Revert the N most recent patches")
@click.pass_context
def revert(ctx, record_id: int | None, count: int | None):
    """Revert applied patches."""
    config = _config_or_exit(ctx)
    if record_id is not None and count is not None:
        raise click.UsageError("use either --id or --count, not both")
    selector = RevertSelector.by_id(record_id) if record_id is not None else RevertSelector.last(count or 1)
    raise SystemExit(asyncio.run(_revert(config, selector)))


async def _revert(config, selector: RevertSelector) -> int:
    runtime = Runtime(config)
    await runtime.connect()
    try:
        try:
            report = await runtime.orchestrator.revert(selector)
        except TernError as e:
            err_console.print(f"[red]Error:[/red] {e.message}")
            return 1
        for record in report.reverted:
            console.print(f"[green]Reverted[/green] patch {record.id} ({', '.join(record.paths)})")
        for conflict in [*report.conflicts, *report.errors]:
            err_console.print(f"[yellow]Skipped:[/yellow] {conflict.message}")
        return 0 if report.ok else 1
    finally:
        await runtime.close()


if __name__ == "__main__":
    main()
