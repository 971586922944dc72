"""Memory commands: save, search, inspect and maintain project memory."""
from __future__ import annotations

import asyncio
import json
import sys
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rulebook_core.errors import (
    CapacityExceededError,
    ConfigError,
    MemoryDisabledError,
    MemoryValidationError,
    StorageUnavailableError,
)
from rulebook_memory import MemoryManager

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

T = TypeVar("T")

console = Console()

memory_app = typer.Typer(
    no_args_is_help=True,
)
session_app = typer.Typer(
    no_args_is_help=True,
)
memory_app.add_typer(session_app, name="session", help="Start and end memory sessions")


def _fmt_time(ts: float | None) -> str:
    if ts is None:
        return "-"
    return datetime.fromtimestamp(ts).strftime("%Y-%m-%d %H:%M")


def _fmt_bytes(n: int) -> str:
    if n < 1024:
        return f"{n} B"
    size = n / 1024
    for unit in ("KB", "MB"):
        if size < 1024:
            return f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} GB"


def _run(action: Callable[[MemoryManager], Awaitable[T]]) -> T:
    """Run *action* against the project's memory, mapping errors to exits."""

    async def _main() -> T:
        async with MemoryManager.from_config(Path.cwd()) as memory:
            return await action(memory)

    try:
        return asyncio.run(_main())
    except MemoryDisabledError:
        console.print(
            "[yellow]Memory is disabled for this project.[/yellow]\n"
            "Enable it in [bold].rulebook/config.toml[/bold]:\n\n"
            "  \\[memory]\n  enabled = true"
        )
        raise typer.Exit(1) from None
    except MemoryValidationError as exc:
        console.print(f"[red]Invalid input:[/red] {exc}")
        raise typer.Exit(2) from None
    except CapacityExceededError as exc:
        console.print(
            f"[red]Capacity exceeded:[/red] {exc}\n"
            f"[dim]Evicted {exc.result.evicted_count} memories before giving up.[/dim]"
        )
        raise typer.Exit(1) from None
    except (StorageUnavailableError, ConfigError) as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1) from None


# ── Records ──────────────────────────────────────────────────────


@memory_app.command("save")
def memory_save(
    content: str = typer.Argument(..., help="Memory content"),
    title: str = typer.Option("", "--title", "-t", help="Short title (derived from content if omitted)"),
    type: str | None = typer.Option(None, "--type", help="bugfix, feature, refactor, decision, discovery, change, observation"),
    tag: list[str] = typer.Option([], "--tag", help="Tag (repeatable)"),
    project: str | None = typer.Option(None, "--project", "-p", help="Project name"),
    session: str | None = typer.Option(None, "--session", help="Active session id"),
) -> None:
    """Save a memory."""
    record = _run(lambda m: m.save_memory(
        title=title,
        content=content,
        project=project,
        type=type,
        tags=tag,
        session_id=session,
    ))
    console.print(
        f"[green]Saved[/green] {record.id} "
        f"[dim]({record.type.value})[/dim] {record.title}"
    )


@memory_app.command("get")
def memory_get(
    ids: list[str] = typer.Argument(..., help="Memory id(s)"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Show full memories by id."""
    records = _run(lambda m: m.get_memory(ids))
    if as_json:
        typer.echo(json.dumps([r.to_dict() for r in records], indent=2))
        return
    if not records:
        console.print("[yellow]No memories found.[/yellow]")
        raise typer.Exit(1)
    for record in records:
        meta = (
            f"[bold]Type:[/bold] {record.type.value}   "
            f"[bold]Project:[/bold] {record.project}   "
            f"[bold]Created:[/bold] {_fmt_time(record.created_at)}"
        )
        if record.tags:
            meta += f"\n[bold]Tags:[/bold] {', '.join(record.tags)}"
        console.print(Panel(
            f"{meta}\n\n{record.content}",
            title=f"{record.title} [dim]{record.id}[/dim]",
            border_style="cyan",
        ))


@memory_app.command("search")
def memory_search(
    query: str = typer.Argument(..., help="Search query"),
    mode: str = typer.Option("hybrid", "--mode", "-m", help="lexical, vector or hybrid"),
    limit: int | None = typer.Option(None, "--limit", "-n", help="Maximum results"),
    type: str | None = typer.Option(None, "--type", help="Only this memory type"),
    project: str | None = typer.Option(None, "--project", "-p", help="Only this project"),
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Search memories."""
    response = _run(lambda m: m.search_memories(
        query, mode=mode, limit=limit, type=type, project=project,
    ))
    if as_json:
        typer.echo(json.dumps(response.to_dict(), indent=2))
        return
    if not response.results:
        console.print(f"[yellow]No memories matched:[/yellow] '{query}'")
        return

    table = Table(
        title=f"Memories matching: '{query}' ({response.mode.value})",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Score", justify="right")
    table.add_column("Match")
    table.add_column("Type")
    table.add_column("Title", style="bold")
    table.add_column("Created")
    table.add_column("ID", style="dim")
    for result in response.results:
        table.add_row(
            f"{result.score:.4f}",
            result.match_type.value,
            result.type.value,
            result.title,
            _fmt_time(result.created_at),
            result.id,
        )
    console.print(table)
    console.print(
        f"\n[dim]{len(response.results)} of {response.total} match(es).[/dim]"
    )


@memory_app.command("timeline")
def memory_timeline(
    anchor_id: str = typer.Argument(..., help="Memory id to center on"),
    window: int = typer.Option(5, "--window", "-w", help="Neighbours to show"),
) -> None:
    """Show memories created around another memory."""
    entries = _run(lambda m: m.get_timeline(anchor_id, window))
    if not entries:
        console.print(f"[red]Memory not found:[/red] {anchor_id}")
        raise typer.Exit(1)

    table = Table(show_header=True, header_style="bold cyan")
    table.add_column("", justify="right")
    table.add_column("Created")
    table.add_column("Type")
    table.add_column("Title")
    table.add_column("ID", style="dim")
    for entry in entries:
        style = "bold green" if entry.position == "anchor" else ""
        table.add_row(
            f"{entry.offset:+d}",
            _fmt_time(entry.created_at),
            entry.type.value,
            f"[{style}]{entry.title}[/{style}]" if style else entry.title,
            entry.id,
        )
    console.print(table)


@memory_app.command("delete")
def memory_delete(
    memory_id: str = typer.Argument(..., help="Memory id"),
) -> None:
    """Delete a memory."""
    if not _run(lambda m: m.delete_memory(memory_id)):
        console.print(f"[red]Memory not found:[/red] {memory_id}")
        raise typer.Exit(1)
    console.print(f"[green]Deleted[/green] {memory_id}")


@memory_app.command("list")
def memory_list(
    limit: int | None = typer.Option(None, "--limit", "-n", help="Maximum memories"),
    offset: int = typer.Option(0, "--offset", help="Skip this many"),
    project: str | None = typer.Option(None, "--project", "-p", help="Only this project"),
    type: str | None = typer.Option(None, "--type", help="Only this memory type"),
) -> None:
    """List recent memories."""
    summaries = _run(lambda m: m.list_memories(
        limit=limit, offset=offset, project=project, type=type,
    ))
    if not summaries:
        console.print("[yellow]No memories stored yet.[/yellow]")
        return

    table = Table(title="Recent Memories", show_header=True, header_style="bold cyan")
    table.add_column("Created")
    table.add_column("Type")
    table.add_column("Project")
    table.add_column("Title", style="bold")
    table.add_column("ID", style="dim")
    for summary in summaries:
        table.add_row(
            _fmt_time(summary.created_at),
            summary.type.value,
            summary.project,
            summary.title,
            summary.id,
        )
    console.print(table)


# ── Maintenance ──────────────────────────────────────────────────


@memory_app.command("stats")
def memory_stats(
    as_json: bool = typer.Option(False, "--json", help="Print raw JSON"),
) -> None:
    """Show storage usage and index health."""
    stats = _run(lambda m: m.stats())
    if as_json:
        typer.echo(json.dumps(stats.to_dict(), indent=2))
        return

    health_style = {
        "good": "green", "degraded": "yellow", "needs-rebuild": "red",
    }[stats.index_health.value]
    table = Table(title="Memory Stats", show_header=False)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("Memories", str(stats.record_count))
    table.add_row("Sessions", str(stats.session_count))
    table.add_row("Database", _fmt_bytes(stats.db_size_bytes))
    table.add_row("Vector index", _fmt_bytes(stats.index_size_bytes))
    table.add_row(
        "Usage",
        f"{_fmt_bytes(stats.total_size_bytes)} / {_fmt_bytes(stats.max_size_bytes)}"
        f" ({stats.usage_percent:.1f}%)",
    )
    table.add_row("Oldest", _fmt_time(stats.oldest_record))
    table.add_row("Newest", _fmt_time(stats.newest_record))
    table.add_row(
        "Index health",
        f"[{health_style}]{stats.index_health.value}[/{health_style}]"
        f" [dim]{stats.index_detail}[/dim]",
    )
    console.print(table)


@memory_app.command("cleanup")
def memory_cleanup(
    force: bool = typer.Option(False, "--force", "-f", help="Evict even when under the limit"),
) -> None:
    """Evict least recently used memories."""
    result = _run(lambda m: m.cleanup(force=force))
    if not result.evicted_count:
        console.print("[dim]Nothing to evict.[/dim]")
        return
    console.print(
        f"[green]Evicted {result.evicted_count} memories[/green],"
        f" freed {_fmt_bytes(result.freed_bytes)}."
    )


@memory_app.command("export")
def memory_export(
    format: str = typer.Option("json", "--format", "-f", help="json or csv"),
    output: Path | None = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
) -> None:
    """Export every memory with full content."""
    data = _run(lambda m: m.export_all(format))
    if output is None:
        typer.echo(data)
        return
    output.write_text(data, encoding="utf-8")
    console.print(f"[green]Exported[/green] to {output}")


@memory_app.command("rebuild")
def memory_rebuild() -> None:
    """Rebuild the search indexes from stored memories."""
    count = _run(lambda m: m.rebuild_index())
    console.print(f"[green]Rebuilt indexes[/green] for {count} memories.")


@memory_app.command("capture")
def memory_capture(
    file: Path | None = typer.Option(None, "--file", help="Read agent output from a file (default: stdin)"),
    agent: str = typer.Option("claude", "--agent", "-a", help="Agent that produced the output"),
    session: str | None = typer.Option(None, "--session", help="Active session id"),
) -> None:
    """Capture memories from agent output."""
    text = file.read_text(encoding="utf-8") if file else sys.stdin.read()

    async def _capture(memory: MemoryManager) -> tuple[int, int]:
        before = (await memory.stats()).record_count
        dispatcher = memory.capture_dispatcher(session)
        dispatched = dispatcher.dispatch_output(text, agent)
        await dispatcher.drain()
        return dispatched, (await memory.stats()).record_count - before

    dispatched, saved = _run(_capture)
    if not dispatched:
        console.print("[dim]Nothing worth capturing.[/dim]")
        return
    console.print(f"[green]Captured {saved}[/green] of {dispatched} chunk(s).")


@memory_app.command("serve")
def memory_serve() -> None:
    """Serve the rulebook_memory_* tools over MCP (stdio)."""
    from rulebook_tools.memory_server import memory_server

    memory_server.run()


# ── Sessions ─────────────────────────────────────────────────────


@session_app.command("start")
def session_start(
    project: str | None = typer.Option(None, "--project", "-p", help="Project name"),
) -> None:
    """Start a session; prints its id."""
    session = _run(lambda m: m.start_session(project))
    console.print(f"[green]Started session[/green] {session.id}")


@session_app.command("end")
def session_end(
    session_id: str = typer.Argument(..., help="Session id"),
    summary: str | None = typer.Option(None, "--summary", "-s", help="What the session achieved"),
) -> None:
    """End a session."""
    session = _run(lambda m: m.end_session(session_id, summary))
    if session is None:
        console.print(f"[red]Session not found:[/red] {session_id}")
        raise typer.Exit(1)
    console.print(f"[green]Ended session[/green] {session.id}")
