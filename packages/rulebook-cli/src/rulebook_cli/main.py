from __future__ import annotations

import typer
from rulebook_core import __version__, setup_logging

from rulebook_cli.commands.memory import memory_app

app = typer.Typer(
    name="rulebook",
    help="Rulebook — project rules and persistent memory for coding agents",
    no_args_is_help=True,
)

app.add_typer(
    memory_app,
    name="memory",
    help="Save, search and maintain project memory",
)


@app.callback()
def _main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging on stderr"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON lines"),
) -> None:
    setup_logging("DEBUG" if verbose else "WARNING", json_output=json_logs)


@app.command()
def version() -> None:
    """Show the Rulebook version."""
    from rich.console import Console
    Console().print(f"rulebook {__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
