"""CLI entry point using Typer."""

from __future__ import annotations

import typer

from macemu_agent.cli.commands import emulator, test_cmd

app = typer.Typer(
    name="macemu-agent",
    help="Automated UI-level testing of classic Mac apps in BasiliskII",
    no_args_is_help=True,
)


@app.command()
def version() -> None:
    """Show version information."""
    from macemu_agent import __version__

    typer.echo(f"macemu-agent v{__version__}")


app.add_typer(test_cmd.app, name="test")
app.add_typer(emulator.app, name="emulator")


if __name__ == "__main__":
    app()
