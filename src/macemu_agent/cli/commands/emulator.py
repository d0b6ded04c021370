"""Emulator management CLI commands."""

from __future__ import annotations

import contextlib
from pathlib import Path
from typing import Any

import typer

from macemu_agent.automation.client import AutomationClient
from macemu_agent.cli.utils import format_json, render_error, run_command
from macemu_agent.config import HarnessSettings, load_settings
from macemu_agent.emulator.boot import BootOrchestrator
from macemu_agent.emulator.process import ProcessSupervisor
from macemu_agent.errors import AgentError
from macemu_agent.logging_setup import configure_logging
from macemu_agent.runner.orchestrator import write_screenshot

app = typer.Typer(help="Emulator management commands")


def _load_settings(json_output: bool = False, **overrides: Any) -> HarnessSettings:
    try:
        return load_settings(**overrides)
    except AgentError as exc:
        render_error(exc, json_output=json_output)
        raise  # unreachable; render_error always exits


async def _ping(settings: HarnessSettings) -> bool:
    client = AutomationClient(settings.socket_path)
    await client.connect()
    try:
        return await client.ping()
    finally:
        await client.disconnect()


async def _screen_size(settings: HarnessSettings) -> dict[str, int]:
    result = await BootOrchestrator(ProcessSupervisor(settings), settings).attach()
    await result.client.disconnect()
    return {
        "width": result.screen.width,
        "height": result.screen.height,
        "depth": result.screen.depth,
    }


async def _screenshot(settings: HarnessSettings, output: Path) -> dict[str, object]:
    client = AutomationClient(settings.socket_path)
    await client.connect()
    try:
        shot = await client.screenshot()
    finally:
        await client.disconnect()
    path = write_screenshot(shot, output)
    return {
        "path": str(path),
        "width": shot.width,
        "height": shot.height,
        "depth": shot.depth,
        "stride": shot.stride,
    }


async def _launch(settings: HarnessSettings, verify: bool) -> dict[str, object]:
    supervisor = ProcessSupervisor(settings)
    if not verify:
        await supervisor.force_kill()
        with contextlib.suppress(FileNotFoundError):
            Path(settings.socket_path).unlink()
        handle = await supervisor.launch()
        return {"status": "done", "pid": handle.pid, "socket": settings.socket_path}

    boot = BootOrchestrator(supervisor, settings)
    result = await boot.boot()
    await boot.release(result, keep_running=True)
    return {
        "status": "done",
        "pid": result.handle.pid if result.handle else None,
        "socket": settings.socket_path,
        "attempts": result.attempts,
        "screen": f"{result.screen.width}x{result.screen.height}",
    }


async def _stop(settings: HarnessSettings) -> None:
    await ProcessSupervisor(settings).force_kill()
    with contextlib.suppress(FileNotFoundError):
        Path(settings.socket_path).unlink()


@app.command("ping")
def emulator_ping(
    socket_path: str | None = typer.Option(None, "--socket", help="Automation socket path"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Check that the emulator's automation server answers."""
    settings = _load_settings(json_output, socket_path=socket_path)
    alive = run_command(_ping(settings), json_output=json_output)
    if json_output:
        typer.echo(format_json({"alive": alive, "socket": settings.socket_path}))
    else:
        typer.echo("✓ Emulator responding" if alive else "Emulator did not acknowledge ping")
    if not alive:
        raise typer.Exit(code=1)


@app.command("screen-size")
def emulator_screen_size(
    socket_path: str | None = typer.Option(None, "--socket", help="Automation socket path"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Show the emulated display geometry."""
    settings = _load_settings(json_output, socket_path=socket_path)
    size = run_command(_screen_size(settings), json_output=json_output)
    if json_output:
        typer.echo(format_json(size))
    else:
        typer.echo(f"{size['width']}x{size['height']} @ {size['depth']} bpp")


@app.command("screenshot")
def emulator_screenshot(
    output: Path = typer.Argument(..., help="Destination for raw framebuffer bytes"),
    socket_path: str | None = typer.Option(None, "--socket", help="Automation socket path"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Capture the emulated screen as raw pixels."""
    settings = _load_settings(json_output, socket_path=socket_path)
    info = run_command(_screenshot(settings, output), json_output=json_output)
    if json_output:
        typer.echo(format_json(info))
    else:
        typer.echo(
            f"✓ Done -> {info['path']} ({info['width']}x{info['height']}, "
            f"{info['depth']} bpp, stride {info['stride']})"
        )


@app.command("launch")
def emulator_launch(
    verify: bool = typer.Option(
        True, "--verify/--no-verify", help="Wait for boot and verify the display"
    ),
    binary: Path | None = typer.Option(None, "--binary", help="Emulator binary to run"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
    json_output: bool = typer.Option(False, "--json", help="Output JSON"),
) -> None:
    """Launch the emulator with automation enabled and leave it running."""
    configure_logging(verbose)
    settings = _load_settings(json_output, emulator_binary=binary)
    info = run_command(_launch(settings, verify), json_output=json_output)
    if json_output:
        typer.echo(format_json(info))
    else:
        typer.echo(f"✓ Emulator running (pid {info['pid']}, socket {info['socket']})")


@app.command("stop")
def emulator_stop() -> None:
    """Kill any running emulator and remove its socket."""
    settings = _load_settings()
    run_command(_stop(settings))
    typer.echo("✓ Done")
