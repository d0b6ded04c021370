"""Shared CLI helpers."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Coroutine
from typing import Any, TypeVar

import typer

from macemu_agent.errors import AgentError
from macemu_agent.runner.orchestrator import RunReport

T = TypeVar("T")

RULE_WIDTH = 50


def format_json(data: Any) -> str:
    return json.dumps(data, indent=2, ensure_ascii=True)


def render_error(error: AgentError, json_output: bool = False) -> None:
    """Print an error with its remediation hint and exit non-zero."""
    if json_output:
        typer.echo(format_json({"status": "error", "error": error.to_dict()}))
    else:
        typer.echo(f"{error.code}: {error.message}")
        last_error = error.context.get("last_error")
        if last_error:
            typer.echo(f"Last error: {last_error}")
        if error.remediation:
            typer.echo(f"Hint: {error.remediation}")
    raise typer.Exit(code=1)


def run_command(coro: Coroutine[Any, Any, T], json_output: bool = False) -> T:
    """Run a coroutine, rendering AgentError as a CLI failure."""
    try:
        return asyncio.run(coro)
    except AgentError as exc:
        render_error(exc, json_output=json_output)
        raise  # unreachable; render_error always exits


def render_report(report: RunReport) -> None:
    typer.echo("")
    typer.echo("=" * RULE_WIDTH)
    typer.echo("FINAL TEST RESULTS")
    typer.echo("=" * RULE_WIDTH)
    typer.echo("")

    for outcome in report.outcomes:
        typer.echo(f"{outcome.target.display_name}:")
        if outcome.results is not None:
            for result in outcome.results.tests:
                icon = "  [PASS]" if result.passed else "  [FAIL]"
                typer.echo(f"{icon} {result.name}")
                if not result.passed and result.details:
                    typer.echo(f"         {result.details}")
        if outcome.error is not None:
            typer.echo(f"  [ERROR] {outcome.error.message}")
        if outcome.screenshot is not None:
            typer.echo(f"  Screenshot: {outcome.screenshot}")
        typer.echo("")

    typer.echo("-" * RULE_WIDTH)
    typer.echo(f"Total: {report.total_passed} passed, {report.total_failed} failed")
    typer.echo("-" * RULE_WIDTH)
    typer.echo("")
    typer.echo("All tests passed!" if report.success else "Some tests failed!")
