"""Test orchestrator - build, deploy, boot, run each target, report."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from macemu_agent.automation.client import AutomationClient, Screenshot
from macemu_agent.automation.launcher import AppLauncher
from macemu_agent.config import HarnessSettings, TestTarget
from macemu_agent.emulator.boot import BootOrchestrator, BootResult
from macemu_agent.errors import AgentError
from macemu_agent.runner.build import Builder, stage_artifact
from macemu_agent.runner.results import ResultWatcher, TestResultSet

logger = structlog.get_logger()

LauncherFactory = Callable[[AutomationClient], AppLauncher]


@dataclass
class RunOptions:
    """Per-invocation switches."""

    skip_build: bool = False
    keep_running: bool = False
    use_existing: bool = False
    timeout_s: float = 60.0
    screenshot: bool = False


@dataclass
class TargetOutcome:
    """What happened to one target."""

    target: TestTarget
    results: TestResultSet | None = None
    error: AgentError | None = None
    screenshot: Path | None = None

    @property
    def passed(self) -> bool:
        return self.error is None and self.results is not None and self.results.failed == 0

    @property
    def passed_count(self) -> int:
        return self.results.passed if self.results else 0

    @property
    def failed_count(self) -> int:
        # A target that never produced results counts as one failure.
        if self.results is None:
            return 1
        return self.results.failed

    def to_dict(self) -> dict[str, Any]:
        return {
            "target": self.target.name,
            "display_name": self.target.display_name,
            "passed": self.passed,
            "results": self.results.to_dict() if self.results else None,
            "error": self.error.to_dict() if self.error else None,
            "screenshot": str(self.screenshot) if self.screenshot else None,
        }


@dataclass
class RunReport:
    """Aggregate of every attempted target."""

    outcomes: list[TargetOutcome] = field(default_factory=list)

    @property
    def total_passed(self) -> int:
        return sum(outcome.passed_count for outcome in self.outcomes)

    @property
    def total_failed(self) -> int:
        return sum(outcome.failed_count for outcome in self.outcomes)

    @property
    def success(self) -> bool:
        return bool(self.outcomes) and all(outcome.passed for outcome in self.outcomes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "total_passed": self.total_passed,
            "total_failed": self.total_failed,
            "targets": [outcome.to_dict() for outcome in self.outcomes],
        }


def write_screenshot(shot: Screenshot, path: Path) -> Path:
    """Save raw framebuffer bytes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(shot.pixels)
    logger.info(
        "screenshot_saved",
        path=str(path),
        width=shot.width,
        height=shot.height,
        depth=shot.depth,
        stride=shot.stride,
    )
    return path


class TestOrchestrator:
    """Runs a list of targets against one emulator session."""

    __test__ = False

    def __init__(
        self,
        settings: HarnessSettings,
        builder: Builder,
        boot: BootOrchestrator,
        *,
        launcher_factory: LauncherFactory | None = None,
        watcher: ResultWatcher | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._builder = builder
        self._boot = boot
        self._launcher_factory = launcher_factory or self._default_launcher
        self._watcher = watcher or ResultWatcher(settings.result_poll_s)
        self._sleep = sleep

    def _default_launcher(self, client: AutomationClient) -> AppLauncher:
        return AppLauncher(client, volume_name=self._settings.volume_name)

    async def run(self, targets: Sequence[TestTarget], options: RunOptions) -> RunReport:
        """Run every target and report.

        Build, staging, and boot failures raise and abort the run. Failures
        while running a single target are recorded on its outcome.
        """
        shared = self._settings.require_shared_folder()

        if not options.skip_build:
            for target in targets:
                logger.info("building_target", target=target.name)
                await self._builder.build(target)

        for target in targets:
            stage_artifact(self._builder.artifact_path(target), shared, target.name)

        if options.use_existing:
            session = await self._boot.attach()
        else:
            session = await self._boot.boot()

        report = RunReport()
        try:
            launcher = self._launcher_factory(session.client)
            for index, target in enumerate(targets):
                logger.info(
                    "target_start", target=target.name, index=index + 1, total=len(targets)
                )
                outcome = await self._run_target(session, launcher, target, shared, options)
                report.outcomes.append(outcome)
                if index < len(targets) - 1:
                    await self._sleep(self._settings.inter_target_pause_s)
        finally:
            await self._boot.release(session, keep_running=options.keep_running)

        logger.info(
            "run_complete",
            success=report.success,
            passed=report.total_passed,
            failed=report.total_failed,
        )
        return report

    async def _run_target(
        self,
        session: BootResult,
        launcher: AppLauncher,
        target: TestTarget,
        shared: Path,
        options: RunOptions,
    ) -> TargetOutcome:
        outcome = TargetOutcome(target=target)
        results_path = shared / target.log_file
        results_path.unlink(missing_ok=True)

        try:
            await launcher.launch(target.name)
        except AgentError as exc:
            logger.error("target_launch_failed", target=target.name, error=str(exc))
            outcome.error = exc
            if options.screenshot:
                outcome.screenshot = await self._capture(session, shared, f"error_{target.name}")
            return outcome

        try:
            outcome.results = await self._watcher.wait(results_path, options.timeout_s)
        except AgentError as exc:
            logger.error("target_collect_failed", target=target.name, error=str(exc))
            outcome.error = exc
        else:
            if outcome.results.failed:
                logger.warning(
                    "target_failed",
                    target=target.name,
                    passed=outcome.results.passed,
                    failed=outcome.results.failed,
                )
            else:
                logger.info("target_passed", target=target.name, passed=outcome.results.passed)

        if options.screenshot:
            outcome.screenshot = await self._capture(session, shared, f"after_{target.name}")
        return outcome

    async def _capture(self, session: BootResult, directory: Path, name: str) -> Path | None:
        """Best-effort screenshot; a failure here never changes the outcome."""
        try:
            shot = await session.client.screenshot()
            return write_screenshot(shot, directory / f"{name}.raw")
        except (AgentError, OSError) as exc:
            logger.warning("screenshot_failed", name=name, error=str(exc))
            return None
