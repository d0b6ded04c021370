"""Build collaborator - compiles test apps and stages them on the shared volume."""

from __future__ import annotations

import asyncio
import contextlib
import shutil
from pathlib import Path
from typing import Protocol

import structlog

from macemu_agent.config import TestTarget
from macemu_agent.errors import (
    artifact_not_found_error,
    build_failed_error,
    stage_failed_error,
)

logger = structlog.get_logger()

CMAKE_TIMEOUT = 120.0
MAKE_TIMEOUT = 300.0


class Builder(Protocol):
    """Builds one target and returns the artifact path."""

    async def build(self, target: TestTarget) -> Path: ...

    def artifact_path(self, target: TestTarget) -> Path: ...


class CMakeBuilder:
    """Retro68 CMake project: configure once, then ``make <target>``."""

    def __init__(
        self,
        app_path: Path,
        toolchain_file: Path | None = None,
        *,
        jobs: int = 4,
    ) -> None:
        self.app_path = app_path
        self.build_dir = app_path / "build"
        self.toolchain_file = toolchain_file
        self.jobs = jobs

    def artifact_path(self, target: TestTarget) -> Path:
        return self.build_dir / target.artifact_name

    async def build(self, target: TestTarget) -> Path:
        self.build_dir.mkdir(parents=True, exist_ok=True)

        if not (self.build_dir / "CMakeCache.txt").exists():
            configure = ["cmake", ".."]
            if self.toolchain_file is not None:
                configure.append(f"-DCMAKE_TOOLCHAIN_FILE={self.toolchain_file}")
            await self._run(configure, target, timeout=CMAKE_TIMEOUT)

        await self._run(
            ["make", target.build_target, f"-j{self.jobs}"], target, timeout=MAKE_TIMEOUT
        )

        artifact = self.artifact_path(target)
        if not artifact.exists():
            raise artifact_not_found_error(str(artifact))
        logger.info("target_built", target=target.name, artifact=str(artifact))
        return artifact

    async def _run(self, args: list[str], target: TestTarget, *, timeout: float) -> None:
        logger.debug("build_command", args=args, cwd=str(self.build_dir))
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(self.build_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise build_failed_error(target.name, f"{args[0]}: {exc}") from exc

        try:
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise build_failed_error(
                target.name, f"{' '.join(args)} timed out after {timeout:g}s"
            ) from None

        if proc.returncode != 0:
            raise build_failed_error(target.name, stderr.decode(errors="replace"))


def stage_artifact(artifact: Path, shared_folder: Path, app_name: str) -> Path:
    """Copy a built app into the shared folder under its bare name.

    The emulator's extfs treats a ``.APPL`` suffix as a type marker, so the
    guest sees ``TestParsing`` rather than ``TestParsing.APPL``.
    """
    if not artifact.exists():
        raise artifact_not_found_error(str(artifact))
    destination = shared_folder / app_name
    try:
        destination.unlink(missing_ok=True)
        shutil.copy2(artifact, destination)
    except OSError as exc:
        raise stage_failed_error(str(artifact), str(destination), str(exc)) from exc
    logger.info("artifact_staged", source=str(artifact), destination=str(destination))
    return destination
