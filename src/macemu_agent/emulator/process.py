"""Process supervisor - launches and terminates the emulator binary."""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

import structlog

from macemu_agent.config import HarnessSettings
from macemu_agent.errors import emulator_not_found_error, launch_failed_error

logger = structlog.get_logger()


@dataclass
class ProcessHandle:
    """A launched emulator process."""

    process: asyncio.subprocess.Process
    binary: Path
    started_at: float = field(default_factory=time.monotonic)

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    @property
    def is_running(self) -> bool:
        return self.process.returncode is None

    async def wait(self) -> int:
        return await self.process.wait()


class ProcessSupervisor:
    """Owns the emulator process lifecycle, independent of the socket."""

    def __init__(self, settings: HarnessSettings) -> None:
        self._settings = settings

    def find_binary(self) -> Path:
        """Return the first existing emulator binary."""
        candidates = self._settings.binary_candidates()
        for candidate in candidates:
            path = candidate.expanduser()
            if path.is_file():
                return path
        on_path = shutil.which(self._settings.emulator_name)
        if on_path:
            return Path(on_path)
        raise emulator_not_found_error([str(c) for c in candidates])

    def _open_log(self) -> IO[bytes] | None:
        log_path = self._settings.emulator_log
        if log_path is None:
            return None
        log_path.parent.mkdir(parents=True, exist_ok=True)
        return log_path.open("ab")

    async def launch(self) -> ProcessHandle:
        """Start the emulator with automation enabled on the configured socket."""
        binary = self.find_binary()
        # The emulator takes a bare socket name and creates it under /tmp.
        args = [str(binary), "--automation", Path(self._settings.socket_path).name]

        log_handle = self._open_log()
        sink: IO[bytes] | int = log_handle if log_handle is not None else subprocess.DEVNULL
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                cwd=str(binary.parent),
                stdin=subprocess.DEVNULL,
                stdout=sink,
                stderr=sink,
                start_new_session=True,
            )
        except OSError as exc:
            raise launch_failed_error(str(binary), str(exc)) from exc
        finally:
            if log_handle is not None:
                log_handle.close()

        logger.info("emulator_launched", pid=process.pid, binary=str(binary))
        return ProcessHandle(process=process, binary=binary)

    async def kill(self, handle: ProcessHandle, grace: float | None = None) -> None:
        """Terminate the process, escalating to SIGKILL after the grace period."""
        if not handle.is_running:
            return
        grace_s = self._settings.kill_grace_s if grace is None else grace

        with contextlib.suppress(ProcessLookupError):
            handle.process.terminate()
        try:
            await asyncio.wait_for(handle.process.wait(), timeout=grace_s)
        except TimeoutError:
            logger.warning("emulator_kill", pid=handle.pid)
            with contextlib.suppress(ProcessLookupError):
                handle.process.kill()
            await handle.process.wait()
        logger.info("emulator_stopped", pid=handle.pid, returncode=handle.returncode)

    async def force_kill(self, name: str | None = None) -> None:
        """Kill every process with the emulator's name (leftovers from earlier runs)."""
        target = name or self._settings.emulator_name
        pkill = shutil.which("pkill")
        if pkill is None:
            logger.warning("pkill_not_found", name=target)
            return
        proc = await asyncio.create_subprocess_exec(
            pkill,
            "-9",
            target,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
        )
        returncode = await proc.wait()
        # pkill exits 1 when nothing matched
        logger.debug("emulator_force_kill", name=target, matched=returncode == 0)
