"""Boot orchestrator - launch, connect, and verify the emulator with retries.

Emulator boots are unreliable: the process sometimes hangs before its
automation socket appears, or answers ping without a usable display. Each
attempt gets a fixed window; a failed attempt kills the process and starts
over from a clean socket.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import structlog

from macemu_agent.automation.client import AutomationClient, ScreenSize
from macemu_agent.config import HarnessSettings
from macemu_agent.emulator.process import ProcessHandle, ProcessSupervisor
from macemu_agent.errors import (
    AgentError,
    AutomationConnectionError,
    ProtocolError,
    TransportError,
    boot_failed_error,
    boot_timeout_error,
    launch_failed_error,
    protocol_error,
)

logger = structlog.get_logger()

ClientFactory = Callable[[str], AutomationClient]
Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]


class BootState(Enum):
    """Boot state machine states."""

    IDLE = "idle"
    LAUNCHING = "launching"
    WAITING_FOR_SOCKET = "waiting_for_socket"
    VERIFYING = "verifying"
    READY = "ready"
    FAILED = "failed"


@dataclass
class BootAttempt:
    """Bookkeeping for one pass through the retry loop."""

    number: int
    handle: ProcessHandle | None = None
    error: BaseException | None = None


@dataclass
class BootResult:
    """A verified, connected emulator."""

    client: AutomationClient
    screen: ScreenSize
    handle: ProcessHandle | None
    attempts: int


class BootOrchestrator:
    """Drives Idle -> Launching -> WaitingForSocket -> Verifying -> Ready/Failed."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        settings: HarnessSettings,
        *,
        client_factory: ClientFactory = AutomationClient,
        clock: Clock = time.monotonic,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._supervisor = supervisor
        self._settings = settings
        self._client_factory = client_factory
        self._clock = clock
        self._sleep = sleep
        self.state = BootState.IDLE
        self.attempts = 0
        self.last_error: BaseException | None = None

    def _transition(self, state: BootState, **context: object) -> None:
        logger.debug("boot_state", state=state.value, attempt=self.attempts, **context)
        self.state = state

    async def boot(self) -> BootResult:
        """Launch a fresh emulator and return a verified connection.

        Raises:
            BootFailedError: every attempt failed; ``context['last_error']``
                holds the final cause.
        """
        budget = self._settings.boot_attempts
        for number in range(1, budget + 1):
            self.attempts = number
            attempt = BootAttempt(number=number)
            if number > 1:
                logger.info("boot_retry", attempt=number, max_attempts=budget)
            try:
                return await self._run_attempt(attempt)
            except AgentError as exc:
                attempt.error = exc
            except OSError as exc:
                attempt.error = launch_failed_error(self._settings.emulator_name, str(exc))
            except BaseException:
                # The emulator runs in its own session; SIGINT never reaches it.
                if attempt.handle is not None:
                    await self._supervisor.kill(attempt.handle)
                self._transition(BootState.FAILED)
                raise

            self.last_error = attempt.error
            logger.warning("boot_attempt_failed", attempt=number, error=str(attempt.error))
            if attempt.handle is not None:
                await self._supervisor.kill(attempt.handle)
            if number < budget:
                await self._sleep(self._settings.boot_cooldown_s)

        self._transition(BootState.FAILED)
        raise boot_failed_error(budget, self.last_error)

    async def attach(self) -> BootResult:
        """Connect to an emulator somebody else launched, then verify it."""
        self.attempts = 1
        client = self._client_factory(self._settings.socket_path)
        self._transition(BootState.WAITING_FOR_SOCKET)
        try:
            await client.connect()
            if not await client.ping():
                raise boot_timeout_error(self._settings.socket_path, 0)
            screen = await self._verify(client)
        except AgentError as exc:
            await client.disconnect()
            self.last_error = exc
            self._transition(BootState.FAILED)
            raise
        self._transition(BootState.READY)
        return BootResult(client=client, screen=screen, handle=None, attempts=1)

    async def release(self, result: BootResult, *, keep_running: bool = False) -> None:
        """Disconnect, and stop the emulator unless asked to leave it up."""
        await result.client.disconnect()
        if result.handle is None:
            return
        if keep_running:
            logger.info("emulator_left_running", pid=result.handle.pid)
            return
        await self._supervisor.kill(result.handle)

    async def _run_attempt(self, attempt: BootAttempt) -> BootResult:
        self._transition(BootState.LAUNCHING)
        self._remove_stale_socket()
        await self._supervisor.force_kill(self._settings.emulator_name)
        attempt.handle = await self._supervisor.launch()

        self._transition(BootState.WAITING_FOR_SOCKET)
        client = await self._wait_for_socket(attempt.handle)
        try:
            screen = await self._verify(client)
            logger.info("emulator_responsive", width=screen.width, height=screen.height)
            # Connectivity arrives before the guest OS finishes starting up.
            await self._sleep(self._settings.os_settle_s)
        except BaseException:
            await client.disconnect()
            raise
        self._transition(BootState.READY)
        return BootResult(
            client=client, screen=screen, handle=attempt.handle, attempts=attempt.number
        )

    def _remove_stale_socket(self) -> None:
        with contextlib.suppress(FileNotFoundError):
            Path(self._settings.socket_path).unlink()

    async def _wait_for_socket(self, handle: ProcessHandle) -> AutomationClient:
        """Poll connect + ping until the per-attempt window closes."""
        window = self._settings.boot_window_s
        deadline = self._clock() + window
        client = self._client_factory(self._settings.socket_path)

        try:
            while self._clock() < deadline:
                if not handle.is_running:
                    raise launch_failed_error(
                        str(handle.binary), f"emulator exited with code {handle.returncode}"
                    )
                try:
                    await client.connect()
                    if await client.ping():
                        return client
                except (AutomationConnectionError, TransportError, ProtocolError) as exc:
                    logger.debug("boot_not_ready", error=str(exc))
                await client.disconnect()
                await self._sleep(self._settings.boot_poll_s)
        except BaseException:
            await client.disconnect()
            raise

        await client.disconnect()
        raise boot_timeout_error(self._settings.socket_path, window)

    async def _verify(self, client: AutomationClient) -> ScreenSize:
        self._transition(BootState.VERIFYING)
        screen = await client.get_screen_size()
        if not screen.usable:
            raise protocol_error(
                f"Screen size invalid: {screen.width}x{screen.height}",
                width=screen.width,
                height=screen.height,
            )
        return screen
