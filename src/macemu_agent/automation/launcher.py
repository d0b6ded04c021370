"""App launcher - opens a guest application through the Finder.

The automation protocol has no "run program" verb, so the launcher drives
the Finder with type-ahead selection and Command-O. Nothing confirms that a
selection landed before the open chord is sent; the settle delays are
guesses sized for a 68K guest. A missed selection shows up later as a result
timeout, and the launch is not retried.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

import structlog

from macemu_agent.automation.client import AutomationClient

logger = structlog.get_logger()


class MacKey(IntEnum):
    """Classic Mac virtual key codes."""

    RETURN = 0x24
    TAB = 0x30
    COMMAND = 0x37
    SHIFT = 0x38
    OPTION = 0x3A
    O = 0x1F
    W = 0x0D


@dataclass(frozen=True)
class NavigationTiming:
    """Settle delays (ms) between steps, sent as remote wait_ms calls."""

    close_windows_ms: int = 500
    focus_click_ms: int = 500
    type_ahead_ms: int = 300
    open_volume_ms: int = 1500
    open_app_ms: int = 1000
    close_folder_ms: int = 500


class AppLauncher:
    """Launch apps on the shared volume by keyboard navigation."""

    def __init__(
        self,
        client: AutomationClient,
        *,
        volume_name: str = "Unix",
        desktop_point: tuple[int, int] = (320, 300),
        timing: NavigationTiming | None = None,
    ) -> None:
        self._client = client
        self.volume_name = volume_name
        self.desktop_point = desktop_point
        self.timing = timing or NavigationTiming()

    async def launch(self, app_name: str) -> None:
        """Open ``app_name`` from the shared volume's folder window."""
        client = self._client
        timing = self.timing
        logger.info("launch_app_start", app=app_name, volume=self.volume_name)

        # Start from a clean desktop (Command-Option-W closes every window).
        await client.key_chord(MacKey.COMMAND, MacKey.OPTION, MacKey.W)
        await client.wait_ms(timing.close_windows_ms)

        x, y = self.desktop_point
        await client.click(x, y)
        await client.wait_ms(timing.focus_click_ms)

        await self._select_and_open(self.volume_name, timing.open_volume_ms)
        await self._select_and_open(app_name, timing.open_app_ms)

        await client.key_chord(MacKey.COMMAND, MacKey.W)
        await client.wait_ms(timing.close_folder_ms)
        logger.info("launch_app_sent", app=app_name)

    async def _select_and_open(self, item: str, open_delay_ms: int) -> None:
        await self._client.type_text(item)
        await self._client.wait_ms(self.timing.type_ahead_ms)
        await self._client.key_chord(MacKey.COMMAND, MacKey.O)
        await self._client.wait_ms(open_delay_ms)
