"""Automation client - typed operations over the emulator's RPC socket."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

import structlog

from macemu_agent.errors import not_connected_error
from macemu_agent.protocol.rpc import Reply, RpcTransport, WireValue

logger = structlog.get_logger()


class MethodId(IntEnum):
    """Method ids assigned by the BasiliskII automation server."""

    KEY_DOWN = 101
    KEY_UP = 102
    MOUSE_MOVE = 103
    MOUSE_DOWN = 104
    MOUSE_UP = 105
    GET_SCREEN_SIZE = 106
    SCREENSHOT = 107
    TYPE_TEXT = 108
    CLICK = 109
    PING = 110
    WAIT_MS = 111


class MouseButton(IntEnum):
    """Mouse button values."""

    PRIMARY = 0
    SECONDARY = 1
    MIDDLE = 2


@dataclass(frozen=True)
class ScreenSize:
    """Emulated display geometry."""

    width: int
    height: int
    depth: int

    @property
    def usable(self) -> bool:
        return self.width > 0 and self.height > 0


@dataclass(frozen=True)
class Screenshot:
    """Raw framebuffer capture."""

    width: int
    height: int
    depth: int
    stride: int
    pixels: bytes


class AutomationClient:
    """Client for the BasiliskII automation server.

    Every operation issues exactly one call and awaits exactly one reply.
    """

    def __init__(self, socket_path: str) -> None:
        self.socket_path = socket_path
        self._transport: RpcTransport | None = None

    @property
    def is_connected(self) -> bool:
        return self._transport is not None and self._transport.is_open

    async def connect(self) -> None:
        """Open the socket. Raises AutomationConnectionError while the emulator boots."""
        await self.disconnect()
        self._transport = await RpcTransport.open(self.socket_path)
        logger.info("automation_connected", socket=self.socket_path)

    async def disconnect(self) -> None:
        """Close the socket if open."""
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()
            logger.info("automation_disconnected", socket=self.socket_path)

    async def _call(self, method: MethodId, *args: WireValue) -> Reply:
        if self._transport is None:
            raise not_connected_error(self.socket_path)
        return await self._transport.call(method, *args)

    async def ping(self) -> bool:
        """Check that the server is answering."""
        reply = await self._call(MethodId.PING)
        return len(reply) > 0 and reply.integer(0) == 1

    async def get_screen_size(self) -> ScreenSize:
        reply = (await self._call(MethodId.GET_SCREEN_SIZE)).expect_at_least(3, "screen size")
        return ScreenSize(reply.integer(0), reply.integer(1), reply.integer(2))

    async def mouse_move(self, x: int, y: int) -> None:
        await self._call(MethodId.MOUSE_MOVE, WireValue.int32(x), WireValue.int32(y))

    async def click(self, x: int, y: int, button: MouseButton = MouseButton.PRIMARY) -> None:
        logger.debug("automation_click", x=x, y=y, button=int(button))
        await self._call(
            MethodId.CLICK,
            WireValue.int32(x),
            WireValue.int32(y),
            WireValue.int32(button),
        )

    async def double_click(
        self, x: int, y: int, button: MouseButton = MouseButton.PRIMARY
    ) -> None:
        await self.click(x, y, button)
        await self.wait_ms(100)
        await self.click(x, y, button)

    async def mouse_down(self, button: MouseButton = MouseButton.PRIMARY) -> None:
        await self._call(MethodId.MOUSE_DOWN, WireValue.int32(button))

    async def mouse_up(self, button: MouseButton = MouseButton.PRIMARY) -> None:
        await self._call(MethodId.MOUSE_UP, WireValue.int32(button))

    async def key_down(self, code: int) -> None:
        await self._call(MethodId.KEY_DOWN, WireValue.int32(code))

    async def key_up(self, code: int) -> None:
        await self._call(MethodId.KEY_UP, WireValue.int32(code))

    async def key_chord(self, *codes: int) -> None:
        """Press keys in order, release in reverse (e.g. Command, O)."""
        for code in codes:
            await self.key_down(code)
        for code in reversed(codes):
            await self.key_up(code)

    async def type_text(self, text: str) -> None:
        """Send a whole string; the server injects it character by character."""
        logger.debug("automation_type_text", text=text)
        await self._call(MethodId.TYPE_TEXT, WireValue.string(text))

    async def wait_ms(self, ms: int) -> None:
        """Ask the server to pause its event queue for ``ms`` milliseconds."""
        await self._call(MethodId.WAIT_MS, WireValue.int32(ms))

    async def screenshot(self) -> Screenshot:
        reply = (await self._call(MethodId.SCREENSHOT)).expect_at_least(5, "screenshot")
        return Screenshot(
            width=reply.integer(0),
            height=reply.integer(1),
            depth=reply.integer(2),
            stride=reply.integer(3),
            pixels=reply.byte_array(len(reply) - 1),
        )
