"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

import pytest

from macemu_agent.config import HarnessSettings
from macemu_agent.protocol.rpc import Sentinel, TypeTag, WireValue
from macemu_agent.protocol.wire import pack_int32, pack_string, pack_uint32


class FakeStreamWriter:
    """Captures bytes written by the client."""

    def __init__(self, drain_error: BaseException | None = None) -> None:
        self.data = bytearray()
        self.drain_error = drain_error
        self.closed = False

    def write(self, data: bytes) -> None:
        self.data.extend(data)

    async def drain(self) -> None:
        if self.drain_error is not None:
            raise self.drain_error

    def is_closing(self) -> bool:
        return self.closed

    def close(self) -> None:
        self.closed = True

    async def wait_closed(self) -> None:
        return None


class FakeClock:
    """Monotonic clock that only moves when sleep() is awaited."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def encode_value(value: WireValue) -> bytes:
    """Server-side encoding of one tagged value."""
    out = pack_int32(value.tag)
    if value.tag is TypeTag.INT32:
        out += pack_int32(int(value.value))  # type: ignore[arg-type]
    elif value.tag is TypeTag.UINT32:
        out += pack_uint32(int(value.value))  # type: ignore[arg-type]
    elif value.tag is TypeTag.STRING:
        out += pack_string(str(value.value))
    elif value.tag is TypeTag.BYTE_ARRAY:
        data = value.value
        assert isinstance(data, bytes)
        out += pack_int32(TypeTag.BYTE) + pack_uint32(len(data)) + data
    return out


def encode_reply(
    *values: WireValue,
    head: int = Sentinel.REPLY_TAG,
    ack: int = Sentinel.REPLY_ACK,
) -> bytes:
    """Build the bytes the automation server sends back for one call."""
    body = b"".join(encode_value(value) for value in values)
    return pack_int32(head) + body + pack_int32(Sentinel.CALL_END) + pack_int32(ack)


@pytest.fixture
def reply_bytes() -> Callable[..., bytes]:
    return encode_reply


@pytest.fixture
def fake_writer() -> FakeStreamWriter:
    return FakeStreamWriter()


@pytest.fixture
def make_reader() -> Callable[..., asyncio.StreamReader]:
    """StreamReader pre-loaded with bytes; call inside a running loop."""

    def _make(data: bytes = b"", eof: bool = True) -> asyncio.StreamReader:
        reader = asyncio.StreamReader()
        if data:
            reader.feed_data(data)
        if eof:
            reader.feed_eof()
        return reader

    return _make


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings(tmp_path: Path) -> HarnessSettings:
    """Settings with a real shared folder and default timings."""
    shared = tmp_path / "shared"
    shared.mkdir()
    return HarnessSettings(
        socket_path=str(tmp_path / "automation.sock"),
        shared_folder=shared,
        emulator_candidates=[],
    )
