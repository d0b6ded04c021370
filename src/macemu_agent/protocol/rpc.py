"""RPC transport - call/reply framing for the emulator automation server.

A call is ``CALL_START, method, (tag, value)*, CALL_END``. A reply is
``REPLY_TAG, (tag, value)*, CALL_END, REPLY_ACK``. Sentinels and type tags
live in disjoint negative ranges so a decoder can tell them apart.
"""

from __future__ import annotations

import asyncio
from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from enum import IntEnum
from typing import overload

import structlog

from macemu_agent.errors import (
    connect_error,
    not_connected_error,
    protocol_error,
)
from macemu_agent.protocol.wire import WireReader, WireWriter

logger = structlog.get_logger()


class Sentinel(IntEnum):
    """Control sentinels."""

    CALL_START = -3000
    CALL_END = -3001
    REPLY_ACK = -3002
    REPLY_TAG = -3003


class TypeTag(IntEnum):
    """Value type tags."""

    BYTE = -2001  # element type inside BYTE_ARRAY only
    INT32 = -2002
    UINT32 = -2003
    STRING = -2005
    BYTE_ARRAY = -2006


@dataclass(frozen=True)
class WireValue:
    """One typed value in a call or reply."""

    tag: TypeTag
    value: int | str | bytes

    @classmethod
    def int32(cls, value: int) -> WireValue:
        return cls(TypeTag.INT32, value)

    @classmethod
    def uint32(cls, value: int) -> WireValue:
        return cls(TypeTag.UINT32, value)

    @classmethod
    def string(cls, value: str) -> WireValue:
        return cls(TypeTag.STRING, value)

    @classmethod
    def byte_array(cls, value: bytes) -> WireValue:
        return cls(TypeTag.BYTE_ARRAY, bytes(value))


class Reply(Sequence[WireValue]):
    """Decoded reply values with shape assertions for call sites."""

    def __init__(self, values: Sequence[WireValue], method: int | None = None) -> None:
        self._values = tuple(values)
        self.method = method

    @overload
    def __getitem__(self, index: int) -> WireValue: ...

    @overload
    def __getitem__(self, index: slice) -> Sequence[WireValue]: ...

    def __getitem__(self, index: int | slice) -> WireValue | Sequence[WireValue]:
        return self._values[index]

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[WireValue]:
        return iter(self._values)

    def __repr__(self) -> str:
        return f"Reply(method={self.method}, values={list(self._values)!r})"

    def expect_at_least(self, count: int, what: str) -> Reply:
        if len(self._values) < count:
            raise protocol_error(
                f"Invalid {what} response: expected {count} values, got {len(self._values)}",
                method=self.method,
                received=len(self._values),
            )
        return self

    def _typed(self, index: int, *tags: TypeTag) -> int | str | bytes:
        if index >= len(self._values):
            raise protocol_error(
                f"Reply has no value at index {index}",
                method=self.method,
                received=len(self._values),
            )
        item = self._values[index]
        if item.tag not in tags:
            raise protocol_error(
                f"Reply value {index} is {item.tag.name}, expected "
                + "/".join(tag.name for tag in tags),
                method=self.method,
            )
        return item.value

    def int32(self, index: int) -> int:
        return int(self._typed(index, TypeTag.INT32))  # type: ignore[arg-type]

    def uint32(self, index: int) -> int:
        return int(self._typed(index, TypeTag.UINT32))  # type: ignore[arg-type]

    def integer(self, index: int) -> int:
        """Either integer flavor; servers are inconsistent about signedness."""
        return int(self._typed(index, TypeTag.INT32, TypeTag.UINT32))  # type: ignore[arg-type]

    def string(self, index: int) -> str:
        return str(self._typed(index, TypeTag.STRING))

    def byte_array(self, index: int) -> bytes:
        value = self._typed(index, TypeTag.BYTE_ARRAY)
        if not isinstance(value, bytes):
            raise protocol_error(
                f"Reply value {index} is tagged BYTE_ARRAY but holds {type(value).__name__}",
                method=self.method,
            )
        return value


def encode_argument(writer: WireWriter, arg: WireValue) -> None:
    """Write one tagged argument."""
    writer.write_int32(arg.tag)
    if arg.tag is TypeTag.INT32:
        writer.write_int32(int(arg.value))  # type: ignore[arg-type]
    elif arg.tag is TypeTag.UINT32:
        writer.write_uint32(int(arg.value))  # type: ignore[arg-type]
    elif arg.tag is TypeTag.STRING:
        writer.write_string(str(arg.value))
    elif arg.tag is TypeTag.BYTE_ARRAY:
        data = arg.value
        if not isinstance(data, bytes):
            raise ValueError(f"BYTE_ARRAY argument must be bytes, got {type(data).__name__}")
        writer.write_int32(TypeTag.BYTE)
        writer.write_uint32(len(data))
        writer.write_bytes(data)
    else:
        raise ValueError(f"Cannot encode argument of type {arg.tag.name}")


async def decode_value(reader: WireReader, tag: int) -> WireValue:
    """Read one value whose tag has already been consumed."""
    if tag == TypeTag.INT32:
        return WireValue(TypeTag.INT32, await reader.read_int32())
    if tag == TypeTag.UINT32:
        return WireValue(TypeTag.UINT32, await reader.read_uint32())
    if tag == TypeTag.STRING:
        length = await reader.read_int32()
        if length < 0:
            raise protocol_error(f"Negative string length {length}", length=length)
        raw = await reader.read_exact(length)
        return WireValue(TypeTag.STRING, raw.decode("utf-8", errors="replace"))
    if tag == TypeTag.BYTE_ARRAY:
        element = await reader.read_int32()
        count = await reader.read_uint32()
        if element != TypeTag.BYTE:
            raise protocol_error(
                f"Unsupported array element type {element}",
                element_type=element,
                count=count,
            )
        return WireValue(TypeTag.BYTE_ARRAY, await reader.read_exact(count))
    raise protocol_error(f"Unexpected type tag {tag}", tag=tag)


async def send_call(writer: WireWriter, method: int, args: Sequence[WireValue] = ()) -> None:
    """Write and flush one complete call frame."""
    writer.write_int32(Sentinel.CALL_START)
    writer.write_int32(method)
    for arg in args:
        encode_argument(writer, arg)
    writer.write_int32(Sentinel.CALL_END)
    await writer.flush()


async def recv_reply(reader: WireReader, method: int | None = None) -> Reply:
    """Read one complete reply frame."""
    head = await reader.read_int32()
    if head != Sentinel.REPLY_TAG:
        raise protocol_error(f"Expected REPLY, got {head}", received=head, method=method)

    values: list[WireValue] = []
    while True:
        tag = await reader.read_int32()
        if tag == Sentinel.CALL_END:
            break
        values.append(await decode_value(reader, tag))

    ack = await reader.read_int32()
    if ack != Sentinel.REPLY_ACK:
        raise protocol_error(f"Expected ACK, got {ack}", received=ack, method=method)

    return Reply(values, method=method)


class RpcTransport:
    """One exclusive connection to the automation socket.

    Calls are strictly request/reply; the lock keeps a second caller from
    interleaving its frame with an in-flight call.
    """

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        path: str = "",
    ) -> None:
        self.path = path
        self._stream_writer = writer
        self._reader = WireReader(reader)
        self._writer = WireWriter(writer)
        self._lock = asyncio.Lock()
        self._closed = False

    @classmethod
    async def open(cls, path: str) -> RpcTransport:
        """Connect to a Unix-domain stream socket."""
        try:
            reader, writer = await asyncio.open_unix_connection(path)
        except FileNotFoundError as exc:
            raise connect_error(path, "socket path does not exist") from exc
        except ConnectionRefusedError as exc:
            raise connect_error(path, "connection refused") from exc
        except OSError as exc:
            raise connect_error(path, str(exc)) from exc
        logger.debug("rpc_connected", path=path)
        return cls(reader, writer, path=path)

    @property
    def is_open(self) -> bool:
        return not self._closed and not self._stream_writer.is_closing()

    async def call(self, method: int, *args: WireValue) -> Reply:
        """Send one call and wait for its reply."""
        if not self.is_open:
            raise not_connected_error(self.path)
        async with self._lock:
            logger.debug("rpc_call", method=method, args=len(args))
            await send_call(self._writer, method, args)
            reply = await recv_reply(self._reader, method=method)
            logger.debug("rpc_reply", method=method, values=len(reply))
            return reply

    async def close(self) -> None:
        """Close the socket. Safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True
        self._stream_writer.close()
        try:
            await self._stream_writer.wait_closed()
        except OSError as exc:
            logger.debug("rpc_close_error", path=self.path, error=str(exc))
        logger.debug("rpc_closed", path=self.path)
