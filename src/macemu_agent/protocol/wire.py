"""Wire codec - big-endian integers and length-prefixed strings over a stream."""

from __future__ import annotations

import asyncio
import struct

from macemu_agent.errors import transport_error

_INT32 = struct.Struct(">i")
_UINT32 = struct.Struct(">I")


def pack_int32(value: int) -> bytes:
    """Encode a signed 32-bit integer."""
    try:
        return _INT32.pack(value)
    except struct.error as exc:
        raise ValueError(f"int32 out of range: {value}") from exc


def pack_uint32(value: int) -> bytes:
    """Encode an unsigned 32-bit integer."""
    try:
        return _UINT32.pack(value)
    except struct.error as exc:
        raise ValueError(f"uint32 out of range: {value}") from exc


def pack_string(text: str) -> bytes:
    """Encode a string as int32 byte-length prefix plus UTF-8 bytes."""
    data = text.encode("utf-8")
    return pack_int32(len(data)) + data


def unpack_int32(data: bytes) -> int:
    return int(_INT32.unpack(data)[0])


def unpack_uint32(data: bytes) -> int:
    return int(_UINT32.unpack(data)[0])


class WireWriter:
    """Buffered primitive writes onto an asyncio stream.

    Values accumulate in the transport buffer; ``flush`` waits for the
    socket to accept them. Any failure surfaces as TransportError.
    """

    def __init__(self, writer: asyncio.StreamWriter) -> None:
        self._writer = writer

    def _write(self, data: bytes, operation: str) -> None:
        if self._writer.is_closing():
            raise transport_error(operation, "socket is closed")
        try:
            self._writer.write(data)
        except (OSError, RuntimeError) as exc:
            raise transport_error(operation, str(exc)) from exc

    def write_int32(self, value: int) -> None:
        self._write(pack_int32(value), "write_int32")

    def write_uint32(self, value: int) -> None:
        self._write(pack_uint32(value), "write_uint32")

    def write_string(self, text: str) -> None:
        self._write(pack_string(text), "write_string")

    def write_bytes(self, data: bytes) -> None:
        if data:
            self._write(data, "write_bytes")

    async def flush(self) -> None:
        """Wait until the buffered bytes are handed to the socket."""
        try:
            await self._writer.drain()
        except (OSError, RuntimeError) as exc:
            raise transport_error("flush", str(exc) or type(exc).__name__) from exc


class WireReader:
    """All-or-nothing primitive reads from an asyncio stream."""

    def __init__(self, reader: asyncio.StreamReader) -> None:
        self._reader = reader

    async def read_exact(self, count: int) -> bytes:
        """Read exactly ``count`` bytes, waiting across partial reads."""
        if count < 0:
            raise ValueError(f"negative read length: {count}")
        if count == 0:
            return b""
        try:
            return await self._reader.readexactly(count)
        except asyncio.IncompleteReadError as exc:
            raise transport_error(
                "read_exact",
                f"connection closed after {len(exc.partial)} of {count} bytes",
            ) from exc
        except OSError as exc:
            raise transport_error("read_exact", str(exc)) from exc

    async def read_int32(self) -> int:
        return unpack_int32(await self.read_exact(4))

    async def read_uint32(self) -> int:
        return unpack_uint32(await self.read_exact(4))
