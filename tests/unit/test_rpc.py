"""Tests for RPC call/reply framing."""

from __future__ import annotations

import pytest

from macemu_agent.errors import AutomationConnectionError, ProtocolError, TransportError
from macemu_agent.protocol.rpc import (
    Reply,
    RpcTransport,
    Sentinel,
    TypeTag,
    WireValue,
    recv_reply,
    send_call,
)
from macemu_agent.protocol.wire import (
    WireReader,
    WireWriter,
    pack_int32,
    pack_string,
    pack_uint32,
)


class TestSendCall:
    """Tests for call encoding."""

    @pytest.mark.asyncio
    async def test_call_without_args(self, fake_writer) -> None:
        """Should frame a bare call as start, method, end."""
        await send_call(WireWriter(fake_writer), 110)

        assert bytes(fake_writer.data) == pack_int32(-3000) + pack_int32(110) + pack_int32(-3001)

    @pytest.mark.asyncio
    async def test_click_arguments(self, fake_writer) -> None:
        """Should tag each argument before its value."""
        args = [WireValue.int32(320), WireValue.int32(300), WireValue.int32(0)]
        await send_call(WireWriter(fake_writer), 109, args)

        expected = pack_int32(Sentinel.CALL_START) + pack_int32(109)
        for value in (320, 300, 0):
            expected += pack_int32(TypeTag.INT32) + pack_int32(value)
        expected += pack_int32(Sentinel.CALL_END)
        assert bytes(fake_writer.data) == expected

    @pytest.mark.asyncio
    async def test_string_and_byte_array_arguments(self, fake_writer) -> None:
        """Should length-prefix strings and mark byte arrays with the BYTE element type."""
        args = [WireValue.string("Unix"), WireValue.byte_array(b"\x01\x02")]
        await send_call(WireWriter(fake_writer), 108, args)

        expected = (
            pack_int32(-3000)
            + pack_int32(108)
            + pack_int32(-2005)
            + pack_string("Unix")
            + pack_int32(-2006)
            + pack_int32(-2001)
            + pack_uint32(2)
            + b"\x01\x02"
            + pack_int32(-3001)
        )
        assert bytes(fake_writer.data) == expected

    @pytest.mark.asyncio
    async def test_byte_array_argument_must_be_bytes(self, fake_writer) -> None:
        """Should refuse a BYTE_ARRAY argument that does not hold bytes."""
        with pytest.raises(ValueError, match="must be bytes"):
            await send_call(WireWriter(fake_writer), 108, [WireValue(TypeTag.BYTE_ARRAY, "x")])


class TestRecvReply:
    """Tests for reply decoding."""

    @pytest.mark.asyncio
    async def test_decodes_values(self, make_reader, reply_bytes) -> None:
        """Should decode every supported value type in order."""
        data = reply_bytes(
            WireValue.int32(-5),
            WireValue.uint32(640),
            WireValue.string("hello"),
            WireValue.byte_array(b"\xaa\xbb\xcc"),
        )
        reply = await recv_reply(WireReader(make_reader(data)), method=107)

        assert reply.method == 107
        assert list(reply) == [
            WireValue.int32(-5),
            WireValue.uint32(640),
            WireValue.string("hello"),
            WireValue.byte_array(b"\xaa\xbb\xcc"),
        ]

    @pytest.mark.asyncio
    async def test_decodes_edge_values(self, make_reader, reply_bytes) -> None:
        """Should keep empty and multibyte payloads and the full uint32 range."""
        values = [
            WireValue.string(""),
            WireValue.string("é"),
            WireValue.string("日本語 ✓"),
            WireValue.byte_array(b""),
            WireValue.uint32(2**32 - 1),
            WireValue.int32(-(2**31)),
        ]
        reply = await recv_reply(WireReader(make_reader(reply_bytes(*values))))

        assert list(reply) == values

    @pytest.mark.asyncio
    async def test_string_length_counts_bytes(self, make_reader) -> None:
        """Should read a UTF-8 string by its byte length, not its character count."""
        data = (
            pack_int32(-3003)
            + pack_int32(-2005)
            + pack_int32(2)
            + "é".encode()
            + pack_int32(-2002)
            + pack_int32(7)
            + pack_int32(-3001)
            + pack_int32(-3002)
        )
        reply = await recv_reply(WireReader(make_reader(data)))

        assert reply.string(0) == "é"
        assert reply.int32(1) == 7

    @pytest.mark.asyncio
    async def test_empty_reply(self, make_reader, reply_bytes) -> None:
        """Should accept a reply with no values."""
        reply = await recv_reply(WireReader(make_reader(reply_bytes())))

        assert len(reply) == 0

    @pytest.mark.asyncio
    async def test_missing_reply_tag(self, make_reader) -> None:
        """Should fail after reading only the bad head."""
        stream = make_reader(pack_int32(7) + pack_int32(99))
        reader = WireReader(stream)

        with pytest.raises(ProtocolError) as exc_info:
            await recv_reply(reader)

        assert exc_info.value.message == "Expected REPLY, got 7"
        assert await reader.read_int32() == 99

    @pytest.mark.asyncio
    async def test_missing_ack(self, make_reader, reply_bytes) -> None:
        """Should fail when the trailing ACK is wrong."""
        data = reply_bytes(WireValue.int32(1), ack=-3001)

        with pytest.raises(ProtocolError) as exc_info:
            await recv_reply(WireReader(make_reader(data)))

        assert exc_info.value.message == "Expected ACK, got -3001"

    @pytest.mark.asyncio
    async def test_unknown_tag(self, make_reader) -> None:
        """Should refuse tags it cannot size instead of desyncing."""
        data = pack_int32(-3003) + pack_int32(-2004) + pack_int32(0)

        with pytest.raises(ProtocolError) as exc_info:
            await recv_reply(WireReader(make_reader(data)))

        assert exc_info.value.context["tag"] == -2004

    @pytest.mark.asyncio
    async def test_non_byte_array_element(self, make_reader) -> None:
        """Should refuse arrays of anything but bytes."""
        data = pack_int32(-3003) + pack_int32(-2006) + pack_int32(-2002) + pack_uint32(1)

        with pytest.raises(ProtocolError):
            await recv_reply(WireReader(make_reader(data)))

    @pytest.mark.asyncio
    async def test_truncated_reply(self, make_reader) -> None:
        """Should raise TransportError when the stream ends mid-reply."""
        data = pack_int32(-3003) + pack_int32(-2002)

        with pytest.raises(TransportError):
            await recv_reply(WireReader(make_reader(data)))


class TestReply:
    """Tests for Reply accessors."""

    def test_integer_accepts_either_signedness(self) -> None:
        """Should read INT32 and UINT32 alike."""
        reply = Reply([WireValue.int32(1), WireValue.uint32(2)])

        assert reply.integer(0) == 1
        assert reply.integer(1) == 2

    def test_wrong_type(self) -> None:
        """Should raise ProtocolError on a tag mismatch."""
        reply = Reply([WireValue.string("x")])

        with pytest.raises(ProtocolError):
            reply.int32(0)

    def test_byte_array_holding_text(self) -> None:
        """Should raise ProtocolError when a BYTE_ARRAY value is not bytes."""
        reply = Reply([WireValue(TypeTag.BYTE_ARRAY, "x")], method=111)

        with pytest.raises(ProtocolError) as exc_info:
            reply.byte_array(0)

        assert "holds str" in exc_info.value.message
        assert exc_info.value.context["method"] == 111

    def test_missing_index(self) -> None:
        """Should raise ProtocolError instead of IndexError."""
        with pytest.raises(ProtocolError):
            Reply([]).integer(0)

    def test_expect_at_least(self) -> None:
        """Should report how many values arrived."""
        reply = Reply([WireValue.int32(640)], method=106)

        with pytest.raises(ProtocolError) as exc_info:
            reply.expect_at_least(3, "screen size")

        assert exc_info.value.context["received"] == 1
        assert "screen size" in exc_info.value.message


class TestRpcTransport:
    """Tests for RpcTransport."""

    @pytest.mark.asyncio
    async def test_call_round_trip(self, make_reader, fake_writer, reply_bytes) -> None:
        """Should send one frame and return its reply."""
        transport = RpcTransport(make_reader(reply_bytes(WireValue.int32(1))), fake_writer)

        reply = await transport.call(110)

        assert reply.integer(0) == 1
        assert bytes(fake_writer.data) == pack_int32(-3000) + pack_int32(110) + pack_int32(-3001)

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, make_reader, fake_writer) -> None:
        """Should close once and refuse further calls."""
        transport = RpcTransport(make_reader(), fake_writer, path="/tmp/x.sock")

        await transport.close()
        await transport.close()

        assert not transport.is_open
        with pytest.raises(AutomationConnectionError) as exc_info:
            await transport.call(110)
        assert exc_info.value.code == "ERR_NOT_CONNECTED"

    @pytest.mark.asyncio
    async def test_open_missing_socket(self, tmp_path) -> None:
        """Should map a missing path to AutomationConnectionError."""
        with pytest.raises(AutomationConnectionError) as exc_info:
            await RpcTransport.open(str(tmp_path / "missing.sock"))

        assert exc_info.value.code == "ERR_CONNECT"
