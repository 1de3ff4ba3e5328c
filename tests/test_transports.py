from unittest.mock import AsyncMock, MagicMock

import pytest

from fairquote.streams.transports import SseTransport, TransportError, WebSocketTransport


def attach_stream(transport: SseTransport, lines: list[bytes]) -> MagicMock:
    """把一串原始行挂到 transport 上，readline 读完后返回 b""（EOF）。"""
    response = MagicMock()
    response.content.readline = AsyncMock(side_effect=[*lines, b""])
    transport._response = response
    return response


class TestSseTransport:
    @pytest.mark.asyncio
    async def test_multiline_data_is_joined(self):
        transport = SseTransport("https://sse.example/events")
        attach_stream(transport, [b"event: orderbook\n", b"data: {\"a\":\n", b"data:  1}\r\n", b"\n"])

        assert await transport.recv() == '{"a":\n 1}'

    @pytest.mark.asyncio
    async def test_comments_and_blank_lines_are_skipped(self):
        transport = SseTransport("https://sse.example/events")
        attach_stream(
            transport,
            [b": keep-alive\n", b"\n", b"id: 7\n", b"data: first\n", b"\n", b":ping\n", b"data:second\n", b"\n"],
        )

        assert await transport.recv() == "first"
        assert await transport.recv() == "second"

    @pytest.mark.asyncio
    async def test_eof_raises_transport_error(self):
        transport = SseTransport("https://sse.example/events")
        attach_stream(transport, [b"data: partial\n"])

        with pytest.raises(TransportError):
            await transport.recv()

    @pytest.mark.asyncio
    async def test_eof_is_a_connection_error(self):
        transport = SseTransport("https://sse.example/events")
        attach_stream(transport, [])

        with pytest.raises(ConnectionError):
            await transport.recv()

    @pytest.mark.asyncio
    async def test_receive_only_and_closed_state(self):
        transport = SseTransport("https://sse.example/events", headers={"X-Key": "k"})
        assert transport.headers == {"Accept": "text/event-stream", "X-Key": "k"}
        assert not transport.is_open

        with pytest.raises(TransportError):
            await transport.recv()
        with pytest.raises(TransportError):
            await transport.send("{}")

    @pytest.mark.asyncio
    async def test_close_releases_response_and_session(self):
        transport = SseTransport("https://sse.example/events")
        response = attach_stream(transport, [])
        session = MagicMock()
        session.close = AsyncMock()
        transport._session = session
        assert transport.is_open

        await transport.close()
        response.release.assert_called_once()
        session.close.assert_awaited_once()
        assert not transport.is_open

        await transport.close()
        response.release.assert_called_once()


class TestWebSocketTransport:
    @pytest.mark.asyncio
    async def test_closed_transport_raises(self):
        transport = WebSocketTransport("wss://ws.example")
        assert not transport.is_open
        with pytest.raises(TransportError):
            await transport.send("{}")
        with pytest.raises(TransportError):
            await transport.recv()

    @pytest.mark.asyncio
    async def test_bytes_are_decoded_and_close_is_idempotent(self):
        transport = WebSocketTransport("wss://ws.example")
        ws = MagicMock()
        ws.recv = AsyncMock(return_value=b'{"ok": true}')
        ws.send = AsyncMock()
        ws.close = AsyncMock()
        transport._ws = ws

        await transport.send("ping")
        ws.send.assert_awaited_once_with("ping")
        assert await transport.recv() == '{"ok": true}'

        await transport.close()
        await transport.close()
        ws.close.assert_awaited_once()
        assert not transport.is_open
