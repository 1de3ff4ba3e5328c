"""底层传输：WebSocket（websockets）与 SSE（aiohttp）。

传输层只负责收发原始文本；断线统一表现为 TRANSPORT_ERRORS 中的异常，
由 ResilientStream 负责重连。
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

import aiohttp
import websockets
from websockets.exceptions import ConnectionClosed

logger = logging.getLogger(__name__)


class TransportError(ConnectionError):
    """传输层故障（EOF、对已关闭连接发送等）。"""


TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    TransportError,
    ConnectionClosed,
    aiohttp.ClientError,
    OSError,
    asyncio.TimeoutError,
)


class Transport(ABC):
    """单条物理连接。"""

    @abstractmethod
    async def open(self) -> None:
        ...

    @abstractmethod
    async def send(self, message: str) -> None:
        ...

    @abstractmethod
    async def recv(self) -> str:
        """阻塞直到下一条消息；连接断开时抛出传输异常。"""

    @abstractmethod
    async def close(self) -> None:
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...


class WebSocketTransport(Transport):
    """基于 websockets 的双工连接。"""

    def __init__(self, url: str, *, open_timeout: float = 10.0, **connect_kwargs: Any):
        self.url = url
        self.open_timeout = open_timeout
        self.connect_kwargs = connect_kwargs
        self._ws: Any = None

    async def open(self) -> None:
        logger.info(f"🔗 Connecting to {self.url}...")
        self._ws = await websockets.connect(
            self.url, open_timeout=self.open_timeout, close_timeout=5, **self.connect_kwargs
        )

    async def send(self, message: str) -> None:
        if self._ws is None:
            raise TransportError(f"send on closed transport: {self.url}")
        await self._ws.send(message)

    async def recv(self) -> str:
        if self._ws is None:
            raise TransportError(f"recv on closed transport: {self.url}")
        msg = await self._ws.recv()
        if isinstance(msg, bytes):
            return msg.decode("utf-8", errors="replace")
        return msg

    async def close(self) -> None:
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()

    @property
    def is_open(self) -> bool:
        return self._ws is not None


class SseTransport(Transport):
    """
    Server-Sent Events 只读连接

    按 `text/event-stream` 规则拼接 data 行，空行结束一个事件；
    服务端关闭流（EOF）视为传输故障。
    """

    def __init__(self, url: str, *, headers: dict[str, str] | None = None, timeout_s: float | None = None):
        self.url = url
        self.headers = {"Accept": "text/event-stream", **(headers or {})}
        self.timeout = aiohttp.ClientTimeout(total=None, sock_connect=10, sock_read=timeout_s)
        self._session: aiohttp.ClientSession | None = None
        self._response: aiohttp.ClientResponse | None = None

    async def open(self) -> None:
        logger.info(f"🔗 Connecting SSE {self.url}...")
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        try:
            self._response = await self._session.get(self.url, headers=self.headers)
            self._response.raise_for_status()
        except BaseException:
            await self.close()
            raise

    async def send(self, message: str) -> None:
        raise TransportError("SSE transport is receive-only")

    async def recv(self) -> str:
        if self._response is None:
            raise TransportError(f"recv on closed transport: {self.url}")
        data_lines: list[str] = []
        while True:
            raw = await self._response.content.readline()
            if not raw:
                raise TransportError(f"SSE stream closed by server: {self.url}")
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                if data_lines:
                    return "\n".join(data_lines)
                continue
            if line.startswith(":"):
                continue  # comment / keep-alive
            field, _, value = line.partition(":")
            if field == "data":
                data_lines.append(value[1:] if value.startswith(" ") else value)

    async def close(self) -> None:
        response, self._response = self._response, None
        session, self._session = self._session, None
        if response is not None:
            response.release()
        if session is not None:
            await session.close()

    @property
    def is_open(self) -> bool:
        return self._response is not None
