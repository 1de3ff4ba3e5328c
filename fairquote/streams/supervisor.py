"""可自动重连的推送流封装 (Resilient Stream Supervisor)。

所有行情流（价格 tick、订单簿快照/增量）共用这一层：
- 连接失败 / 断线：标记断开，固定延迟后重连，并重发全部订阅
- 解析失败不算断线：记录后丢弃该条消息
- close() 幂等；返回后不会再有任何回调
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from fairquote.streams.transports import TRANSPORT_ERRORS, Transport

logger = logging.getLogger(__name__)

DEFAULT_RECONNECT_DELAY_S = 5.0

MessageCallback = Callable[[Any], None]
ConnectHook = Callable[[], Awaitable[None]]
DisconnectHook = Callable[[], None]
Router = Callable[[Any], "str | None"]
TransportFactory = Callable[[], Transport]


@dataclass
class Subscription:
    """一个逻辑订阅；多个订阅可以共用一条物理连接。"""
    key: str
    callback: MessageCallback
    request: Any = None
    unsubscribe_request: Any = None
    active: bool = True


def _encode(message: Any) -> str:
    if isinstance(message, str):
        return message
    return json.dumps(message)


class ResilientStream:
    """
    推送流 Supervisor

    Args:
        transport_factory: 每次(重)连接时调用，返回一个新的 Transport
        name: 日志用名称
        router: message -> 订阅 key；返回 None 表示控制消息（忽略）。
                不传则广播给所有活跃订阅
        parse: 原始文本 -> 消息对象，抛 ValueError/TypeError 视为坏消息
        reconnect_delay_s: 固定重连间隔
        ping_interval_s / ping_message: 可选的应用层心跳
        sleep: 可注入的 sleep（测试用）
    """

    def __init__(
        self,
        transport_factory: TransportFactory,
        *,
        name: str = "stream",
        router: Router | None = None,
        parse: Callable[[str], Any] = json.loads,
        reconnect_delay_s: float = DEFAULT_RECONNECT_DELAY_S,
        ping_interval_s: float | None = None,
        ping_message: Any = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.name = name
        self.reconnect_delay_s = float(reconnect_delay_s)
        self.ping_interval_s = ping_interval_s
        self.ping_message = ping_message
        self._transport_factory = transport_factory
        self._router = router
        self._parse = parse
        self._sleep = sleep

        self._subscriptions: dict[str, Subscription] = {}
        self._connect_hooks: list[ConnectHook] = []
        self._disconnect_hooks: list[DisconnectHook] = []

        self._transport: Transport | None = None
        self._task: asyncio.Task | None = None
        self._ping_task: asyncio.Task | None = None
        self._connected = False
        self._connected_event = asyncio.Event()
        self._closed = False

        self.connect_count = 0
        self.last_message_at: float | None = None

    # ------------------------------------------------------------------ state

    @property
    def connected(self) -> bool:
        return self._connected and not self._closed

    @property
    def closed(self) -> bool:
        return self._closed

    def subscriptions(self) -> list[Subscription]:
        return [s for s in self._subscriptions.values() if s.active]

    # -------------------------------------------------------------- lifecycle

    def start(self) -> "ResilientStream":
        if self._closed:
            raise RuntimeError(f"{self.name}: stream already closed")
        if self._task is None:
            self._task = asyncio.create_task(self._run(), name=f"stream:{self.name}")
        return self

    async def wait_connected(self, timeout: float | None = None) -> bool:
        try:
            await asyncio.wait_for(self._connected_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self.connected

    async def close(self) -> None:
        """停止重连并关闭连接（幂等）。"""
        if self._closed:
            return
        self._closed = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        await self._teardown()
        logger.info(f"🛑 {self.name} closed")

    # ----------------------------------------------------------- subscriptions

    async def subscribe(
        self,
        key: str,
        callback: MessageCallback,
        request: Any = None,
        unsubscribe_request: Any = None,
    ) -> Subscription:
        existing = self._subscriptions.get(key)
        if existing is not None and existing.active:
            existing.callback = callback
            return existing

        sub = Subscription(key=key, callback=callback, request=request, unsubscribe_request=unsubscribe_request)
        self._subscriptions[key] = sub
        if self.connected and request is not None:
            await self._safe_send(request)
        logger.info(f"📡 {self.name} subscribed: {key}")
        return sub

    async def unsubscribe(self, key: str) -> None:
        sub = self._subscriptions.pop(key, None)
        if sub is None:
            logger.warning(f"⚠️ {self.name}: not subscribed to {key}")
            return
        sub.active = False
        if self.connected and sub.unsubscribe_request is not None:
            await self._safe_send(sub.unsubscribe_request)
        logger.info(f"📴 {self.name} unsubscribed: {key}")

    def add_connect_hook(self, hook: ConnectHook) -> None:
        """每次(重)连接并重发订阅后调用，例如重新拉取订单簿快照。"""
        self._connect_hooks.append(hook)

    def add_disconnect_hook(self, hook: DisconnectHook) -> None:
        self._disconnect_hooks.append(hook)

    # --------------------------------------------------------------- internals

    async def _run(self) -> None:
        while not self._closed:
            try:
                await self._connect_once()
                await self._read_loop()
            except asyncio.CancelledError:
                raise
            except TRANSPORT_ERRORS as e:
                logger.warning(f"⚠️ {self.name} transport error: {e!r}")
            except Exception as e:
                logger.error(f"❌ {self.name} connection setup failed: {e!r}")
            finally:
                await self._teardown()

            if self._closed:
                break
            logger.info(f"🔄 {self.name} reconnecting in {self.reconnect_delay_s:.1f}s...")
            await self._sleep(self.reconnect_delay_s)

    async def _connect_once(self) -> None:
        transport = self._transport_factory()
        self._transport = transport
        await transport.open()
        self.connect_count += 1
        self._connected = True

        # 此处复制订阅列表；此后新增的订阅由 subscribe() 自行发送
        pending = [s for s in self._subscriptions.values() if s.active and s.request is not None]
        for sub in pending:
            await transport.send(_encode(sub.request))

        for hook in list(self._connect_hooks):
            await hook()

        if self.ping_interval_s and self.ping_message is not None:
            self._ping_task = asyncio.create_task(self._ping_loop(transport))

        self._connected_event.set()
        logger.info(f"✅ {self.name} connected ({len(pending)} subscriptions)")

    async def _read_loop(self) -> None:
        transport = self._transport
        while not self._closed and transport is not None:
            raw = await transport.recv()
            self.last_message_at = time.monotonic()
            try:
                message = self._parse(raw)
            except (ValueError, TypeError) as e:
                logger.warning(f"⚠️ {self.name} dropping unparseable message: {e}")
                continue
            self._dispatch(message)

    def _dispatch(self, message: Any) -> None:
        if self._closed:
            return
        if self._router is None:
            targets = [s for s in self._subscriptions.values() if s.active]
        else:
            try:
                key = self._router(message)
            except (KeyError, TypeError, ValueError, AttributeError) as e:
                logger.warning(f"⚠️ {self.name} unroutable message dropped: {e!r}")
                return
            if key is None:
                return
            sub = self._subscriptions.get(key)
            targets = [sub] if sub is not None and sub.active else []

        for sub in targets:
            try:
                sub.callback(message)
            except Exception:
                logger.exception(f"❌ {self.name} callback for {sub.key} failed")

    async def _ping_loop(self, transport: Transport) -> None:
        while True:
            await asyncio.sleep(self.ping_interval_s)
            try:
                await transport.send(_encode(self.ping_message))
            except TRANSPORT_ERRORS as e:
                logger.debug(f"{self.name} ping failed: {e!r}")
                return

    async def _safe_send(self, message: Any) -> None:
        transport = self._transport
        if transport is None:
            return
        try:
            await transport.send(_encode(message))
        except TRANSPORT_ERRORS as e:
            # 读循环会发现断线并重连，重连后订阅会被重发
            logger.warning(f"⚠️ {self.name} send failed: {e!r}")

    async def _teardown(self) -> None:
        was_connected = self._connected
        self._connected = False
        self._connected_event.clear()

        ping_task, self._ping_task = self._ping_task, None
        if ping_task is not None:
            ping_task.cancel()

        transport, self._transport = self._transport, None
        if transport is not None:
            try:
                await transport.close()
            except Exception as e:
                logger.debug(f"{self.name} error while closing transport: {e!r}")

        if was_connected:
            for hook in list(self._disconnect_hooks):
                try:
                    hook()
                except Exception:
                    logger.exception(f"❌ {self.name} disconnect hook failed")


async def open_stream(transport_factory: TransportFactory, **kwargs: Any) -> ResilientStream:
    """创建并启动一个 ResilientStream。"""
    return ResilientStream(transport_factory, **kwargs).start()
