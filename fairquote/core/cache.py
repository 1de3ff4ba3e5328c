"""带 TTL 的显式缓存对象（时钟可注入，便于测试控制时间）。"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TtlCache(Generic[T]):
    """
    单值 TTL 缓存

    替代模块级全局变量缓存：
    1. 过期时间由注入的 clock 判断
    2. invalidate() 显式清空
    3. 并发的 get_or_load 只触发一次加载
    """

    def __init__(self, ttl_s: float, clock: Callable[[], float] | None = None, name: str = "cache"):
        if ttl_s <= 0:
            raise ValueError("ttl_s must be positive")
        self.ttl_s = float(ttl_s)
        self.name = name
        self._clock = clock or time.monotonic
        self._value: T | None = None
        self._loaded_at: float | None = None
        self._lock = asyncio.Lock()

    def is_fresh(self) -> bool:
        if self._loaded_at is None:
            return False
        return self._clock() - self._loaded_at < self.ttl_s

    def peek(self) -> T | None:
        """返回当前值（无论是否过期），没有则 None。"""
        return self._value

    def set(self, value: T) -> None:
        self._value = value
        self._loaded_at = self._clock()

    def invalidate(self) -> None:
        self._value = None
        self._loaded_at = None
        logger.debug(f"🧹 {self.name} invalidated")

    async def get_or_load(self, loader: Callable[[], Awaitable[T]], *, force: bool = False) -> T:
        if not force and self.is_fresh():
            return self._value  # type: ignore[return-value]
        async with self._lock:
            # 等锁期间可能已被其他协程加载
            if not force and self.is_fresh():
                return self._value  # type: ignore[return-value]
            value = await loader()
            self.set(value)
            return value
