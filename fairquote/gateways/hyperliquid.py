"""Hyperliquid WebSocket 协议的共用部分：地址、订阅消息、消息路由。"""

from __future__ import annotations

from typing import Any

MAINNET_WS_URL = "wss://api.hyperliquid.xyz/ws"
TESTNET_WS_URL = "wss://api.hyperliquid-testnet.xyz/ws"
MAINNET_INFO_URL = "https://api.hyperliquid.xyz/info"
TESTNET_INFO_URL = "https://api.hyperliquid-testnet.xyz/info"

# 服务端 60s 无消息会断开连接
PING_INTERVAL_S = 50.0
PING_MESSAGE = {"method": "ping"}


def ws_url(is_testnet: bool = False) -> str:
    return TESTNET_WS_URL if is_testnet else MAINNET_WS_URL


def info_url(is_testnet: bool = False) -> str:
    return TESTNET_INFO_URL if is_testnet else MAINNET_INFO_URL


def to_coin(symbol: str) -> str:
    """'BTC/USD:USD' / 'btc' -> 'BTC'"""
    return symbol.split("/")[0].split(":")[0].strip().upper()


def l2book_key(coin: str) -> str:
    return f"l2Book:{coin}"


def l2book_request(coin: str, method: str = "subscribe") -> dict[str, Any]:
    return {"method": method, "subscription": {"type": "l2Book", "coin": coin}}


def route_message(message: Any) -> str | None:
    """l2Book 推送 -> 订阅 key；subscriptionResponse / pong 等控制消息返回 None。"""
    if not isinstance(message, dict) or message.get("channel") != "l2Book":
        return None
    data = message.get("data") or {}
    coin = data.get("coin")
    if not coin:
        return None
    return l2book_key(str(coin))


def parse_l2_levels(data: dict[str, Any]) -> tuple[list[tuple[float, float]], list[tuple[float, float]]]:
    """levels[0] = bids（降序），levels[1] = asks（升序），每档 {px, sz, n}。"""
    levels = data["levels"]
    bids = [(float(lv["px"]), float(lv["sz"])) for lv in levels[0]]
    asks = [(float(lv["px"]), float(lv["sz"])) for lv in levels[1]]
    return bids, asks
