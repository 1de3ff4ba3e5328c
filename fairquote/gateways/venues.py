"""交易所 REST 只读接口 + 响应格式转换。

每个交易所的市场 / 持仓 / 账户响应都先经过纯函数转换成
MarketInfo / Position / Account，上层只接触统一结构。
"""

from __future__ import annotations

import logging
import os
from typing import Any, Iterable, Mapping
from urllib.parse import quote

import aiohttp

from fairquote.core.cache import TtlCache
from fairquote.core.interfaces import AccountSource, MarketSource
from fairquote.core.models import Account, MarketInfo, Position
from fairquote.gateways import hyperliquid

logger = logging.getLogger(__name__)

MARKETS_CACHE_TTL_S = 60.0
AFTERMATH_DEFAULT_BASE_URL = "https://mainnet-perpetuals-preview.aftermath.finance"


class MarketNotFoundError(LookupError):
    """交易所没有该交易对的元数据。"""


def _f(value: Any, default: float | None = None) -> float | None:
    if value is None or value == "":
        return default
    return float(value)


# =============================================================================
# Hyperliquid 转换
# =============================================================================

_HL_MAJOR = {"btc", "eth"}
_HL_MID = {"bnb", "sol", "avax", "matic", "atom"}


def hyperliquid_price_precision(base: str) -> int:
    """meta 里没有价格精度，按币种粗略推断（大币 1 位、中等 2 位、其余 4 位）。"""
    name = base.lower()
    if name in _HL_MAJOR:
        return 1
    if name in _HL_MID:
        return 2
    return 4


def hyperliquid_markets_from_meta(meta: Mapping[str, Any]) -> list[MarketInfo]:
    """`{"type": "meta"}` 响应 -> MarketInfo 列表，market_id 为资产序号。"""
    markets: list[MarketInfo] = []
    for index, asset in enumerate(meta.get("universe", [])):
        if asset.get("isDelisted"):
            continue
        base = str(asset["name"])
        size_decimals = int(asset["szDecimals"])
        price_precision = hyperliquid_price_precision(base)
        markets.append(
            MarketInfo(
                symbol=f"{base}/USD:USD",
                base=base,
                quote="USD",
                tick_size=10 ** -price_precision,
                size_precision=size_decimals,
                min_size=10 ** -size_decimals,
                price_precision=price_precision,
                market_id=str(index),
            )
        )
    return markets


def hyperliquid_positions_from_state(state: Mapping[str, Any]) -> list[Position]:
    """clearinghouseState.assetPositions -> Position 列表（过滤掉 0 仓位）。"""
    positions: list[Position] = []
    for item in state.get("assetPositions", []):
        pos = item.get("position", item)
        szi = float(pos["szi"])
        if szi == 0:
            continue
        size = abs(szi)
        position_value = _f(pos.get("positionValue"))
        leverage = pos.get("leverage")
        if isinstance(leverage, Mapping):
            leverage = leverage.get("value")
        positions.append(
            Position(
                symbol=str(pos["coin"]),
                side="long" if szi > 0 else "short",
                size=size,
                entry_price=_f(pos.get("entryPx"), 0.0),
                unrealized_pnl=_f(pos.get("unrealizedPnl"), 0.0),
                mark_price=position_value / size if position_value else None,
                margin=_f(pos.get("marginUsed")),
                liquidation_price=_f(pos.get("liquidationPx")),
                leverage=_f(leverage),
            )
        )
    return positions


def hyperliquid_account_from_state(state: Mapping[str, Any], address: str) -> Account:
    summary = state.get("marginSummary") or {}
    equity = float(summary.get("accountValue", 0))
    margin = float(summary.get("totalMarginUsed", 0))
    return Account(address=address, equity=equity, margin=margin, available_margin=equity - margin)


# =============================================================================
# Aftermath 转换
# =============================================================================

def aftermath_markets_from_response(response: Mapping[str, Any] | Iterable[Mapping[str, Any]]) -> list[MarketInfo]:
    """`/api/ccxt/markets` 响应 -> MarketInfo 列表；只保留 active 的永续 (swap)。"""
    entries = response.values() if isinstance(response, Mapping) else response
    markets: list[MarketInfo] = []
    for market in entries:
        if not (market.get("active") and market.get("swap")):
            continue
        precision = market.get("precision") or {}
        amount_limits = (market.get("limits") or {}).get("amount") or {}
        price_precision = int(precision["price"])
        size_precision = int(precision["amount"])
        min_size = _f(amount_limits.get("min"))
        markets.append(
            MarketInfo(
                symbol=str(market["symbol"]),
                base=str(market["base"]),
                quote=str(market["quote"]),
                tick_size=10 ** -price_precision,
                size_precision=size_precision,
                min_size=min_size if min_size is not None else 10 ** -size_precision,
                price_precision=price_precision,
                max_size=_f(amount_limits.get("max")),
                market_id=str(market["id"]),
            )
        )
    return markets


def aftermath_positions_from_response(positions: Iterable[Mapping[str, Any]]) -> list[Position]:
    out: list[Position] = []
    for p in positions:
        contracts = _f(p.get("contracts"), 0.0)
        if not contracts:
            continue
        side = p.get("side") or ("long" if contracts > 0 else "short")
        out.append(
            Position(
                symbol=str(p["symbol"]),
                side=side,
                size=abs(contracts),
                entry_price=_f(p.get("entryPrice"), 0.0),
                unrealized_pnl=_f(p.get("unrealizedPnl"), 0.0),
                mark_price=_f(p.get("markPrice")),
                margin=_f(p.get("collateral")) or _f(p.get("initialMargin")),
                liquidation_price=_f(p.get("liquidationPrice")),
                leverage=_f(p.get("leverage")),
            )
        )
    return out


def aftermath_account_from_balance(
    balance: Mapping[str, Any], positions: Iterable[Position], address: str
) -> Account:
    """所有币种余额求和：total -> equity，free -> available；占用保证金来自持仓。"""
    equity = 0.0
    available = 0.0
    for code, item in (balance.get("balances") or {}).items():
        equity += float(item.get("total") or 0)
        available += float(item.get("free") or 0)
        logger.debug(f"Balance {code}: total={item.get('total')}, free={item.get('free')}")
    margin = sum(p.margin or 0.0 for p in positions)
    return Account(address=address, equity=equity, margin=margin, available_margin=available)


def aftermath_orderbook_snapshot(response: Mapping[str, Any], ch_id: str) -> dict[str, Any]:
    """`/api/ccxt/orderbook` 响应 -> OrderbookReconciler.load_snapshot 可接受的 dict。"""
    return {
        "symbol": response.get("symbol") or ch_id,
        "bids": response.get("bids") or [],
        "asks": response.get("asks") or [],
        "timestamp": response.get("timestamp"),
        "nonce": response.get("nonce"),
    }


def find_market(markets: Iterable[MarketInfo], symbol: str) -> MarketInfo:
    """'BTC' 按 base 匹配（不区分大小写），'BTC/USD:USD' 按完整 symbol 匹配。

    Raises
    ------
    MarketNotFoundError
    """
    if "/" not in symbol:
        wanted = symbol.lower()
        for market in markets:
            if market.base.lower() == wanted:
                return market
    else:
        for market in markets:
            if market.symbol == symbol:
                return market
    raise MarketNotFoundError(f"Market not found: {symbol}")


# =============================================================================
# HTTP 客户端
# =============================================================================

class JsonHttpClient:
    """aiohttp JSON 客户端基类；session 懒创建，可由外部注入。"""

    def __init__(self, base_url: str, *, timeout_s: float = 10.0, session: aiohttp.ClientSession | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout)
            self._owns_session = True
        return self._session

    async def get_json(self, path: str, params: Mapping[str, str] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug(f"GET {url}")
        async with self._get_session().get(url, params=params) as response:
            if response.status >= 400:
                text = await response.text()
                raise aiohttp.ClientResponseError(
                    response.request_info, response.history, status=response.status,
                    message=f"GET {path} failed: {text[:200]}",
                )
            return await response.json(content_type=None)

    async def post_json(self, path: str, body: Any = None) -> Any:
        url = f"{self.base_url}{path}"
        logger.debug(f"POST {url} {body}")
        async with self._get_session().post(url, json=body) as response:
            if response.status >= 400:
                text = await response.text()
                raise aiohttp.ClientResponseError(
                    response.request_info, response.history, status=response.status,
                    message=f"POST {path} failed: {text[:200]}",
                )
            return await response.json(content_type=None)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


class HyperliquidInfoClient(JsonHttpClient, MarketSource):
    """Hyperliquid `/info` 只读接口。"""

    def __init__(self, *, is_testnet: bool = False, **kwargs: Any):
        info = hyperliquid.info_url(is_testnet)
        super().__init__(info.rsplit("/info", 1)[0], **kwargs)
        self.is_testnet = is_testnet

    async def info(self, payload: Mapping[str, Any]) -> Any:
        return await self.post_json("/info", dict(payload))

    async def meta(self) -> dict[str, Any]:
        return await self.info({"type": "meta"})

    async def clearinghouse_state(self, user: str) -> dict[str, Any]:
        return await self.info({"type": "clearinghouseState", "user": user})

    async def fetch_markets(self) -> list[MarketInfo]:
        markets = hyperliquid_markets_from_meta(await self.meta())
        logger.info(f"📚 Loaded {len(markets)} markets from Hyperliquid")
        return markets


class AftermathClient(JsonHttpClient, MarketSource):
    """Aftermath CCXT 风格 REST 接口。"""

    def __init__(self, base_url: str | None = None, **kwargs: Any):
        super().__init__(base_url or os.getenv("AF_BASE_URL") or AFTERMATH_DEFAULT_BASE_URL, **kwargs)
        logger.info(f"AftermathClient initialized with base URL: {self.base_url}")

    async def fetch_markets(self) -> list[MarketInfo]:
        markets = aftermath_markets_from_response(await self.get_json("/api/ccxt/markets"))
        logger.info(f"📚 Loaded {len(markets)} markets from Aftermath")
        return markets

    async def fetch_orderbook(self, ch_id: str) -> dict[str, Any]:
        logger.debug(f"Fetching orderbook for market {ch_id}")
        response = await self.post_json("/api/ccxt/orderbook", {"chId": ch_id})
        return aftermath_orderbook_snapshot(response, ch_id)

    def orderbook_stream_url(self, ch_id: str) -> str:
        return f"{self.base_url}/api/ccxt/stream/orderbook?chId={quote(ch_id, safe='')}"

    async def fetch_accounts(self, address: str) -> list[dict[str, Any]]:
        return await self.post_json("/api/ccxt/accounts", {"address": address})

    async def fetch_balance(self, account_id: str) -> dict[str, Any]:
        return await self.post_json("/api/ccxt/balance", {"account": account_id})

    async def fetch_positions(self, account_number: int) -> list[Position]:
        response = await self.post_json("/api/ccxt/positions", {"accountNumber": account_number})
        return aftermath_positions_from_response(response or [])


# =============================================================================
# 账户快照来源
# =============================================================================

def _symbol_matches(position_symbol: str, symbol: str) -> bool:
    return position_symbol == symbol or hyperliquid.to_coin(position_symbol) == hyperliquid.to_coin(symbol)


class HyperliquidAccountSource(AccountSource):
    def __init__(self, client: HyperliquidInfoClient, address: str):
        self.client = client
        self.address = address

    async def fetch_position(self, symbol: str) -> Position | None:
        state = await self.client.clearinghouse_state(self.address)
        for position in hyperliquid_positions_from_state(state):
            if _symbol_matches(position.symbol, symbol):
                return position
        return None

    async def fetch_account(self) -> Account:
        state = await self.client.clearinghouse_state(self.address)
        account = hyperliquid_account_from_state(state, self.address)
        logger.debug(f"Fetched Hyperliquid account: equity={account.equity}, margin={account.margin}")
        return account


class AftermathAccountSource(AccountSource):
    """钱包地址 -> account capability（首次发现后缓存在实例上）。"""

    def __init__(self, client: AftermathClient, wallet_address: str):
        self.client = client
        self.wallet_address = wallet_address
        self._account_cap_id: str | None = None
        self._account_number: int | None = None

    async def _discover(self) -> tuple[str, int]:
        if self._account_cap_id is not None and self._account_number is not None:
            return self._account_cap_id, self._account_number
        accounts = await self.client.fetch_accounts(self.wallet_address)
        capability = next((a for a in accounts if a.get("type") == "capability"), None)
        if capability is None:
            raise LookupError(f"No account capability found for wallet {self.wallet_address}")
        self._account_cap_id = str(capability["id"])
        self._account_number = int(capability["accountNumber"])
        logger.info(f"Account discovered: capId={self._account_cap_id}, accountNumber={self._account_number}")
        return self._account_cap_id, self._account_number

    async def fetch_position(self, symbol: str) -> Position | None:
        _, account_number = await self._discover()
        for position in await self.client.fetch_positions(account_number):
            if _symbol_matches(position.symbol, symbol):
                return position
        return None

    async def fetch_account(self) -> Account:
        cap_id, account_number = await self._discover()
        balance = await self.client.fetch_balance(cap_id)
        positions = await self.client.fetch_positions(account_number)
        return aftermath_account_from_balance(balance, positions, self.wallet_address)


# =============================================================================
# 市场元数据注册表
# =============================================================================

class MarketRegistry:
    """带 TTL 缓存的市场元数据查询。"""

    def __init__(self, source: MarketSource, cache: TtlCache[list[MarketInfo]] | None = None):
        self.source = source
        self.cache = cache or TtlCache(MARKETS_CACHE_TTL_S, name="markets")

    async def markets(self, *, force: bool = False) -> list[MarketInfo]:
        return await self.cache.get_or_load(self.source.fetch_markets, force=force)

    async def get_market(self, symbol: str) -> MarketInfo:
        return find_market(await self.markets(), symbol)

    async def get_market_by_id(self, market_id: str) -> MarketInfo:
        for market in await self.markets():
            if market.market_id == market_id:
                return market
        raise MarketNotFoundError(f"Market not found: id={market_id}")

    def invalidate(self) -> None:
        self.cache.invalidate()


def create_venue_client(exchange: str, *, is_testnet: bool = False) -> HyperliquidInfoClient | AftermathClient:
    name = exchange.strip().lower()
    if name == "hyperliquid":
        return HyperliquidInfoClient(is_testnet=is_testnet)
    if name == "aftermath":
        return AftermathClient()
    raise ValueError(f"Unknown exchange: {exchange!r}")


def create_account_source(
    exchange: str, client: HyperliquidInfoClient | AftermathClient, address: str
) -> AccountSource:
    """按交易所创建账户快照来源（client 需与 exchange 对应）。"""
    name = exchange.strip().lower()
    if name == "hyperliquid" and isinstance(client, HyperliquidInfoClient):
        return HyperliquidAccountSource(client, address)
    if name == "aftermath" and isinstance(client, AftermathClient):
        return AftermathAccountSource(client, address)
    raise ValueError(f"No account source for exchange {exchange!r} with {type(client).__name__}")
