import asyncio
import hashlib
import hmac
import json
import random
import time
from decimal import Decimal
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import aiohttp

from .errors import ExchangeUnavailable, InsufficientFunds, OrderRejected
from .exchange import (
    AssetBalance,
    BracketHandle,
    BracketStatus,
    ExchangeGateway,
    OrderHandle,
    OrderSide,
    OrderState,
    OrderStatus,
    SymbolLimits,
    Ticker,
)
from .indicators import OHLCV
from .logging_setup import logger
from .rate_limit_policy import RateLimitManager

MAINNET_URL = "https://api.binance.com"
TESTNET_URL = "https://testnet.binance.vision"

# Binance error codes that mean "not enough balance"
_INSUFFICIENT_BALANCE_CODES = {-2010, -2019}
# Client-side 4xx codes that clear on retry: internal timeout, request weight or
# order-count limits, timestamp outside recvWindow
_TRANSIENT_CODES = {-1001, -1003, -1007, -1015, -1021}

_ORDER_STATES = {
    "NEW": OrderState.OPEN,
    "PARTIALLY_FILLED": OrderState.OPEN,
    "PENDING_NEW": OrderState.OPEN,
    "FILLED": OrderState.CLOSED,
    "CANCELED": OrderState.CANCELED,
    "PENDING_CANCEL": OrderState.CANCELED,
    "REJECTED": OrderState.REJECTED,
    "EXPIRED": OrderState.EXPIRED,
    "EXPIRED_IN_MATCH": OrderState.EXPIRED,
}


class BinanceAPIError(ExchangeUnavailable):
    def __init__(self, message: str, status: Optional[int] = None, code: Optional[int] = None):
        super().__init__(message, status=status)
        self.code = code


class BinanceRateLimitError(BinanceAPIError):
    """Raised when rate limit is hit and backoff is exhausted."""


class BinanceAdapter(ExchangeGateway):
    """Async Binance spot REST gateway using aiohttp.

    Features:
    - HMAC-SHA256 signed requests (``X-MBX-APIKEY`` + ``signature`` param).
    - Client-side sliding-window quotas via ``RateLimitManager``.
    - ``Retry-After`` aware backoff on 429/418, jittered exponential otherwise.
    - Symbol precision and minimums from ``exchangeInfo`` filters.

    Usage:
        async with BinanceAdapter(api_key, api_secret) as gateway:
            await gateway.load_markets(["BTC/USDC"])
            ticker = await gateway.fetch_ticker("BTC/USDC")
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        base_url: str = MAINNET_URL,
        timeout: int = 10,
        max_retries: int = 5,
        max_backoff_seconds: float = 60.0,
        recv_window_ms: int = 5000,
        rate_limiter: Optional[RateLimitManager] = None,
    ):
        super().__init__()
        self.api_key = api_key
        self.api_secret = api_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.max_backoff_seconds = max_backoff_seconds
        self.recv_window_ms = recv_window_ms
        self.rate_limiter = rate_limiter or RateLimitManager()
        self.session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_config(cls, exchange_cfg, rate_cfg, credentials) -> "BinanceAdapter":
        return cls(
            credentials.api_key,
            credentials.api_secret,
            base_url=exchange_cfg.effective_base_url,
            timeout=exchange_cfg.timeout_seconds,
            max_retries=exchange_cfg.max_retries,
            max_backoff_seconds=exchange_cfg.max_backoff_seconds,
            recv_window_ms=exchange_cfg.recv_window_ms,
            rate_limiter=RateLimitManager.from_config(rate_cfg.orders_per_second, rate_cfg.default_per_second),
        )

    async def __aenter__(self):
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def open(self) -> None:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(headers={"X-MBX-APIKEY": self.api_key})

    async def close(self) -> None:
        if self.session:
            await self.session.close()

    # --- helpers ---
    @staticmethod
    def market_id(symbol: str) -> str:
        """'BTC/USDC' -> 'BTCUSDC'"""
        return symbol.replace("/", "")

    def _sign(self, params: Dict[str, Any]) -> str:
        """Return the signed query string for ``params``."""
        query = urlencode(params)
        signature = hmac.new(self.api_secret.encode("utf-8"), query.encode("utf-8"), hashlib.sha256).hexdigest()
        return f"{query}&signature={signature}"

    @staticmethod
    def _jittered_backoff(attempt: int, base: float = 1.0, max_backoff: float = 60.0) -> float:
        """Compute jittered exponential backoff."""
        delay = min(base * (2 ** attempt), max_backoff)
        jitter = delay * 0.25 * (2 * random.random() - 1)
        return max(0, delay + jitter)

    @staticmethod
    def _get_retry_after(headers) -> Optional[float]:
        """Extract the Retry-After header (seconds)."""
        if "Retry-After" in headers:
            try:
                return float(headers["Retry-After"])
            except (ValueError, TypeError):
                return None
        return None

    @staticmethod
    def _raise_for_error(status: int, text: str, path: str) -> None:
        code, msg = None, text
        try:
            payload = json.loads(text)
            code, msg = payload.get("code"), payload.get("msg", text)
        except (ValueError, AttributeError):
            pass
        if code in _INSUFFICIENT_BALANCE_CODES and "insufficient" in str(msg).lower():
            raise InsufficientFunds(f"{path}: {msg}")
        if code in _TRANSIENT_CODES:
            raise BinanceAPIError(f"{path} temporarily refused ({status}, code={code}): {msg}", status=status, code=code)
        if 400 <= status < 500:
            raise OrderRejected(f"{path} rejected ({status}, code={code}): {msg}")
        raise BinanceAPIError(f"{path} failed ({status}, code={code}): {msg}", status=status, code=code)

    async def _request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None, signed: bool = False, attempt: int = 0):
        """Execute a request with rate limiting, 429 backoff and error mapping."""
        if not self.session:
            raise BinanceAPIError("Session not initialized; use 'async with' or open()")

        if not await self.rate_limiter.wait_if_needed(path, max_wait=self.max_backoff_seconds):
            raise BinanceRateLimitError(f"Client-side quota for {path} exhausted")

        params = {k: v for k, v in (params or {}).items() if v is not None}
        if signed:
            params["recvWindow"] = self.recv_window_ms
            params["timestamp"] = int(time.time() * 1000)
            query = self._sign(params)
        else:
            query = urlencode(params)
        url = f"{self.base_url}{path}" + (f"?{query}" if query else "")

        try:
            async with self.session.request(method, url, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                text = await resp.text()
                if resp.status in (418, 429):
                    if attempt >= self.max_retries:
                        raise BinanceRateLimitError("Rate limited and max backoff attempts exceeded", status=resp.status)
                    delay = self._get_retry_after(resp.headers)
                    if delay is None:
                        delay = self._jittered_backoff(attempt, base=1.0, max_backoff=self.max_backoff_seconds)
                    logger.warning(f"Rate limited by exchange | path={path} status={resp.status} retry_in={delay:.1f}s")
                    await asyncio.sleep(min(delay, self.max_backoff_seconds))
                    return await self._request(method, path, params=_strip_signature(params), signed=signed, attempt=attempt + 1)

                if not (200 <= resp.status < 300):
                    self._raise_for_error(resp.status, text, path)

                return json.loads(text) if text else None

        except asyncio.TimeoutError as e:
            raise BinanceAPIError(f"Request timeout: {path}: {e}")
        except aiohttp.ClientError as e:
            raise BinanceAPIError(f"Request failed: {path}: {e}")

    # --- market data ---
    async def load_markets(self, symbols: Optional[List[str]] = None) -> Dict[str, SymbolLimits]:
        params = None
        if symbols:
            ids = json.dumps([self.market_id(s) for s in symbols], separators=(",", ":"))
            params = {"symbols": ids}
        info = await self._request("GET", "/api/v3/exchangeInfo", params)
        by_id = {self.market_id(s): s for s in (symbols or [])}
        for entry in info.get("symbols", []):
            symbol = by_id.get(entry["symbol"]) or f"{entry['baseAsset']}/{entry['quoteAsset']}"
            self.markets[symbol] = self.parse_filters(entry.get("filters", []))
        logger.info(f"Loaded market filters | symbols={list(self.markets)}")
        return self.markets

    @staticmethod
    def parse_filters(filters: List[Dict[str, Any]]) -> SymbolLimits:
        by_type = {f["filterType"]: f for f in filters}
        price = by_type.get("PRICE_FILTER", {})
        lot = by_type.get("LOT_SIZE", {})
        notional = by_type.get("NOTIONAL") or by_type.get("MIN_NOTIONAL") or {}
        return SymbolLimits(
            min_qty=Decimal(lot.get("minQty", "0")).normalize(),
            min_notional=Decimal(notional.get("minNotional", "0")).normalize(),
            tick_size=Decimal(price.get("tickSize", "0")).normalize(),
            step_size=Decimal(lot.get("stepSize", "0")).normalize(),
        )

    async def fetch_candles(self, symbol: str, timeframe: str, limit: int) -> List[OHLCV]:
        rows = await self._request(
            "GET", "/api/v3/klines", {"symbol": self.market_id(symbol), "interval": timeframe, "limit": limit}
        )
        return [OHLCV.from_row(r) for r in rows or []]

    async def fetch_ticker(self, symbol: str) -> Ticker:
        t = await self._request("GET", "/api/v3/ticker/24hr", {"symbol": self.market_id(symbol)})
        return Ticker(
            symbol=symbol,
            last=Decimal(t["lastPrice"]),
            bid=Decimal(t["bidPrice"]),
            ask=Decimal(t["askPrice"]),
            high=Decimal(t["highPrice"]),
            low=Decimal(t["lowPrice"]),
            volume=Decimal(t["volume"]),
            timestamp=int(t.get("closeTime", 0)),
        )

    # --- orders ---
    @staticmethod
    def parse_order(symbol: str, o: Dict[str, Any]) -> OrderStatus:
        filled = Decimal(o.get("executedQty", "0"))
        quote = Decimal(o.get("cummulativeQuoteQty", "0"))
        average = quote / filled if filled > 0 and quote > 0 else None
        return OrderStatus(
            id=str(o["orderId"]),
            symbol=symbol,
            state=_ORDER_STATES.get(o.get("status", ""), OrderState.OPEN),
            filled=filled,
            average=average,
            amount=Decimal(o["origQty"]) if "origQty" in o else None,
            side=OrderSide(o["side"]) if "side" in o else None,
        )

    async def create_limit_order(self, symbol: str, side: OrderSide, quantity: Decimal, price: Decimal) -> OrderHandle:
        res = await self._request(
            "POST",
            "/api/v3/order",
            {
                "symbol": self.market_id(symbol),
                "side": side.value,
                "type": "LIMIT",
                "timeInForce": "GTC",
                "quantity": str(quantity),
                "price": str(price),
                "newOrderRespType": "RESULT",
            },
            signed=True,
        )
        return OrderHandle(str(res["orderId"]), symbol, side, price, quantity)

    async def fetch_order(self, order_id: str, symbol: str) -> OrderStatus:
        o = await self._request(
            "GET", "/api/v3/order", {"symbol": self.market_id(symbol), "orderId": order_id}, signed=True
        )
        return self.parse_order(symbol, o)

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        await self._request(
            "DELETE", "/api/v3/order", {"symbol": self.market_id(symbol), "orderId": order_id}, signed=True
        )

    async def create_bracket_sell_order(
        self,
        symbol: str,
        quantity: Decimal,
        take_profit_price: Decimal,
        stop_loss_price: Decimal,
        stop_limit_price: Decimal,
    ) -> BracketHandle:
        res = await self._request(
            "POST",
            "/api/v3/orderList/oco",
            {
                "symbol": self.market_id(symbol),
                "side": "SELL",
                "quantity": str(quantity),
                "aboveType": "LIMIT_MAKER",
                "abovePrice": str(take_profit_price),
                "belowType": "STOP_LOSS_LIMIT",
                "belowStopPrice": str(stop_loss_price),
                "belowPrice": str(stop_limit_price),
                "belowTimeInForce": "GTC",
            },
            signed=True,
        )
        return BracketHandle(
            list_id=str(res["orderListId"]),
            symbol=symbol,
            take_profit_price=take_profit_price,
            stop_loss_price=stop_loss_price,
            stop_limit_price=stop_limit_price,
            quantity=quantity,
            order_ids=tuple(str(o["orderId"]) for o in res.get("orders", [])),
        )

    async def fetch_bracket_order(self, list_id: str, symbol: str) -> BracketStatus:
        res = await self._request("GET", "/api/v3/orderList", {"orderListId": list_id}, signed=True)
        list_status = res.get("listOrderStatus", "EXECUTING")
        if list_status != "ALL_DONE":
            return BracketStatus(list_id, symbol, list_status)
        # The list only carries leg ids; the fill price comes from the filled leg.
        for leg in res.get("orders", []):
            status = await self.fetch_order(str(leg["orderId"]), symbol)
            if status.state is OrderState.CLOSED:
                return BracketStatus(list_id, symbol, list_status, status.average, status.filled, status.id)
        return BracketStatus(list_id, symbol, list_status)

    async def cancel_bracket_order(self, symbol: str, list_id: str) -> None:
        await self._request(
            "DELETE", "/api/v3/orderList", {"symbol": self.market_id(symbol), "orderListId": list_id}, signed=True
        )

    async def fetch_balance(self) -> Dict[str, AssetBalance]:
        account = await self._request("GET", "/api/v3/account", {"omitZeroBalances": "true"}, signed=True)
        return {
            b["asset"]: AssetBalance(free=Decimal(b["free"]), used=Decimal(b["locked"]))
            for b in account.get("balances", [])
        }


def _strip_signature(params: Dict[str, Any]) -> Dict[str, Any]:
    """Drop per-attempt signing fields so a retry re-signs with a fresh timestamp."""
    return {k: v for k, v in params.items() if k not in ("timestamp", "recvWindow")}
