import json
import hashlib
import hmac
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from spotbot.binance_adapter import BinanceAdapter, BinanceAPIError, BinanceRateLimitError
from spotbot.errors import InsufficientFunds, OrderRejected
from spotbot.exchange import OrderSide, OrderState
from spotbot.rate_limit_policy import RateLimitManager, RateLimitQuota


@pytest.fixture
def adapter():
    return BinanceAdapter(api_key="key", api_secret="secret")


def test_market_id():
    assert BinanceAdapter.market_id("BTC/USDC") == "BTCUSDC"


def test_sign_appends_hmac(adapter):
    query = adapter._sign({"symbol": "BTCUSDC", "timestamp": 1})
    expected = hmac.new(b"secret", b"symbol=BTCUSDC&timestamp=1", hashlib.sha256).hexdigest()
    assert query == f"symbol=BTCUSDC&timestamp=1&signature={expected}"


def test_jittered_backoff_bounds():
    assert BinanceAdapter._jittered_backoff(3, base=1.0, max_backoff=60.0) > BinanceAdapter._jittered_backoff(0)
    for attempt in range(10):
        delay = BinanceAdapter._jittered_backoff(attempt, base=1.0, max_backoff=5.0)
        assert 0 <= delay <= 5.0 * 1.25


def test_retry_after_header():
    assert BinanceAdapter._get_retry_after({"Retry-After": "3"}) == 3.0
    assert BinanceAdapter._get_retry_after({"Retry-After": "soon"}) is None
    assert BinanceAdapter._get_retry_after({}) is None


def test_parse_filters():
    limits = BinanceAdapter.parse_filters([
        {"filterType": "PRICE_FILTER", "tickSize": "0.01000000"},
        {"filterType": "LOT_SIZE", "minQty": "0.00001000", "stepSize": "0.00001000"},
        {"filterType": "NOTIONAL", "minNotional": "5.00000000"},
    ])
    assert limits.tick_size == Decimal("0.01")
    assert limits.step_size == Decimal("0.00001")
    assert limits.min_notional == Decimal("5")
    assert limits.price_precision == 2
    assert limits.qty_precision == 5


def test_parse_order_computes_average_fill_price():
    status = BinanceAdapter.parse_order("BTC/USDC", {
        "orderId": 42,
        "status": "PARTIALLY_FILLED",
        "executedQty": "0.2",
        "cummulativeQuoteQty": "20.1",
        "origQty": "0.5",
        "side": "BUY",
    })
    assert status.id == "42"
    assert status.state is OrderState.OPEN
    assert status.average == Decimal("100.5")
    assert status.remaining == Decimal("0.3")
    assert status.side is OrderSide.BUY


def test_parse_unfilled_order_has_no_average():
    status = BinanceAdapter.parse_order("BTC/USDC", {"orderId": 1, "status": "CANCELED", "executedQty": "0"})
    assert status.state is OrderState.CANCELED
    assert status.average is None


class TestErrorMapping:
    def test_insufficient_balance(self):
        with pytest.raises(InsufficientFunds):
            BinanceAdapter._raise_for_error(
                400, '{"code": -2010, "msg": "Account has insufficient balance for requested action."}', "/api/v3/order"
            )

    def test_client_error_is_rejection(self):
        with pytest.raises(OrderRejected):
            BinanceAdapter._raise_for_error(400, '{"code": -1013, "msg": "Filter failure: NOTIONAL"}', "/api/v3/order")

    def test_server_error_is_unavailable(self):
        with pytest.raises(BinanceAPIError) as exc:
            BinanceAdapter._raise_for_error(503, "Service Unavailable", "/api/v3/order")
        assert exc.value.status == 503

    @pytest.mark.parametrize(
        "code, msg",
        [
            (-1021, "Timestamp for this request is outside of the recvWindow."),
            (-1003, "Too much request weight used."),
            (-1015, "Too many new orders."),
        ],
    )
    def test_transient_client_errors_are_retryable(self, code, msg):
        with pytest.raises(BinanceAPIError) as exc:
            BinanceAdapter._raise_for_error(400, json.dumps({"code": code, "msg": msg}), "/api/v3/order")
        assert exc.value.code == code
        assert exc.value.kind.retryable
        assert not isinstance(exc.value, OrderRejected)


@pytest.mark.asyncio
async def test_request_without_session_raises(adapter):
    with pytest.raises(BinanceAPIError, match="Session not initialized"):
        await adapter._request("GET", "/api/v3/ticker/24hr")


@pytest.mark.asyncio
async def test_client_quota_exhaustion_raises():
    limiter = RateLimitManager(quotas={"default": RateLimitQuota(requests_per_window=1, window_seconds=60)})
    adapter = BinanceAdapter("key", "secret", max_backoff_seconds=0.1, rate_limiter=limiter)
    async with adapter:
        limiter.record_request("/api/v3/account")
        with pytest.raises(BinanceRateLimitError):
            await adapter._request("GET", "/api/v3/account", signed=True)


@pytest.mark.asyncio
async def test_context_manager_opens_and_closes_session(adapter):
    assert adapter.session is None
    async with adapter:
        assert adapter.session is not None
    assert adapter.session.closed


@pytest.mark.asyncio
async def test_fetch_ticker(adapter):
    adapter._request = AsyncMock(return_value={
        "lastPrice": "100.5", "bidPrice": "100.4", "askPrice": "100.6",
        "highPrice": "110", "lowPrice": "90", "volume": "1234", "closeTime": 1700000000000,
    })
    ticker = await adapter.fetch_ticker("BTC/USDC")
    adapter._request.assert_awaited_once_with("GET", "/api/v3/ticker/24hr", {"symbol": "BTCUSDC"})
    assert ticker.last == Decimal("100.5")
    assert ticker.bid == Decimal("100.4")
    assert ticker.timestamp == 1700000000000


@pytest.mark.asyncio
async def test_create_limit_order_sends_gtc_limit(adapter):
    adapter._request = AsyncMock(return_value={"orderId": 7})
    handle = await adapter.create_limit_order("BTC/USDC", OrderSide.BUY, Decimal("0.5"), Decimal("100.05"))
    method, path, params = adapter._request.await_args.args
    assert (method, path) == ("POST", "/api/v3/order")
    assert params["type"] == "LIMIT"
    assert params["timeInForce"] == "GTC"
    assert params["price"] == "100.05"
    assert adapter._request.await_args.kwargs == {"signed": True}
    assert handle.id == "7"


@pytest.mark.asyncio
async def test_bracket_order_uses_oco_list(adapter):
    adapter._request = AsyncMock(return_value={"orderListId": 9, "orders": [{"orderId": 11}, {"orderId": 12}]})
    handle = await adapter.create_bracket_sell_order(
        "BTC/USDC", Decimal("0.5"), Decimal("103.05"), Decimal("98.05"), Decimal("97.55")
    )
    params = adapter._request.await_args.args[2]
    assert params["abovePrice"] == "103.05"
    assert params["belowStopPrice"] == "98.05"
    assert params["belowPrice"] == "97.55"
    assert handle.list_id == "9"
    assert handle.order_ids == ("11", "12")


@pytest.mark.asyncio
async def test_fetch_bracket_order_reads_filled_leg(adapter):
    responses = {
        "/api/v3/orderList": {"listOrderStatus": "ALL_DONE", "orders": [{"orderId": 11}, {"orderId": 12}]},
    }
    legs = {
        "11": {"orderId": 11, "status": "EXPIRED", "executedQty": "0"},
        "12": {"orderId": 12, "status": "FILLED", "executedQty": "0.5", "cummulativeQuoteQty": "49"},
    }

    async def fake_request(method, path, params=None, signed=False):
        if path == "/api/v3/order":
            return legs[str(params["orderId"])]
        return responses[path]

    adapter._request = fake_request
    status = await adapter.fetch_bracket_order("9", "BTC/USDC")
    assert status.was_filled
    assert status.fill_price == Decimal("98")
    assert status.filled_order_id == "12"


@pytest.mark.asyncio
async def test_executing_bracket_is_not_filled(adapter):
    adapter._request = AsyncMock(return_value={"listOrderStatus": "EXECUTING", "orders": []})
    status = await adapter.fetch_bracket_order("9", "BTC/USDC")
    assert not status.is_done
    assert not status.was_filled


@pytest.mark.asyncio
async def test_fetch_balance(adapter):
    adapter._request = AsyncMock(return_value={"balances": [{"asset": "USDC", "free": "900", "locked": "100"}]})
    balances = await adapter.fetch_balance()
    assert balances["USDC"].free == Decimal("900")
    assert balances["USDC"].total == Decimal("1000")
