"""
Tests for the websocket price feed.

Tests cover:
- Ticker message parsing
- The initial REST price fetch
- Stream consumption and disconnect handling with a fake connection
"""

import asyncio
import json
import pytest
import sys
import os
from decimal import Decimal
from unittest.mock import Mock, patch
import requests

# Add source directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from price_stream import PriceStreamSource, parse_ticker_message, fetch_initial_price
from sync_config import StreamConfig
from view_models import PriceTick


class FakeWebSocket:
    """Yields canned messages, then ends like a closed connection."""

    def __init__(self, messages):
        self.messages = list(messages)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self.closed or not self.messages:
            raise StopAsyncIteration
        return self.messages.pop(0)

    async def close(self):
        self.closed = True


class FakeConnect:
    """Stands in for websockets.connect."""

    def __init__(self, *sockets):
        self.sockets = list(sockets)
        self.urls = []

    def __call__(self, url):
        self.urls.append(url)
        return self

    async def __aenter__(self):
        if not self.sockets:
            raise OSError("connection refused")
        return self.sockets.pop(0)

    async def __aexit__(self, exc_type, exc, tb):
        return False


def ticker(price, change="1.5"):
    return json.dumps({"e": "24hrTicker", "s": "SOLUSDT", "c": price, "P": change})


def stream_config(reconnect_delay_seconds=0.0):
    return StreamConfig(
        ws_url="wss://example.test/ws/solusdt@ticker",
        rest_price_url=None,
        reconnect_delay_seconds=reconnect_delay_seconds,
    )


def collect(source):
    ticks = []

    async def on_tick(tick):
        ticks.append(tick)

    asyncio.run(source.run(on_tick))
    return ticks


class TestParseTickerMessage:
    """Tests for ticker message parsing."""

    def test_parse_price_and_change(self):
        tick = parse_ticker_message(ticker("150.25", "-2.10"))

        assert tick == PriceTick(Decimal("150.25"), Decimal("-2.10"))

    def test_parse_combined_stream_envelope(self):
        raw = json.dumps({"stream": "solusdt@ticker", "data": {"c": "151", "P": "0.5"}})

        assert parse_ticker_message(raw).price == Decimal("151")

    def test_missing_change_defaults_to_zero(self):
        assert parse_ticker_message({"c": "150"}).change_percent == Decimal("0")

    @pytest.mark.parametrize("raw", [
        "not json",
        json.dumps({"P": "1.0"}),
        json.dumps({"c": "abc"}),
        json.dumps({"c": "0"}),
        json.dumps({"c": "-5"}),
        json.dumps(["c", "150"]),
        json.dumps({"c": "NaN"}),
        json.dumps({"c": "150", "P": "Infinity"}),
    ])
    def test_unusable_messages(self, raw):
        assert parse_ticker_message(raw) is None


class TestFetchInitialPrice:
    """Tests for the REST price seed."""

    @patch('price_stream.requests.get')
    def test_success(self, mock_get):
        response = Mock(spec=requests.Response)
        response.json.return_value = {"symbol": "SOLUSDT", "price": "149.87000000"}
        mock_get.return_value = response

        tick = fetch_initial_price("https://example.test/price", timeout=5.0)

        assert tick.price == Decimal("149.87")
        assert mock_get.call_args.kwargs["timeout"] == 5.0

    @patch('price_stream.requests.get')
    def test_http_error(self, mock_get):
        response = Mock(spec=requests.Response)
        response.raise_for_status.side_effect = requests.exceptions.HTTPError("503")
        mock_get.return_value = response

        assert fetch_initial_price("https://example.test/price") is None

    @patch('price_stream.requests.get')
    def test_network_error(self, mock_get):
        mock_get.side_effect = requests.exceptions.ConnectionError("down")

        assert fetch_initial_price("https://example.test/price") is None


class TestPriceStreamSource:
    """Tests for stream consumption."""

    def test_delivers_valid_ticks_in_order(self):
        ws = FakeWebSocket([ticker("150.00"), "garbage", ticker("150.50")])
        connect = FakeConnect(ws)

        ticks = collect(PriceStreamSource(stream_config(), connect=connect))

        assert [t.price for t in ticks] == [Decimal("150.00"), Decimal("150.50")]
        assert connect.urls == ["wss://example.test/ws/solusdt@ticker"]

    def test_connect_failure_is_not_raised(self):
        ticks = collect(PriceStreamSource(stream_config(), connect=FakeConnect()))

        assert ticks == []

    def test_reconnects_after_disconnect(self):
        connect = FakeConnect(FakeWebSocket([ticker("150")]), FakeWebSocket([ticker("151")]))
        source = PriceStreamSource(stream_config(reconnect_delay_seconds=0.001), connect=connect)
        ticks = []

        async def on_tick(tick):
            ticks.append(tick)
            if len(ticks) == 2:
                await source.close()

        asyncio.run(asyncio.wait_for(source.run(on_tick), timeout=5))

        assert [t.price for t in ticks] == [Decimal("150"), Decimal("151")]
        assert len(connect.urls) == 2

    @patch('price_stream.fetch_initial_price')
    def test_initial_rest_tick_first(self, mock_fetch):
        mock_fetch.return_value = PriceTick(Decimal("149"))
        config = stream_config()
        config.rest_price_url = "https://example.test/price"
        connect = FakeConnect(FakeWebSocket([ticker("150")]))

        ticks = collect(PriceStreamSource(config, connect=connect))

        assert [t.price for t in ticks] == [Decimal("149"), Decimal("150")]
        mock_fetch.assert_called_once_with("https://example.test/price")

    def test_close_before_run(self):
        source = PriceStreamSource(stream_config(reconnect_delay_seconds=1.0), connect=FakeConnect())
        asyncio.run(source.close())

        assert collect(source) == []
