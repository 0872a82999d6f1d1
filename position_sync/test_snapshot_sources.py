"""
Tests for the HTTP snapshot sources.

Tests cover:
- Parsing of balances and positions payloads
- Translation of HTTP and transport failures into source errors
- Request construction (URL, bearer token, timeout)
- The chained balance -> analytics snapshot cycle
"""

import pytest
import sys
import os
from decimal import Decimal
from unittest.mock import Mock, patch
import requests

# Add source directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from snapshot_sources import ApiSnapshotSource, BalanceSnapshotSource, PositionSnapshotSource, fetch_snapshot
from source_errors import AuthError, NetworkError, FetchTimeoutError, OtherError, ErrorKind, classify_error
from sync_config import ApiConfig
from view_models import ANALYTICS_UNAVAILABLE, BalanceRecord


@pytest.fixture
def api():
    return ApiConfig(
        base_url="http://localhost:3002/",
        balances_path="/api/balances",
        positions_path="/api/positions",
        timeout_seconds=10.0,
        token="test-token",
    )


@pytest.fixture
def balances_payload():
    """Mock response from the balances endpoint."""
    return {
        "balances": [
            {"mint_address": "SOL", "available": "2.5", "locked": "0.5"},
            {"mint_address": "USDT", "available": "100", "locked": None},
        ]
    }


@pytest.fixture
def positions_payload():
    """Mock response from the positions endpoint."""
    return {
        "positions": [
            {
                "mint": "SOL",
                "average_entry_price": "140.25",
                "total_bought_amount": "3",
                "total_bought_cost": "420.75",
                "current_market_price": 150,
                "current_value": "",
                "unrealized_pnl": None,
                "trade_summary": {
                    "total_buy_trades": 2,
                    "total_sell_trades": 1,
                    "realized_pnl": "12.5",
                },
            }
        ]
    }


def create_mock_response(json_data, status_code=200):
    """Create a mock requests.Response object."""
    mock_resp = Mock(spec=requests.Response)
    mock_resp.status_code = status_code
    mock_resp.json.return_value = json_data
    return mock_resp


class TestParsing:
    """Tests for payload parsing."""

    @patch('snapshot_sources.requests.get')
    def test_fetch_balances(self, mock_get, api, balances_payload):
        mock_get.return_value = create_mock_response(balances_payload)

        records = BalanceSnapshotSource(api).fetch()

        assert records == [
            BalanceRecord("SOL", Decimal("2.5"), Decimal("0.5")),
            BalanceRecord("USDT", Decimal("100"), Decimal("0")),
        ]
        assert records[0].current_balance == Decimal("3.0")

    @patch('snapshot_sources.requests.get')
    def test_fetch_positions(self, mock_get, api, positions_payload):
        mock_get.return_value = create_mock_response(positions_payload)

        analytics = PositionSnapshotSource(api).fetch()

        assert len(analytics) == 1
        sol = analytics[0]
        assert sol.asset_id == "SOL"
        assert sol.average_entry_price == Decimal("140.25")
        assert sol.total_bought_cost == Decimal("420.75")
        assert sol.current_market_price == Decimal("150")
        assert sol.current_value is None
        assert sol.unrealized_pnl is None
        assert sol.trade_summary.buy_count == 2
        assert sol.trade_summary.sell_count == 1
        assert sol.trade_summary.realized_pnl == Decimal("12.5")

    @patch('snapshot_sources.requests.get')
    def test_empty_list_is_valid(self, mock_get, api):
        mock_get.return_value = create_mock_response({"balances": []})

        assert BalanceSnapshotSource(api).fetch() == []


class TestRequest:
    """Tests for request construction."""

    @patch('snapshot_sources.requests.get')
    def test_url_headers_and_timeout(self, mock_get, api):
        mock_get.return_value = create_mock_response({"positions": []})

        PositionSnapshotSource(api).fetch()

        args, kwargs = mock_get.call_args
        assert args[0] == "http://localhost:3002/api/positions"
        assert kwargs["headers"]["Authorization"] == "Bearer test-token"
        assert kwargs["timeout"] == 10.0

    def test_is_authenticated(self, api):
        assert BalanceSnapshotSource(api).is_authenticated()

        api.token = None
        source = BalanceSnapshotSource(api)
        assert not source.is_authenticated()
        assert "Authorization" not in source.build_headers()

    def test_base_source_is_abstract(self, api):
        with pytest.raises(TypeError):
            ApiSnapshotSource(api)


class TestErrors:
    """Tests for failure translation."""

    @pytest.mark.parametrize("status_code", [401, 403])
    @patch('snapshot_sources.requests.get')
    def test_auth_status(self, mock_get, api, status_code):
        mock_get.return_value = create_mock_response({}, status_code)

        with pytest.raises(AuthError):
            BalanceSnapshotSource(api).fetch()

    @pytest.mark.parametrize("status_code", [404, 429, 500, 503])
    @patch('snapshot_sources.requests.get')
    def test_other_status(self, mock_get, api, status_code):
        mock_get.return_value = create_mock_response({}, status_code)

        with pytest.raises(OtherError):
            BalanceSnapshotSource(api).fetch()

    @patch('snapshot_sources.requests.get')
    def test_timeout(self, mock_get, api):
        mock_get.side_effect = requests.exceptions.Timeout("read timed out")

        with pytest.raises(FetchTimeoutError) as exc_info:
            BalanceSnapshotSource(api).fetch()

        assert isinstance(exc_info.value, TimeoutError)
        assert classify_error(exc_info.value) is ErrorKind.TRANSIENT

    @patch('snapshot_sources.requests.get')
    def test_connection_error(self, mock_get, api):
        mock_get.side_effect = requests.exceptions.ConnectionError("refused")

        with pytest.raises(NetworkError):
            BalanceSnapshotSource(api).fetch()

    @patch('snapshot_sources.requests.get')
    def test_invalid_json(self, mock_get, api):
        response = create_mock_response(None)
        response.json.side_effect = ValueError("no json")
        mock_get.return_value = response

        with pytest.raises(OtherError):
            BalanceSnapshotSource(api).fetch()

    @pytest.mark.parametrize("body", [
        {},
        {"balances": None},
        {"balances": {"SOL": "1"}},
        ["not", "a", "dict"],
    ])
    @patch('snapshot_sources.requests.get')
    def test_missing_list(self, mock_get, api, body):
        mock_get.return_value = create_mock_response(body)

        with pytest.raises(OtherError):
            BalanceSnapshotSource(api).fetch()

    @pytest.mark.parametrize("item", [
        {"available": "1"},
        {"mint_address": "SOL"},
        {"mint_address": "SOL", "available": "lots"},
        {"mint_address": "BTC", "available": "NaN", "locked": "0"},
        {"mint_address": "BTC", "available": "1", "locked": "Infinity"},
        {"mint_address": "BTC", "available": "sNaN"},
    ])
    @patch('snapshot_sources.requests.get')
    def test_malformed_item(self, mock_get, api, item):
        mock_get.return_value = create_mock_response({"balances": [item]})

        with pytest.raises(OtherError):
            BalanceSnapshotSource(api).fetch()

    def test_classify_error(self):
        assert classify_error(AuthError("401")) is ErrorKind.AUTH
        assert classify_error(NetworkError("down")) is ErrorKind.TRANSIENT
        assert classify_error(ConnectionResetError()) is ErrorKind.TRANSIENT
        assert classify_error(OtherError("500")) is ErrorKind.OTHER
        assert classify_error(RuntimeError("boom")) is ErrorKind.OTHER


class TestFetchSnapshot:
    """Tests for the chained snapshot cycle."""

    def test_both_succeed(self):
        balances = Mock()
        balances.fetch.return_value = ["balance"]
        analytics = Mock()
        analytics.fetch.return_value = ["analytics"]

        assert fetch_snapshot(balances, analytics) == (["balance"], ["analytics"])

    def test_analytics_failure_degrades(self):
        balances = Mock()
        balances.fetch.return_value = ["balance"]
        analytics = Mock()
        analytics.fetch.side_effect = OtherError("500")

        records, result = fetch_snapshot(balances, analytics)

        assert records == ["balance"]
        assert result is ANALYTICS_UNAVAILABLE

    def test_no_analytics_source(self):
        balances = Mock()
        balances.fetch.return_value = []

        assert fetch_snapshot(balances, None) == ([], ANALYTICS_UNAVAILABLE)

    def test_balance_failure_propagates_without_analytics_call(self):
        balances = Mock()
        balances.fetch.side_effect = AuthError("401")
        analytics = Mock()

        with pytest.raises(AuthError):
            fetch_snapshot(balances, analytics)

        analytics.fetch.assert_not_called()
