"""
Configuration for the position sync engine.

Settings are plain nested dicts mapped onto dataclasses with dacite.
default_config() returns the baseline dict; load_config() merges caller
overrides and environment variables on top of it.
"""

import os
import copy
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Dict, Any

from dacite import Config, from_dict

try:
    from .view_models import to_decimal
except ImportError:
    from view_models import to_decimal


ENV_API_URL = "POSITION_SYNC_API_URL"
ENV_API_TOKEN = "POSITION_SYNC_API_TOKEN"
ENV_POLL_INTERVAL = "POSITION_SYNC_POLL_INTERVAL"


@dataclass
class ApiConfig:
    base_url: str
    balances_path: str
    positions_path: str
    timeout_seconds: float
    token: Optional[str] = None


@dataclass
class AssetConfig:
    reference_asset: str
    peg_asset: str


@dataclass
class StreamConfig:
    ws_url: str
    rest_price_url: Optional[str]
    reconnect_delay_seconds: float


@dataclass
class RecomputePolicy:
    """
    Thresholds for the streaming price path.

    Attributes:
        price_decimals: Decimal places incoming prices are rounded to
        price_epsilon: Price moves smaller than this are noise
        value_epsilon: Valuation moves smaller than this are noise
        pnl_epsilon: P&L moves smaller than this are not applied
        cost_tolerance: Allowed relative gap between reported total cost and
            average_entry_price x balance before P&L recompute is refused
    """
    price_decimals: int = 2
    price_epsilon: Decimal = Decimal("0.0001")
    value_epsilon: Decimal = Decimal("0.01")
    pnl_epsilon: Decimal = Decimal("0.01")
    cost_tolerance: Decimal = Decimal("0.2")

    @property
    def price_quantum(self) -> Decimal:
        return Decimal(1).scaleb(-self.price_decimals)


@dataclass
class SyncConfig:
    api: ApiConfig
    assets: AssetConfig
    stream: StreamConfig
    policy: RecomputePolicy
    poll_interval_seconds: float


DACITE_CONFIG = Config(type_hooks={Decimal: to_decimal, float: float})


def default_config() -> Dict[str, Any]:
    """Return the default configuration dict."""
    return {
        "api": {
            "base_url": "http://localhost:3002",
            "balances_path": "/api/balances",
            "positions_path": "/api/positions",
            "timeout_seconds": 10.0,
            "token": None,
        },
        "assets": {
            "reference_asset": "SOL",
            "peg_asset": "USDT",
        },
        "stream": {
            "ws_url": "wss://stream.binance.com:9443/ws/solusdt@ticker",
            "rest_price_url": "https://api.binance.com/api/v3/ticker/price?symbol=SOLUSDT",
            "reconnect_delay_seconds": 5.0,
        },
        "policy": {
            "price_decimals": 2,
            "price_epsilon": "0.0001",
            "value_epsilon": "0.01",
            "pnl_epsilon": "0.01",
            "cost_tolerance": "0.2",
        },
        "poll_interval_seconds": 10.0,
    }


def _deep_merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ) -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}
    if environ.get(ENV_API_URL):
        overrides.setdefault("api", {})["base_url"] = environ[ENV_API_URL]
    if environ.get(ENV_API_TOKEN):
        overrides.setdefault("api", {})["token"] = environ[ENV_API_TOKEN]
    if environ.get(ENV_POLL_INTERVAL):
        overrides["poll_interval_seconds"] = float(environ[ENV_POLL_INTERVAL])
    return overrides


def load_config(overrides: Optional[Dict[str, Any]] = None, environ=None) -> SyncConfig:
    """
    Build a SyncConfig from defaults, environment variables and overrides.

    Explicit overrides win over the environment, which wins over defaults.

    :param overrides: Partial config dict (same shape as default_config())
    :param environ: Mapping used instead of os.environ (for tests)
    :raises dacite.DaciteError: If the merged config has missing or mistyped keys
    """
    environ = os.environ if environ is None else environ
    data = _deep_merge(default_config(), _env_overrides(environ))
    if overrides:
        data = _deep_merge(data, overrides)
    return from_dict(data_class=SyncConfig, data=data, config=DACITE_CONFIG)
