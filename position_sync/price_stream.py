"""
Streaming price feed for the reference asset.

PriceStreamSource seeds one tick from a REST ticker endpoint, then follows a
Binance-style @ticker websocket stream and hands every valid tick to a
callback. Connection errors are logged and, if a reconnect delay is
configured, the stream is reopened; nothing is ever raised into the engine.
"""

import asyncio
import json
import logging
from typing import Optional, Callable, Awaitable, Any

import requests
import websockets
import websockets.exceptions

try:
    from .sync_config import StreamConfig
    from .view_models import PriceTick, to_decimal
except ImportError:
    from sync_config import StreamConfig
    from view_models import PriceTick, to_decimal

logger = logging.getLogger(__name__)


TickCallback = Callable[[PriceTick], Awaitable[None]]


def parse_ticker_message(raw: Any) -> Optional[PriceTick]:
    """
    Parse a ticker stream message into a PriceTick.

    Uses "c" (last price) and "P" (24h change percent). Combined-stream
    envelopes ({"stream": ..., "data": {...}}) are unwrapped.

    :return: PriceTick, or None if the message is unusable or the price is
        not positive
    """
    try:
        payload = json.loads(raw) if isinstance(raw, (str, bytes)) else raw
        if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
            payload = payload["data"]
        price = to_decimal(payload["c"])
        change = to_decimal(payload.get("P", "0"))
    except (ValueError, KeyError, TypeError) as e:
        logger.error(f"Could not parse ticker message: {e}")
        return None

    if price <= 0:
        return None
    return PriceTick(price=price, change_percent=change)


def fetch_initial_price(url: str, timeout: float = 10.0) -> Optional[PriceTick]:
    """
    One-shot REST fetch of the current price ({"price": "..."}).

    Failures are logged and reported as None.
    """
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
        price = to_decimal(response.json()["price"])
    except (requests.exceptions.RequestException, ValueError, KeyError, TypeError) as e:
        logger.error(f"Initial price fetch failed: {e}")
        return None

    if price <= 0:
        return None
    return PriceTick(price=price)


class PriceStreamSource:
    """
    Long-lived price feed for one asset.

    Usage:
        source = PriceStreamSource(config.stream)
        task = asyncio.create_task(source.run(on_tick))
        ...
        await source.close()
    """

    def __init__(self, config: StreamConfig, connect=None) -> None:
        """
        :param config: Stream endpoints and reconnect delay
        :param connect: Connection factory (defaults to websockets.connect)
        """
        self.config = config
        self._connect = connect or websockets.connect
        self._ws = None
        self._closed = False

    async def run(self, on_tick: TickCallback) -> None:
        """
        Deliver ticks to `on_tick` until close() is called.

        Returns after the first disconnect when reconnect_delay_seconds is 0.
        """
        if self.config.rest_price_url:
            tick = await asyncio.to_thread(fetch_initial_price, self.config.rest_price_url)
            if tick is not None and not self._closed:
                await on_tick(tick)

        while not self._closed:
            try:
                await self._consume(on_tick)
            except (websockets.exceptions.WebSocketException, OSError) as e:
                logger.warning(f"Price stream error: {e}")

            if self._closed or self.config.reconnect_delay_seconds <= 0:
                break
            logger.info(f"Reconnecting price stream in {self.config.reconnect_delay_seconds}s")
            await asyncio.sleep(self.config.reconnect_delay_seconds)

        logger.info("Price stream stopped")

    async def _consume(self, on_tick: TickCallback) -> None:
        async with self._connect(self.config.ws_url) as ws:
            self._ws = ws
            logger.info(f"Price stream connected: {self.config.ws_url}")
            try:
                async for message in ws:
                    if self._closed:
                        break
                    tick = parse_ticker_message(message)
                    if tick is not None:
                        await on_tick(tick)
            finally:
                self._ws = None
        logger.warning("Price stream closed")

    async def close(self) -> None:
        self._closed = True
        ws = self._ws
        if ws is not None:
            await ws.close()
