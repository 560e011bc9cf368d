"""Reference price stream for the underlying assets.

Subscribes to the Chainlink crypto price topic on Polymarket's live-data
WebSocket and keeps the latest price per asset. The price to beat for a
market is the first reference price seen while that market is active.
"""

import asyncio
from typing import Any, Dict, Iterable, Optional

import orjson
import structlog
import websockets
from websockets.exceptions import ConnectionClosed

from ..metrics import PRICE_STREAM_CONNECTED, PRICE_STREAM_RECONNECTS

log = structlog.get_logger()

LIVE_DATA_WS_URL = "wss://ws-live-data.polymarket.com"
PRICE_TOPIC = "crypto_prices_chainlink"

ASSET_SYMBOLS = {
    "btc": "btc/usd",
    "eth": "eth/usd",
    "sol": "sol/usd",
    "xrp": "xrp/usd",
}


class ReferencePriceStream:
    """Latest underlying price per asset, kept current by a WebSocket task."""

    def __init__(
        self,
        assets: Iterable[str],
        ws_url: str = LIVE_DATA_WS_URL,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 60.0,
    ):
        self.ws_url = ws_url
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay
        self._symbols = {ASSET_SYMBOLS[a]: a for a in assets if a in ASSET_SYMBOLS}
        self._prices: Dict[str, float] = {}
        self._ws = None
        self._connected = False
        self._running = False

    @property
    def is_connected(self) -> bool:
        return self._connected and self._ws is not None

    def latest(self, asset: str) -> Optional[float]:
        return self._prices.get(asset)

    async def connect(self) -> bool:
        try:
            self._ws = await websockets.connect(
                self.ws_url,
                ping_interval=20,
                ping_timeout=10,
            )
            self._connected = True
            PRICE_STREAM_CONNECTED.set(1)
            await self._subscribe()
            log.info("Price stream connected", url=self.ws_url, symbols=list(self._symbols))
            return True
        except Exception as e:
            log.error("Price stream connection failed", error=str(e))
            self._connected = False
            PRICE_STREAM_CONNECTED.set(0)
            return False

    async def disconnect(self) -> None:
        self._running = False
        self._connected = False
        PRICE_STREAM_CONNECTED.set(0)
        if self._ws:
            await self._ws.close()
            self._ws = None
        log.info("Price stream disconnected")

    async def _subscribe(self) -> None:
        message = {
            "action": "subscribe",
            "subscriptions": [
                {
                    "topic": PRICE_TOPIC,
                    "type": "*",
                    "filters": orjson.dumps({"symbol": symbol}).decode(),
                }
                for symbol in self._symbols
            ],
        }
        await self._ws.send(orjson.dumps(message).decode())

    async def run(self) -> None:
        """Connect and process messages with exponential-backoff reconnects."""
        self._running = True
        current_delay = self.reconnect_delay

        while self._running:
            try:
                if not self.is_connected:
                    PRICE_STREAM_RECONNECTS.inc()
                    if not await self.connect():
                        log.warning("Price stream reconnecting", delay=current_delay)
                        await asyncio.sleep(current_delay)
                        current_delay = min(current_delay * 2, self.max_reconnect_delay)
                        continue
                    current_delay = self.reconnect_delay

                async for message in self._ws:
                    self.handle_message(message)

                self._connected = False
            except ConnectionClosed:
                log.warning("Price stream connection closed")
                self._connected = False
                PRICE_STREAM_CONNECTED.set(0)
            except Exception as e:
                log.error("Price stream error", error=str(e))
                self._connected = False
                PRICE_STREAM_CONNECTED.set(0)

    def handle_message(self, message: Any) -> Optional[str]:
        """Apply one raw message. Returns the asset whose price changed."""
        if not message or message in ("PONG", "PING"):
            return None
        try:
            data = orjson.loads(message)
        except orjson.JSONDecodeError:
            log.debug("Invalid JSON received", message=str(message)[:100])
            return None
        if not isinstance(data, dict) or data.get("topic") != PRICE_TOPIC:
            return None

        payload = data.get("payload") or {}
        asset = self._symbols.get(str(payload.get("symbol", "")).lower())
        value = payload.get("value")
        if asset is None or value is None:
            return None
        try:
            self._prices[asset] = float(value)
        except (TypeError, ValueError):
            return None
        return asset


class PriceToBeatBook:
    """First reference price seen per market, keyed by market id."""

    def __init__(self):
        self._prices: Dict[str, float] = {}

    def capture(self, market_id: str, price: Optional[float]) -> Optional[float]:
        """Record ``price`` for ``market_id`` unless one is already set."""
        if market_id not in self._prices and price is not None:
            self._prices[market_id] = price
            log.info("Price to beat captured", market_id=market_id, price=price)
        return self._prices.get(market_id)

    def get(self, market_id: str) -> Optional[float]:
        return self._prices.get(market_id)

    def forget_except(self, market_ids: Iterable[str]) -> None:
        keep = set(market_ids)
        for market_id in list(self._prices):
            if market_id not in keep:
                del self._prices[market_id]
