"""Polymarket CLOB adapter implementing the OrderGateway interface.

Wraps the synchronous py-clob-client with asyncio support (thread pool)
and converts between the lifecycle's 0-100 price scale and the venue's
0-1 decimal prices.
"""

import asyncio
from concurrent.futures import ThreadPoolExecutor
from decimal import ROUND_DOWN, Decimal
from typing import Any, Dict, List, Optional

import structlog
from py_clob_client.client import ClobClient
from py_clob_client.clob_types import (
    ApiCreds,
    AssetType,
    BalanceAllowanceParams,
    MarketOrderArgs,
    OrderArgs,
    OrderType as ClobOrderType,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import PolymarketSettings
from ..core.errors import (
    ConfigurationError,
    NetworkError,
    RateLimitError,
    classify_error,
)
from ..domain.market import OrderSide
from .gateway import OpenOrder, OrderAck, OrderRequest, OrderType

log = structlog.get_logger()

# Retry configuration (reads only; order submission is never retried here)
RETRY_ATTEMPTS = 3
RETRY_WAIT_MIN = 1
RETRY_WAIT_MAX = 10

POLYGON_CHAIN_ID = 137
USDC_DECIMALS = Decimal("1e6")

_read_retry = retry(
    stop=stop_after_attempt(RETRY_ATTEMPTS),
    wait=wait_exponential(multiplier=1, min=RETRY_WAIT_MIN, max=RETRY_WAIT_MAX),
    retry=retry_if_exception_type((NetworkError, RateLimitError)),
    reraise=True,
)


def to_decimal_price(price: float) -> float:
    """0-100 scale to the venue's 0-1 price, two decimals."""
    return float(Decimal(str(price / 100)).quantize(Decimal("0.01")))


def round_shares(shares: float) -> float:
    """py-clob-client accepts at most two decimals of size."""
    return float(Decimal(str(shares)).quantize(Decimal("0.01"), rounding=ROUND_DOWN))


def _field(obj: Any, *names: str, default: Any = None) -> Any:
    for name in names:
        if isinstance(obj, dict):
            if name in obj and obj[name] is not None:
                return obj[name]
        elif getattr(obj, name, None) is not None:
            return getattr(obj, name)
    return default


class PolymarketGateway:
    """Async OrderGateway over py-clob-client."""

    def __init__(
        self,
        settings: PolymarketSettings,
        executor: Optional[ThreadPoolExecutor] = None,
        client: Optional[ClobClient] = None,
    ):
        """Initialize the gateway.

        Args:
            settings: Polymarket connection settings including credentials.
            executor: Optional thread pool for async execution.
            client: Pre-built ClobClient (skips connect(), used in tests).
        """
        self._settings = settings
        self._executor = executor or ThreadPoolExecutor(max_workers=4)
        self._client = client
        self._connected = client is not None
        self._log = log.bind(component="polymarket_gateway")

    @property
    def is_connected(self) -> bool:
        return self._connected and self._client is not None

    async def connect(self) -> None:
        """Create the CLOB client and install API credentials."""
        if self._connected:
            return
        if not self._settings.private_key:
            raise ConfigurationError("POLYMARKET_PRIVATE_KEY is required for trading")

        def create_client() -> ClobClient:
            client = ClobClient(
                host=self._settings.clob_http_url.rstrip("/"),
                key=self._settings.private_key,
                chain_id=POLYGON_CHAIN_ID,
                signature_type=self._settings.signature_type,
                funder=self._settings.proxy_wallet or None,
            )
            if self._settings.api_key:
                creds = ApiCreds(
                    api_key=self._settings.api_key,
                    api_secret=self._settings.api_secret,
                    api_passphrase=self._settings.api_passphrase,
                )
            else:
                creds = client.create_or_derive_api_creds()
            client.set_api_creds(creds)
            return client

        self._client = await asyncio.get_running_loop().run_in_executor(
            self._executor, create_client
        )
        self._connected = True
        self._log.info("Connected to Polymarket CLOB", url=self._settings.clob_http_url)

    async def close(self) -> None:
        self._client = None
        self._connected = False
        self._log.info("Polymarket gateway closed")

    def _ensure_connected(self) -> ClobClient:
        if not self.is_connected:
            raise ConfigurationError("Gateway not connected. Call connect() first.")
        return self._client

    async def _run_sync(self, func, *args, **kwargs):
        """Run a synchronous function in the thread pool."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._executor, lambda: func(*args, **kwargs)
        )

    async def _read(self, operation: str, func, *args):
        try:
            return await self._run_sync(func, *args)
        except Exception as e:
            raise classify_error(e, context=operation) from e

    # =========================================================================
    # Reads
    # =========================================================================

    @_read_retry
    async def get_price(self, token_id: str, side: OrderSide) -> Optional[float]:
        """Best price for ``side`` on the 0-100 scale, or None without liquidity."""
        client = self._ensure_connected()
        raw = await self._read("get_price", client.get_price, token_id, side.value)
        price = _field(raw, "price") if not isinstance(raw, (int, float, str)) else raw
        if price is None:
            return None
        value = float(price)
        if value <= 0:
            return None
        return value * 100

    @_read_retry
    async def get_fee_rate_bps(self, token_id: str) -> Optional[int]:
        client = self._ensure_connected()
        raw = await self._read("get_fee_rate_bps", client.get_fee_rate_bps, token_id)
        if raw is None:
            return None
        return int(raw)

    @_read_retry
    async def get_open_orders(self) -> List[OpenOrder]:
        client = self._ensure_connected()
        raw = await self._read("get_open_orders", client.get_orders)
        orders = []
        for item in raw or []:
            order_id = _field(item, "id", "orderID")
            if not order_id:
                continue
            price = _field(item, "price")
            size = _field(item, "original_size", "size")
            orders.append(
                OpenOrder(
                    order_id=str(order_id),
                    token_id=str(_field(item, "asset_id", "token_id", default="")),
                    side=str(_field(item, "side", default="")),
                    price=float(price) * 100 if price is not None else None,
                    shares=float(size) if size is not None else None,
                )
            )
        return orders

    @_read_retry
    async def get_collateral_balance(self) -> float:
        """USDC balance available for trading, in USD."""
        client = self._ensure_connected()
        params = BalanceAllowanceParams(asset_type=AssetType.COLLATERAL)
        raw = await self._read("get_balance", client.get_balance_allowance, params)
        balance = Decimal(str(_field(raw, "balance", default=0))) / USDC_DECIMALS
        return float(balance)

    # =========================================================================
    # Orders
    # =========================================================================

    async def submit_order(self, request: OrderRequest) -> OrderAck:
        """Sign and post an order.

        GTC requests become limit orders (optionally post-only). FAK requests
        become market orders whose amount is the share count for sells and
        the collateral amount for buys.
        """
        client = self._ensure_connected()
        shares = round_shares(request.shares)
        price = to_decimal_price(request.price)
        fee_rate_bps = request.fee_rate_bps or 0

        self._log.info(
            "Submitting order",
            token_id=request.token_id,
            side=request.side.value,
            order_type=request.order_type.value,
            post_only=request.post_only,
            price=price,
            shares=shares,
        )

        if request.order_type == OrderType.FAK:
            amount = shares if request.side == OrderSide.SELL else round(shares * price, 2)
            args = MarketOrderArgs(
                token_id=request.token_id,
                amount=amount,
                side=request.side.value,
                price=price,
                fee_rate_bps=fee_rate_bps,
            )
            signed = await self._run_sync(client.create_market_order, args)
            post_kwargs: Dict[str, Any] = {"orderType": ClobOrderType.FAK}
        else:
            args = OrderArgs(
                token_id=request.token_id,
                price=price,
                size=shares,
                side=request.side.value,
                fee_rate_bps=fee_rate_bps,
            )
            signed = await self._run_sync(client.create_order, args)
            post_kwargs = {"orderType": ClobOrderType.GTC}
            if request.post_only:
                post_kwargs["post_only"] = True

        response = await self._run_sync(client.post_order, signed, **post_kwargs)
        return self._parse_ack(request, shares, response)

    def _parse_ack(self, request: OrderRequest, shares: float, response: Any) -> OrderAck:
        success = bool(_field(response, "success", default=True))
        error = _field(response, "errorMsg", "error")
        order_id = _field(response, "orderID", "orderId", "id")
        status = str(_field(response, "status", default="")).lower()

        if not success or (error and not order_id):
            self._log.warning("Order rejected", token_id=request.token_id, error=error)
            return OrderAck(success=False, order_id=order_id, status=status, error=error or "rejected")

        filled = None
        if request.order_type == OrderType.FAK:
            if request.side == OrderSide.SELL:
                matched = _field(response, "makingAmount")
            else:
                matched = _field(response, "takingAmount")
            if matched not in (None, ""):
                filled = float(matched)
            elif status == "matched":
                filled = shares
            else:
                filled = 0.0

        self._log.info("Order accepted", order_id=order_id, status=status, filled_shares=filled)
        return OrderAck(success=True, order_id=order_id, filled_shares=filled, status=status)

    async def cancel_order(self, order_id: str) -> bool:
        client = self._ensure_connected()
        try:
            await self._run_sync(client.cancel, order_id)
            self._log.info("Order cancelled", order_id=order_id)
            return True
        except Exception as e:
            self._log.warning("Cancel failed", order_id=order_id, error=str(e))
            return False
