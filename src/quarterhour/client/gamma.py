"""Gamma API client for 15-minute market descriptors."""

import json
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..domain.market import MarketDescriptor

log = structlog.get_logger()

INTERVAL_SECONDS = 900
ASSETS = ("btc", "eth", "sol", "xrp")

_SLUG_RE = re.compile(r"^(btc|eth|sol|xrp)-updown-15m-(\d+)$")


def interval_start(now: float) -> int:
    """Start of the 15-minute interval containing ``now`` (epoch seconds)."""
    return int(now // INTERVAL_SECONDS) * INTERVAL_SECONDS


def market_slug(asset: str, start_ts: int) -> str:
    """Slug of the up/down market for ``asset`` opening at ``start_ts``."""
    return f"{asset.lower()}-updown-15m-{start_ts}"


def parse_slug(slug: str) -> Optional[tuple]:
    """Return (asset, start_ts) for a 15-minute market slug, else None."""
    match = _SLUG_RE.match(slug)
    if not match:
        return None
    return match.group(1), int(match.group(2))


def _parse_token_ids(raw: Any) -> List[str]:
    # clobTokenIds arrives either as a list or as a JSON-encoded string
    if raw is None:
        return []
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError:
            log.warning("Unparseable clobTokenIds", value=raw[:80])
            return []
    if not isinstance(raw, list):
        return []
    return [str(t) for t in raw]


def _parse_end_timestamp(data: Dict[str, Any], slug: str) -> Optional[float]:
    end_date = data.get("endDate") or data.get("end_date_iso")
    if end_date:
        try:
            return datetime.fromisoformat(end_date.replace("Z", "+00:00")).timestamp()
        except ValueError:
            log.debug("Unparseable endDate", slug=slug, end_date=end_date)
    parsed = parse_slug(slug)
    if parsed:
        return float(parsed[1] + INTERVAL_SECONDS)
    return None


def descriptor_from_gamma(slug: str, data: Dict[str, Any]) -> MarketDescriptor:
    """Build a MarketDescriptor from a Gamma /markets payload."""
    token_ids = _parse_token_ids(data.get("clobTokenIds", data.get("clob_token_ids")))
    if not token_ids and data.get("markets"):
        # Event payloads nest the market one level down
        token_ids = _parse_token_ids(data["markets"][0].get("clobTokenIds"))
    condition_id = data.get("conditionId") or data.get("condition_id")
    if not condition_id and data.get("markets"):
        condition_id = data["markets"][0].get("conditionId")

    return MarketDescriptor(
        id=slug,
        token_ids=tuple(token_ids),
        end_timestamp=_parse_end_timestamp(data, slug),
        resolved=bool(data.get("closed", False)),
        condition_id=condition_id,
        question=data.get("question", ""),
    )


class GammaClient:
    """Client for Polymarket's Gamma API (market metadata)."""

    def __init__(
        self,
        base_url: str = "https://gamma-api.polymarket.com",
        http_proxy: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the Gamma client.

        Args:
            base_url: Gamma API base URL
            http_proxy: Optional HTTP proxy URL (e.g., http://gluetun:8888)
            client: Pre-built httpx client (tests inject a mock transport)
        """
        self.base_url = base_url.rstrip("/")
        self.http_proxy = http_proxy
        self._client = client or httpx.AsyncClient(timeout=30.0, proxy=http_proxy)

        if http_proxy:
            log.info("GammaClient using HTTP proxy", proxy=http_proxy)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((httpx.TransportError,)),
        reraise=True,
    )
    async def get_market_by_slug(self, slug: str) -> Optional[Dict[str, Any]]:
        """Get raw market data by slug, or None if the market does not exist."""
        try:
            response = await self._client.get(f"{self.base_url}/markets/slug/{slug}")
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            if e.response.status_code == 404:
                return None
            raise

    async def fetch_market(self, market_id: str) -> Optional[MarketDescriptor]:
        """Fetch the descriptor for a market slug."""
        data = await self.get_market_by_slug(market_id)
        if data is None:
            log.debug("Market not found", slug=market_id)
            return None
        return descriptor_from_gamma(market_id, data)

    async def current_market(self, asset: str, now: float) -> Optional[MarketDescriptor]:
        """Descriptor of the market for ``asset`` covering ``now``."""
        return await self.fetch_market(market_slug(asset, interval_start(now)))
