"""
Asset/USD price oracle.

BTC is priced from CoinGecko with Coinbase as fallback. Quotes are cached
for a short TTL; when every source fails a stale cached quote is served
rather than stopping the allocator. USDC buckets are pegged at 1.00.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import aiohttp

from config import Config
from models import AssetType
from services.fulfillment_errors import PriceUnavailable
from utils.datetime_helpers import get_naive_utc_now
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

USD_PEGGED_ASSETS = {AssetType.USDC.value, AssetType.COMPANY_USDC.value}


class PriceSourceError(Exception):
    """A single price source returned no usable quote"""
    pass


@dataclass(frozen=True)
class PriceQuote:
    asset_type: str
    price: Decimal
    source: str
    fetched_at: datetime
    cached: bool = False
    stale: bool = False


class PriceOracle(ABC):
    @abstractmethod
    async def get_price(self, asset_type: str) -> PriceQuote:
        """Current asset/USD price"""


class MarketPriceOracle(PriceOracle):
    """Public market price feeds with caching and fallback"""

    def __init__(
        self,
        cache_ttl: Optional[int] = None,
        timeout_seconds: Optional[int] = None,
    ):
        self.cache_ttl = cache_ttl if cache_ttl is not None else Config.PRICE_CACHE_TTL_SECONDS
        self.timeout_seconds = timeout_seconds or Config.PRICE_REQUEST_TIMEOUT_SECONDS
        self._cache: Dict[str, PriceQuote] = {}
        self._cache_times: Dict[str, float] = {}

    async def get_price(self, asset_type: str) -> PriceQuote:
        asset = str(asset_type).upper()
        if asset in USD_PEGGED_ASSETS:
            return PriceQuote(asset, Decimal("1.00"), "peg", get_naive_utc_now())
        if asset != AssetType.BTC.value:
            raise PriceUnavailable(f"No price source for {asset}")

        cached = self._cache.get(asset)
        if cached and time.monotonic() - self._cache_times[asset] < self.cache_ttl:
            return replace(cached, cached=True)

        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            for source, fetch in (
                ("coingecko", self._fetch_coingecko),
                ("coinbase", self._fetch_coinbase),
            ):
                try:
                    price = self._validate(await fetch(session), source)
                except (PriceSourceError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                    logger.warning(f"⚠️ PRICE_SOURCE_FAILED: {source} for {asset}: {e}")
                    continue
                quote = PriceQuote(asset, price, source, get_naive_utc_now())
                self._cache[asset] = quote
                self._cache_times[asset] = time.monotonic()
                logger.info(f"💱 PRICE_FETCHED: {asset}/USD = {price} from {source}")
                return quote

        if cached:
            logger.error(f"❌ PRICE_SOURCES_DOWN: serving stale {asset} quote from {cached.source} ({cached.fetched_at.isoformat()})")
            return replace(cached, cached=True, stale=True)
        raise PriceUnavailable(f"All price sources failed for {asset}")

    @staticmethod
    def _validate(raw: Any, source: str) -> Decimal:
        try:
            price = MonetaryDecimal.quantize_rate(raw)
        except ValueError as e:
            raise PriceSourceError(f"{source} returned non-numeric price {raw!r}") from e
        if not (Config.BTC_PRICE_MIN_USD < price < Config.BTC_PRICE_MAX_USD):
            raise PriceSourceError(f"{source} price {price} outside sanity bounds")
        return price

    async def _fetch_json(self, session: aiohttp.ClientSession, url: str) -> Dict[str, Any]:
        async with session.get(url, headers={"Accept": "application/json"}) as response:
            if response.status != 200:
                raise PriceSourceError(f"HTTP {response.status}")
            return await response.json()

    async def _fetch_coingecko(self, session: aiohttp.ClientSession) -> Any:
        data = await self._fetch_json(session, Config.COINGECKO_PRICE_URL)
        try:
            return data["bitcoin"]["usd"]
        except (KeyError, TypeError) as e:
            raise PriceSourceError(f"unexpected payload: {data}") from e

    async def _fetch_coinbase(self, session: aiohttp.ClientSession) -> Any:
        data = await self._fetch_json(session, Config.COINBASE_PRICE_URL)
        try:
            return data["data"]["amount"]
        except (KeyError, TypeError) as e:
            raise PriceSourceError(f"unexpected payload: {data}") from e


price_oracle = MarketPriceOracle()
