"""
USD price oracle.

Stablecoins follow a bounded synthetic walk inside [0.99, 1.00]; every other
asset is fetched from CoinGecko and held in a TTL cache. Prices are advisory
display data and never take part in balance invariants.
"""

import aiohttp
import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from config import Config
from utils.decimal_precision import MonetaryDecimal

logger = logging.getLogger(__name__)

STABLECOINS = frozenset({"USCT", "USDT", "USDC", "DAI", "BUSD"})

STABLECOIN_FLOOR = 0.99
STABLECOIN_CEILING = 1.00
STABLECOIN_MAX_STEP = 0.002
STABLECOIN_NOISE = 0.001  # total width, i.e. +/- 0.0005

COINGECKO_IDS = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "BNB": "binancecoin",
    "SOL": "solana",
    "TRX": "tron",
    "XRP": "ripple",
    "ADA": "cardano",
    "DOGE": "dogecoin",
    "DOT": "polkadot",
    "MATIC": "matic-network",
    "AVAX": "avalanche-2",
    "LINK": "chainlink",
    "UNI": "uniswap",
    "LTC": "litecoin",
    "ATOM": "cosmos",
}


class PriceFetchError(Exception):
    """Upstream price API failed"""
    pass


def is_stablecoin(symbol: str) -> bool:
    return (symbol or "").upper() in STABLECOINS


class StablecoinWalk:
    """
    Synthetic peg noise for stablecoins.

    The underlying level moves at most once per update interval by a random
    step of up to STABLECOIN_MAX_STEP in the current direction; the direction
    flips at random and whenever a bound is hit. Each read adds a small noise
    term and rounds to 4 decimals.
    """

    def __init__(
        self,
        update_interval: Optional[float] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.update_interval = (
            Config.STABLECOIN_UPDATE_INTERVAL_SECONDS if update_interval is None else update_interval
        )
        self._rng = rng or random.Random()
        self._clock = clock
        self._lock = threading.Lock()
        self.current_price = STABLECOIN_CEILING
        self.direction = -1
        self.last_update = clock()

    def _advance(self, now: float) -> None:
        if now - self.last_update <= self.update_interval:
            return

        if self._rng.random() > 0.5:
            self.direction *= -1

        new_price = self.current_price + self._rng.random() * STABLECOIN_MAX_STEP * self.direction
        if new_price > STABLECOIN_CEILING:
            new_price = STABLECOIN_CEILING
            self.direction = -1
        elif new_price < STABLECOIN_FLOOR:
            new_price = STABLECOIN_FLOOR
            self.direction = 1

        self.current_price = new_price
        self.last_update = now

    def price(self) -> float:
        with self._lock:
            self._advance(self._clock())
            noise = (self._rng.random() - 0.5) * STABLECOIN_NOISE
            value = min(STABLECOIN_CEILING, max(STABLECOIN_FLOOR, self.current_price + noise))
        return round(value, 4)


@dataclass
class _CachedPrice:
    price: float
    fetched_at: float


class PriceCache:
    """Thread-safe TTL cache of symbol -> USD price"""

    def __init__(self, ttl_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = Config.PRICE_CACHE_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        self._clock = clock
        self._entries: Dict[str, _CachedPrice] = {}
        self._lock = threading.Lock()

    def get(self, symbol: str) -> Optional[float]:
        """Fresh price, or None if missing or older than the TTL"""
        with self._lock:
            entry = self._entries.get(symbol)
            if entry is None:
                return None
            if self._clock() - entry.fetched_at >= self.ttl_seconds:
                return None
            return entry.price

    def get_stale(self, symbol: str) -> Optional[float]:
        """Last known price regardless of age"""
        with self._lock:
            entry = self._entries.get(symbol)
            return entry.price if entry else None

    def set(self, symbol: str, price: float) -> None:
        with self._lock:
            self._entries[symbol] = _CachedPrice(price=price, fetched_at=self._clock())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


class PriceOracle:
    """USD prices for ledger assets"""

    def __init__(
        self,
        cache: Optional[PriceCache] = None,
        stablecoin_walk: Optional[StablecoinWalk] = None,
        api_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.cache = cache or PriceCache()
        self.stablecoin_walk = stablecoin_walk or StablecoinWalk()
        self.api_url = (api_url or Config.COINGECKO_API_URL).rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds or Config.HTTP_TIMEOUT_SECONDS)

    async def get_price(self, symbol: str) -> float:
        """USD price of one asset. Falls back to the last known price, then 0.0."""
        upper = (symbol or "").upper()
        if upper in STABLECOINS:
            return self.stablecoin_walk.price()

        cached = self.cache.get(upper)
        if cached is not None:
            return cached

        coin_id = COINGECKO_IDS.get(upper)
        if coin_id is None:
            logger.warning(f"⚠️ No CoinGecko id for {upper}, pricing at 0")
            return 0.0

        try:
            prices = await self._fetch_coingecko_prices([coin_id])
        except (PriceFetchError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Price fetch failed for {upper}: {e}")
            return self.cache.get_stale(upper) or 0.0

        price = prices.get(coin_id, 0.0)
        self.cache.set(upper, price)
        return price

    async def get_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        """USD prices for several assets with a single upstream request"""
        result: Dict[str, float] = {}
        to_fetch: Dict[str, str] = {}

        for symbol in symbols:
            upper = (symbol or "").upper()
            if upper in result or upper in to_fetch:
                continue
            if upper in STABLECOINS:
                result[upper] = self.stablecoin_walk.price()
                continue
            cached = self.cache.get(upper)
            if cached is not None:
                result[upper] = cached
                continue
            coin_id = COINGECKO_IDS.get(upper)
            if coin_id is None:
                logger.warning(f"⚠️ No CoinGecko id for {upper}, pricing at 0")
                result[upper] = 0.0
                continue
            to_fetch[upper] = coin_id

        if not to_fetch:
            return result

        try:
            fetched = await self._fetch_coingecko_prices(list(to_fetch.values()))
        except (PriceFetchError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"❌ Batch price fetch failed for {', '.join(to_fetch)}: {e}")
            for upper in to_fetch:
                result[upper] = self.cache.get_stale(upper) or 0.0
            return result

        for upper, coin_id in to_fetch.items():
            price = fetched.get(coin_id, 0.0)
            self.cache.set(upper, price)
            result[upper] = price
        return result

    def get_cached_price(self, symbol: str) -> float:
        """
        Synchronous read used inside database transactions: stablecoin walk or
        last cached price, never a network call.
        """
        upper = (symbol or "").upper()
        if upper in STABLECOINS:
            return self.stablecoin_walk.price()
        return self.cache.get_stale(upper) or 0.0

    async def calculate_usd_value(self, symbol: str, amount) -> Decimal:
        price = await self.get_price(symbol)
        return MonetaryDecimal.usd_value(amount, price)

    async def warm(self, symbols: Iterable[str]) -> None:
        """Populate the cache so get_cached_price has values to serve"""
        prices = await self.get_prices(symbols)
        logger.info(f"💱 Price cache warmed for {len(prices)} asset(s)")

    async def _fetch_coingecko_prices(self, coin_ids: List[str]) -> Dict[str, float]:
        params = {"ids": ",".join(coin_ids), "vs_currencies": "usd"}
        headers = {"Accept": "application/json"}
        async with aiohttp.ClientSession(timeout=self.timeout, headers=headers) as session:
            async with session.get(f"{self.api_url}/simple/price", params=params) as response:
                if response.status != 200:
                    raise PriceFetchError(f"CoinGecko API error: {response.status}")
                data = await response.json()

        prices: Dict[str, float] = {}
        for coin_id in coin_ids:
            value = (data.get(coin_id) or {}).get("usd")
            prices[coin_id] = float(value) if value is not None else 0.0
        logger.debug(f"CoinGecko prices: {prices}")
        return prices
