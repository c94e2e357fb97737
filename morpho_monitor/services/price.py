"""USD price resolution with a short-lived cache.

Prices for every known token come from one bulk request to the World App
price API. When a borrow-side token has no direct price, the Morpho market's
own oracle can supply a ratio: first through the Morpho oracle interface
(``price()``), then through a Chainlink-style aggregator (``latestAnswer()``).
An unavailable price is reported as 0.0, never as an exception.
"""

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List

import aiohttp

from morpho_monitor.protocols.markets import PRICED_SYMBOLS
from morpho_monitor.services.metrics import record_price_fetch, update_price
from morpho_monitor.services.multicall import CallFailedError, ChainReader, build_call

logger = logging.getLogger(__name__)

# Morpho oracles scale price() by 10^(36 + loanDecimals - collateralDecimals)
MORPHO_ORACLE_BASE_SCALE = 36
# Chainlink USD aggregators answer with 8 decimals
LATEST_ANSWER_DECIMALS = 8


@dataclass
class PriceCacheEntry:
    price: float
    fetched_at: float


class PriceCache:
    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.time):
        self._cache: Dict[str, PriceCacheEntry] = {}
        self._ttl = ttl_seconds
        self._clock = clock

    def get(self, symbol: str) -> float | None:
        entry = self._cache.get(symbol)
        if entry is not None and self._clock() - entry.fetched_at < self._ttl:
            return entry.price
        return None

    def set(self, symbol: str, price: float):
        self._cache[symbol] = PriceCacheEntry(price=price, fetched_at=self._clock())

    def clear(self) -> int:
        count = len(self._cache)
        self._cache.clear()
        return count

    def __len__(self) -> int:
        return len(self._cache)


def _as_price(value: Any) -> float | None:
    try:
        price = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(price) or math.isinf(price) or price < 0:
        return None
    return price


def parse_price_payload(data: Any, fiat: str = "USD") -> Dict[str, float]:
    """
    Extract {SYMBOL: usd_price} from a bulk price response.

    Accepts either a flat mapping ({"WLD": 1.23, ...}) or the World App
    envelope ({"result": {"prices": {"WLD": {"USD": {"amount", "decimals"}}}}}).
    Entries that cannot be read are skipped.
    """
    if not isinstance(data, dict):
        return {}

    prices: Dict[str, float] = {}
    envelope = data.get("result")
    if isinstance(envelope, dict) and isinstance(envelope.get("prices"), dict):
        for symbol, by_fiat in envelope["prices"].items():
            quote = by_fiat.get(fiat) if isinstance(by_fiat, dict) else None
            if not isinstance(quote, dict):
                continue
            amount = _as_price(quote.get("amount"))
            try:
                decimals = int(quote.get("decimals", 0))
            except (TypeError, ValueError):
                continue
            if amount is not None:
                prices[symbol.upper()] = amount / (10 ** decimals)
        return prices

    for symbol, value in data.items():
        price = _as_price(value)
        if price is not None:
            prices[str(symbol).upper()] = price
    return prices


class PriceOracleResolver:
    """
    Resolves USD prices by symbol with the following priority:
    1. Fresh cache entry (60s TTL)
    2. Bulk price API (populates every returned symbol at once)
    3. 0.0 (degraded, priced at nothing)
    """

    def __init__(
        self,
        chain_reader: ChainReader,
        price_api_url: str,
        symbols: Iterable[str] = PRICED_SYMBOLS,
        ttl_seconds: float = 60.0,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
    ):
        self._chain_reader = chain_reader
        self._price_api_url = price_api_url
        self._symbols: List[str] = [symbol.upper() for symbol in symbols]
        self._timeout = timeout_seconds
        self._cache = PriceCache(ttl_seconds=ttl_seconds, clock=clock)
        self._inflight: asyncio.Future | None = None

    async def resolve_price(self, symbol: str) -> float:
        """Get the USD price for a symbol, 0.0 if unavailable."""
        prices = await self.resolve_prices([symbol])
        return prices[symbol.upper()]

    async def resolve_prices(self, symbols: Iterable[str]) -> Dict[str, float]:
        """Get USD prices for many symbols with at most one bulk fetch."""
        unique = list(dict.fromkeys(symbol.upper() for symbol in symbols))

        missing = [symbol for symbol in unique if self._cache.get(symbol) is None]
        if missing:
            await self._refresh()

        results = {}
        for symbol in unique:
            price = self._cache.get(symbol)
            if price is None:
                logger.warning(f"No price available for {symbol}, using 0")
                price = 0.0
            results[symbol] = price
        return results

    def clear_cache(self) -> int:
        return self._cache.clear()

    async def _refresh(self):
        # Concurrent callers share one request; shield keeps it running for
        # the next caller if this one is cancelled.
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._fetch_and_store())
        await asyncio.shield(self._inflight)

    async def _fetch_and_store(self):
        try:
            prices = await self._fetch_bulk_prices()
        except Exception as e:
            logger.error(f"Bulk price fetch failed: {e}")
            record_price_fetch("price_api", "error")
            return

        record_price_fetch("price_api", "success" if prices else "empty")
        for symbol, price in prices.items():
            self._cache.set(symbol, price)
            update_price(symbol, price)
        logger.debug(f"Cached prices: {prices}")

    async def _fetch_bulk_prices(self) -> Dict[str, float]:
        params = {
            "cryptoCurrencies": ",".join(self._symbols),
            "fiatCurrencies": "USD",
        }
        timeout = aiohttp.ClientTimeout(total=self._timeout)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(
                self._price_api_url,
                params=params,
                headers={"Accept": "application/json"},
            ) as response:
                if response.status != 200:
                    logger.error(f"Price API error: HTTP {response.status}")
                    return {}
                data = await response.json(content_type=None)
                return parse_price_payload(data)

    async def get_oracle_ratio(
        self,
        oracle_address: str,
        collateral_decimals: int,
        loan_decimals: int,
    ) -> float:
        """
        Read a market oracle's price ratio.

        Tries the Morpho oracle interface first, then a Chainlink-style
        ``latestAnswer()``. Each interface is tried regardless of how the other
        one failed. Returns 0.0 when neither yields a positive value.
        """
        scale = MORPHO_ORACLE_BASE_SCALE + loan_decimals - collateral_decimals
        try:
            (raw_price,) = await self._chain_reader.single_read(
                build_call(oracle_address, "price()", [], [], ["uint256"])
            )
            if raw_price > 0:
                record_price_fetch("oracle_price", "success")
                return raw_price / (10 ** scale)
        except (CallFailedError, ValueError, OverflowError) as e:
            logger.debug(f"price() unavailable on oracle {oracle_address}: {e}")
        record_price_fetch("oracle_price", "error")

        try:
            (answer,) = await self._chain_reader.single_read(
                build_call(oracle_address, "latestAnswer()", [], [], ["int256"])
            )
            if answer > 0:
                record_price_fetch("oracle_latest_answer", "success")
                return answer / (10 ** LATEST_ANSWER_DECIMALS)
        except (CallFailedError, ValueError, OverflowError) as e:
            logger.debug(f"latestAnswer() unavailable on oracle {oracle_address}: {e}")
        record_price_fetch("oracle_latest_answer", "error")

        logger.warning(f"Oracle {oracle_address} returned no usable price")
        return 0.0
