from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional, Protocol

import httpx

from ..core.errors import RateProviderUnavailable


logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"

CRYPTO_SYMBOLS = frozenset(
    {
        "BTC",
        "ETH",
        "USDT",
        "USDC",
        "DAI",
        "TON",
        "SOL",
        "BNB",
        "XRP",
        "ADA",
        "DOGE",
        "LINK",
        "TRX",
        "DOT",
        "LTC",
        "AVAX",
        "MATIC",
        "SHIB",
        "XLM",
        "ATOM",
    }
)


def normalize_code(value: Optional[str]) -> str:
    return str(value or "").strip().upper()


def parse_rates(raw: Mapping[str, Any]) -> dict[str, Decimal]:
    """Turn a provider payload into positive Decimal rates, dropping junk entries."""
    parsed: dict[str, Decimal] = {}
    for code, value in raw.items():
        try:
            rate = Decimal(str(value))
        except (InvalidOperation, ValueError):
            continue
        if rate.is_finite() and rate > 0:
            parsed[normalize_code(code)] = rate
    return parsed


@dataclass(frozen=True)
class RateTable:
    """Units of each currency per one unit of ``base``."""

    base: str
    rates: Mapping[str, Decimal]
    fetched_at: Optional[datetime] = None

    def rate(self, code: str) -> Optional[Decimal]:
        return self.rates.get(normalize_code(code))

    @property
    def is_degenerate(self) -> bool:
        return self.fetched_at is None


class RateProvider(Protocol):
    def fetch_latest(self) -> Mapping[str, Decimal]: ...

    def fetch_historical(self, day: date) -> Optional[Mapping[str, Decimal]]: ...


class CryptoPriceProvider(Protocol):
    def fetch_prices(self) -> Mapping[str, Decimal]: ...


class RateSnapshotStore(Protocol):
    def get_snapshot(self, day: date, base_currency: str) -> Optional[Mapping[str, Decimal]]: ...

    def save_snapshot(
        self, day: date, base_currency: str, rates: Mapping[str, Decimal]
    ) -> None: ...


class _HttpProvider:
    def __init__(self, timeout: float, client: Optional[httpx.Client]) -> None:
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def _get_json(self, url: str, **kwargs: Any) -> Any:
        try:
            response = self._client.get(url, **kwargs)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise RateProviderUnavailable(f"Rate request failed: {exc}") from exc

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


class ExchangeRateApiProvider(_HttpProvider):
    """Fiat rates from exchangerate-api.com (v6), base-relative."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://v6.exchangerate-api.com/v6",
        base_currency: str = BASE_CURRENCY,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        super().__init__(timeout, client)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.base_currency = normalize_code(base_currency)

    def fetch_latest(self) -> Mapping[str, Decimal]:
        if not self.api_key:
            raise RateProviderUnavailable("Exchange rate API key is not configured")
        payload = self._get_json(f"{self.base_url}/{self.api_key}/latest/{self.base_currency}")
        rates = payload.get("conversion_rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Exchange rate response missing conversion_rates")
        return parse_rates(rates)

    def fetch_historical(self, day: date) -> Optional[Mapping[str, Decimal]]:
        if not self.api_key:
            return None
        payload = self._get_json(
            f"{self.base_url}/{self.api_key}/history/{self.base_currency}"
            f"/{day.year}/{day.month}/{day.day}"
        )
        if not isinstance(payload, dict) or payload.get("result") == "error":
            return None
        rates = payload.get("conversion_rates")
        if not isinstance(rates, dict):
            return None
        return parse_rates(rates)


class CoinMarketCapProvider(_HttpProvider):
    """USD price per coin from the CoinMarketCap listings endpoint."""

    def __init__(
        self,
        api_key: Optional[str],
        url: str = "https://pro-api.coinmarketcap.com/v1/cryptocurrency/listings/latest",
        limit: int = 500,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        super().__init__(timeout, client)
        self.api_key = api_key
        self.url = url
        self.limit = limit

    def fetch_prices(self) -> Mapping[str, Decimal]:
        if not self.api_key:
            raise RateProviderUnavailable("CoinMarketCap API key is not configured")
        payload = self._get_json(
            self.url,
            params={"limit": self.limit},
            headers={"X-CMC_PRO_API_KEY": self.api_key},
        )
        listings = payload.get("data") if isinstance(payload, dict) else None
        prices: dict[str, Any] = {}
        for item in listings or []:
            symbol = item.get("symbol") if isinstance(item, dict) else None
            price = (((item or {}).get("quote") or {}).get("USD") or {}).get("price")
            if symbol and isinstance(price, (int, float)):
                prices[symbol] = price
        return parse_rates(prices)


class RateSource:
    """Process-wide rate cache.

    Lifecycle is init -> serve -> refresh (on staleness or ``refresh()``) ->
    ``close()``. The cache is not locked: concurrent refreshes may both hit the
    provider and the last one wins, which is acceptable for advisory rate data.

    A failed provider call starts a ``failure_cooldown`` during which that
    provider is not asked again, so an outage costs one timeout per cooldown
    instead of one per lookup. Per-day historical caches keep at most
    ``max_cached_days`` entries.
    """

    def __init__(
        self,
        provider: RateProvider,
        *,
        crypto_provider: Optional[CryptoPriceProvider] = None,
        snapshot_store: Optional[RateSnapshotStore] = None,
        ttl: timedelta = timedelta(hours=24),
        crypto_ttl: timedelta = timedelta(hours=3),
        failure_cooldown: timedelta = timedelta(minutes=5),
        max_cached_days: int = 1024,
        base_currency: str = BASE_CURRENCY,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.provider = provider
        self.crypto_provider = crypto_provider
        self.snapshot_store = snapshot_store
        self.ttl = ttl
        self.crypto_ttl = crypto_ttl
        self.failure_cooldown = failure_cooldown
        self.max_cached_days = max(max_cached_days, 1)
        self.base_currency = normalize_code(base_currency)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._table: Optional[RateTable] = None
        self._fiat_retry_at: Optional[datetime] = None
        self._crypto_prices: Optional[Mapping[str, Decimal]] = None
        self._crypto_fetched_at: Optional[datetime] = None
        self._crypto_retry_at: Optional[datetime] = None
        self._historical: OrderedDict[date, Mapping[str, Decimal]] = OrderedDict()
        self._historical_misses: OrderedDict[date, datetime] = OrderedDict()
        self._historical_retry_at: Optional[datetime] = None

    @staticmethod
    def is_crypto(code: str) -> bool:
        return normalize_code(code) in CRYPTO_SYMBOLS

    def get_rates(self) -> RateTable:
        table = self._get_fiat_table()
        prices = self._get_crypto_prices()
        usd_rate = table.rates.get("USD")
        if not prices or usd_rate is None:
            return table
        merged = dict(table.rates)
        for symbol, price in prices.items():
            if symbol not in merged:
                merged[symbol] = usd_rate / price
        return RateTable(base=table.base, rates=merged, fetched_at=table.fetched_at)

    def refresh(self) -> RateTable:
        return self._get_fiat_table(force=True)

    def get_historical_rate(
        self, day: date | datetime, from_currency: str, to_currency: str
    ) -> Optional[Decimal]:
        source = normalize_code(from_currency)
        target = normalize_code(to_currency)
        if source == target:
            return Decimal("1")
        if isinstance(day, datetime):
            day = day.date()

        rates = self._historical_rates(day)
        if rates is None:
            return None
        source_rate = rates.get(source)
        target_rate = rates.get(target)
        if not source_rate or not target_rate:
            logger.debug(
                "rates.historical.missing_currency",
                extra={"day": day.isoformat(), "from": source, "to": target},
            )
            return None
        return target_rate / source_rate

    def close(self) -> None:
        for provider in (self.provider, self.crypto_provider):
            close = getattr(provider, "close", None)
            if callable(close):
                close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _degenerate(self) -> RateTable:
        return RateTable(base=self.base_currency, rates={self.base_currency: Decimal("1")})

    def _cooling_down(self, retry_at: Optional[datetime], now: datetime) -> bool:
        return retry_at is not None and now < retry_at

    def _get_fiat_table(self, force: bool = False) -> RateTable:
        now = self._clock()
        cached = self._table
        if not force and cached is not None and now - cached.fetched_at < self.ttl:
            return cached
        if not force and self._cooling_down(self._fiat_retry_at, now):
            return cached if cached is not None else self._degenerate()

        try:
            fetched = self.provider.fetch_latest()
        except RateProviderUnavailable as exc:
            self._fiat_retry_at = now + self.failure_cooldown
            logger.warning(
                "rates.refresh_failed",
                extra={"error": str(exc), "serving_stale": cached is not None},
            )
            return cached if cached is not None else self._degenerate()

        rates = {normalize_code(code): rate for code, rate in fetched.items()}
        rates[self.base_currency] = Decimal("1")
        table = RateTable(base=self.base_currency, rates=rates, fetched_at=now)
        self._table = table
        self._fiat_retry_at = None
        self._remember_snapshot(now.date(), rates)
        logger.info("rates.refreshed", extra={"currencies": len(rates)})
        return table

    def _get_crypto_prices(self) -> Optional[Mapping[str, Decimal]]:
        if self.crypto_provider is None:
            return None
        now = self._clock()
        if (
            self._crypto_prices is not None
            and self._crypto_fetched_at is not None
            and now - self._crypto_fetched_at < self.crypto_ttl
        ):
            return self._crypto_prices
        if self._cooling_down(self._crypto_retry_at, now):
            return self._crypto_prices
        try:
            prices = self.crypto_provider.fetch_prices()
        except RateProviderUnavailable as exc:
            self._crypto_retry_at = now + self.failure_cooldown
            logger.warning("rates.crypto_refresh_failed", extra={"error": str(exc)})
            return self._crypto_prices
        self._crypto_retry_at = None
        if prices:
            self._crypto_prices = {normalize_code(code): price for code, price in prices.items()}
            self._crypto_fetched_at = now
        return self._crypto_prices

    def _cache_day(self, day: date, rates: Mapping[str, Decimal]) -> None:
        self._historical[day] = rates
        self._historical.move_to_end(day)
        self._historical_misses.pop(day, None)
        while len(self._historical) > self.max_cached_days:
            self._historical.popitem(last=False)

    def _cache_miss(self, day: date, until: datetime) -> None:
        self._historical_misses[day] = until
        self._historical_misses.move_to_end(day)
        while len(self._historical_misses) > self.max_cached_days:
            self._historical_misses.popitem(last=False)

    def _remember_snapshot(self, day: date, rates: Mapping[str, Decimal]) -> None:
        self._cache_day(day, rates)
        if self.snapshot_store is None:
            return
        try:
            self.snapshot_store.save_snapshot(day, self.base_currency, rates)
        except Exception as exc:
            logger.warning(
                "rates.snapshot_failed",
                extra={"day": day.isoformat(), "operation": "save", "error": str(exc)},
            )

    def _stored_snapshot(self, day: date) -> Optional[Mapping[str, Decimal]]:
        if self.snapshot_store is None:
            return None
        try:
            return self.snapshot_store.get_snapshot(day, self.base_currency)
        except Exception as exc:
            logger.warning(
                "rates.snapshot_failed",
                extra={"day": day.isoformat(), "operation": "get", "error": str(exc)},
            )
            return None

    def _historical_rates(self, day: date) -> Optional[Mapping[str, Decimal]]:
        if day in self._historical:
            self._historical.move_to_end(day)
            return self._historical[day]
        now = self._clock()
        if self._cooling_down(self._historical_misses.get(day), now):
            return None

        stored = self._stored_snapshot(day)
        if stored:
            self._cache_day(day, stored)
            return stored

        fetch_historical = getattr(self.provider, "fetch_historical", None)
        if not callable(fetch_historical) or self._cooling_down(self._historical_retry_at, now):
            return None
        try:
            rates = fetch_historical(day)
        except RateProviderUnavailable as exc:
            self._historical_retry_at = now + self.failure_cooldown
            logger.warning(
                "rates.historical.unavailable",
                extra={"day": day.isoformat(), "error": str(exc)},
            )
            return None
        self._historical_retry_at = None

        if not rates:
            self._cache_miss(day, now + self.ttl)
            return None
        rates = {normalize_code(code): rate for code, rate in rates.items()}
        self._remember_snapshot(day, rates)
        return rates
