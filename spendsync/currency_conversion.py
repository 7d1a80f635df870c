from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
import json
import time
from typing import Mapping, Protocol
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CurrencyMetadata:
    code: str
    symbol: str
    decimals: int

    @property
    def scale(self) -> Decimal:
        return Decimal(10) ** self.decimals


CURRENCIES: tuple[CurrencyMetadata, ...] = (
    CurrencyMetadata("USD", "$", 2),
    CurrencyMetadata("EUR", "€", 2),
    CurrencyMetadata("GBP", "£", 2),
    CurrencyMetadata("JPY", "¥", 0),
    CurrencyMetadata("IDR", "Rp", 0),
    CurrencyMetadata("AUD", "A$", 2),
    CurrencyMetadata("CAD", "C$", 2),
    CurrencyMetadata("SGD", "S$", 2),
)
_CURRENCY_INDEX = {meta.code: meta for meta in CURRENCIES}

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "IDR": Decimal("15600"),
    "AUD": Decimal("1.52"),
    "CAD": Decimal("1.34"),
    "SGD": Decimal("1.34"),
    "NZD": Decimal("1.64"),
    "CHF": Decimal("0.88"),
}


class RateProvider(Protocol):
    def get_rate(self, source: str, target: str) -> Decimal:
        """Return how many `target` units one `source` unit buys."""


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rate(self, source: str, target: str) -> Decimal:
        normalized_source = normalize_currency(source)
        normalized_target = normalize_currency(target)
        if normalized_source == normalized_target:
            return Decimal("1")
        return self._usd_rate(normalized_target) / self._usd_rate(normalized_source)

    def _usd_rate(self, currency: str) -> Decimal:
        try:
            return self.rates[currency]
        except KeyError as exc:
            raise ValueError(f"Unsupported currency: {currency}") from exc


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float


@dataclass
class OpenExchangeRateProvider:
    base_url: str = "https://open.er-api.com/v6/latest"
    cache_ttl_seconds: int = 12 * 60 * 60
    timeout_seconds: float = 8.0
    _cache: dict[str, CachedRates] = field(default_factory=dict)

    def get_rate(self, source: str, target: str) -> Decimal:
        normalized_source = normalize_currency(source)
        normalized_target = normalize_currency(target)
        if normalized_source == normalized_target:
            return Decimal("1")

        rates = self._get_rates(normalized_source)
        try:
            return rates[normalized_target]
        except KeyError as exc:
            raise ValueError(f"Rate not found for {normalized_target}") from exc

    def _get_rates(self, source: str) -> Mapping[str, Decimal]:
        cached = self._cache.get(source)
        now = time.monotonic()
        if cached and cached.expires_at > now:
            return cached.rates

        rates = self._fetch_rates(source)
        self._cache[source] = CachedRates(rates=rates, expires_at=now + self.cache_ttl_seconds)
        return rates

    def _fetch_rates(self, source: str) -> Mapping[str, Decimal]:
        url = f"{self.base_url.rstrip('/')}/{source}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Exchange rate API unavailable") from exc

        if payload.get("result") not in (None, "success"):
            raise RateProviderUnavailable(f"Exchange rate API error: {payload.get('error-type')}")
        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Exchange rate response missing rates")

        parsed = {normalize_currency(code): Decimal(str(value)) for code, value in rates.items()}
        parsed[source] = Decimal("1")
        return parsed


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: RateProvider
    fallback: RateProvider

    def get_rate(self, source: str, target: str) -> Decimal:
        try:
            return self.primary.get_rate(source, target)
        except RateProviderUnavailable as exc:
            logger.warning("exchange_rate_fallback", source=source, target=target, reason=str(exc))
            return self.fallback.get_rate(source, target)


@dataclass(frozen=True)
class ConversionResult:
    converted_amount: int
    rate: str


def convert_minor_units(
    amount: int,
    currency: str,
    base_currency: str,
    rate_provider: RateProvider | None = None,
) -> ConversionResult:
    """Convert an integer amount of `currency` minor units into `base_currency` minor units.

    Each side is scaled by its own number of decimals, so 1000 EUR cents becomes
    a yen amount without a stray factor of 100. Same-currency input is returned
    untouched and the provider is never consulted.
    """
    source = normalize_currency(currency)
    target = normalize_currency(base_currency)
    if source == target:
        return ConversionResult(converted_amount=int(amount), rate="1.0")

    provider = rate_provider or StaticRateProvider()
    rate = provider.get_rate(source, target)
    source_meta = get_currency_metadata(source)
    target_meta = get_currency_metadata(target)
    major = Decimal(int(amount)) / source_meta.scale
    converted = (major * rate * target_meta.scale).quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    return ConversionResult(converted_amount=int(converted), rate=str(rate))


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def validate_supported_currency(value: str) -> str:
    normalized = normalize_currency(value)
    if normalized not in _CURRENCY_INDEX:
        raise ValueError(f"Unsupported currency: {normalized}")
    return normalized


def get_currency_metadata(code: str) -> CurrencyMetadata:
    return _CURRENCY_INDEX.get(code.strip().upper(), CURRENCIES[0])


def format_amount(amount: int, currency: str = "USD") -> str:
    meta = get_currency_metadata(currency)
    major = (Decimal(int(amount)) / meta.scale).quantize(Decimal(1).scaleb(-meta.decimals))
    sign = "-" if major < 0 else ""
    return f"{sign}{meta.symbol}{abs(major):,.{meta.decimals}f}"
