from __future__ import annotations

from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
import json
import logging
import threading
import time
from typing import Mapping
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

from fintrack.errors import ConversionError, ValidationError

logger = logging.getLogger(__name__)

BASE_CURRENCY = "USD"
SUPPORTED_CURRENCIES = frozenset({"USD", "INR", "EUR", "GBP", "CAD", "AUD"})
CENT = Decimal("0.01")
ONE = Decimal("1")

# Units of currency per 1 USD. Used whenever live rates are unavailable.
DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "INR": Decimal("83.25"),
    "EUR": Decimal("0.85"),
    "GBP": Decimal("0.79"),
    "CAD": Decimal("1.25"),
    "AUD": Decimal("1.35"),
}

MAX_RATE_INR_PAIR = Decimal("200")
MAX_RATE_MAJOR_PAIR = Decimal("10")


class RateSource(str, Enum):
    HISTORICAL = "historical"
    LIVE = "live"
    FIXED = "fixed"


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


@dataclass(frozen=True)
class ExchangeRate:
    """A rate quoted as units of ``to_currency`` per one ``from_currency``."""

    from_currency: str
    to_currency: str
    rate: Decimal

    def normalized(self) -> ExchangeRate:
        return ExchangeRate(
            from_currency=normalize_currency(self.from_currency),
            to_currency=normalize_currency(self.to_currency),
            rate=_coerce_amount(self.rate),
        )


@dataclass(frozen=True)
class RateQuote:
    rate: Decimal
    is_fallback: bool = False


@dataclass(frozen=True)
class Conversion:
    amount: Decimal
    currency: str
    rate: Decimal
    rate_source: RateSource
    used_fallback: bool = False


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rate(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        try:
            return self.rates[normalized]
        except KeyError as exc:
            raise ConversionError(f"No fixed rate for currency: {normalized}") from exc


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float


@dataclass
class ExchangeRateApiProvider:
    base_url: str = "https://api.exchangerate-api.com/v4"
    timeout_seconds: float = 5.0
    cache_ttl_seconds: int = 12 * 60 * 60
    retry_after_seconds: int = 60
    _cache: CachedRates | None = field(default=None, repr=False)
    _failed_until: float = field(default=0.0, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def get_rate(self, currency: str) -> Decimal:
        normalized = normalize_currency(currency)
        if normalized == BASE_CURRENCY:
            return ONE

        rates = self._get_rates()
        try:
            return rates[normalized]
        except KeyError as exc:
            raise RateProviderUnavailable(f"Live rates missing {normalized}") from exc

    def _get_rates(self) -> Mapping[str, Decimal]:
        # One fetch at a time; concurrent callers reuse its result or its retry window.
        with self._lock:
            now = time.monotonic()
            if self._cache and self._cache.expires_at > now:
                return self._cache.rates
            if self._failed_until > now:
                raise RateProviderUnavailable("Live rates unavailable, retry window active")

            try:
                rates = self._fetch_rates()
            except RateProviderUnavailable:
                self._failed_until = time.monotonic() + self.retry_after_seconds
                raise
            self._cache = CachedRates(rates=rates, expires_at=now + self.cache_ttl_seconds)
            return rates

    def _fetch_rates(self) -> Mapping[str, Decimal]:
        url = f"{self.base_url.rstrip('/')}/latest/{BASE_CURRENCY}"
        try:
            with urlopen(url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, OSError, json.JSONDecodeError) as exc:
            logger.warning("Live exchange rate fetch failed: %s", exc)
            raise RateProviderUnavailable("Exchange rate API unavailable") from exc

        rates = payload.get("rates") if isinstance(payload, dict) else None
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Exchange rate response missing rates")

        parsed: dict[str, Decimal] = {}
        for code, value in rates.items():
            normalized = str(code).strip().upper()
            if normalized not in SUPPORTED_CURRENCIES:
                continue
            try:
                rate = Decimal(str(value))
            except InvalidOperation:
                continue
            if rate > 0:
                parsed[normalized] = rate
        parsed[BASE_CURRENCY] = ONE
        return parsed


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: ExchangeRateApiProvider | StaticRateProvider
    fallback: StaticRateProvider

    def get_rate(self, currency: str) -> Decimal:
        return self.get_quote(currency).rate

    def get_quote(self, currency: str) -> RateQuote:
        try:
            return RateQuote(rate=self.primary.get_rate(currency))
        except RateProviderUnavailable:
            return RateQuote(rate=self.fallback.get_rate(currency), is_fallback=True)

    def get_cross_rate(self, source_currency: str, target_currency: str) -> RateQuote:
        """Both legs come from the same provider so a cross rate never mixes sources."""
        try:
            source_rate = self.primary.get_rate(source_currency)
            target_rate = self.primary.get_rate(target_currency)
            return RateQuote(rate=target_rate / source_rate)
        except RateProviderUnavailable:
            logger.info(
                "Using fallback rate for %s->%s", source_currency, target_currency
            )
            source_rate = self.fallback.get_rate(source_currency)
            target_rate = self.fallback.get_rate(target_currency)
            return RateQuote(rate=target_rate / source_rate, is_fallback=True)


@dataclass(frozen=True)
class ConversionService:
    """Converts amounts into a reporting currency.

    ``live_provider`` is optional; without it LIVE requests are served from
    the fixed table and are not flagged as fallbacks.
    """

    live_provider: ExchangeRateApiProvider | StaticRateProvider | None = None
    fixed_provider: StaticRateProvider = field(default_factory=StaticRateProvider)

    def convert(
        self,
        amount: Decimal | int | float | str,
        source_currency: str,
        target_currency: str,
        rate_source: RateSource | str = RateSource.FIXED,
        historical_rate: ExchangeRate | None = None,
    ) -> Conversion:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        requested = RateSource(rate_source)
        coerced_amount = _coerce_amount(amount)

        if source == target:
            return Conversion(
                amount=coerced_amount,
                currency=target,
                rate=ONE,
                rate_source=requested,
            )

        if requested is RateSource.HISTORICAL and historical_rate is not None:
            return self._convert_historical(coerced_amount, source, target, historical_rate)
        if requested is RateSource.HISTORICAL:
            requested = RateSource.LIVE

        quote = self.get_rate(source, target, requested)
        return Conversion(
            amount=quantize_amount(coerced_amount * quote.rate),
            currency=target,
            rate=quote.rate,
            rate_source=requested,
            used_fallback=quote.is_fallback,
        )

    def get_rate(
        self,
        source_currency: str,
        target_currency: str,
        rate_source: RateSource | str = RateSource.LIVE,
    ) -> RateQuote:
        source = normalize_currency(source_currency)
        target = normalize_currency(target_currency)
        if source == target:
            return RateQuote(rate=ONE)
        if RateSource(rate_source) is RateSource.LIVE and self.live_provider is not None:
            provider = CompositeRateProvider(
                primary=self.live_provider,
                fallback=self.fixed_provider,
            )
            return provider.get_cross_rate(source, target)
        return RateQuote(
            rate=self.fixed_provider.get_rate(target) / self.fixed_provider.get_rate(source)
        )

    def _convert_historical(
        self,
        amount: Decimal,
        source: str,
        target: str,
        historical_rate: ExchangeRate,
    ) -> Conversion:
        stored = historical_rate.normalized()
        if stored.rate <= 0:
            raise ConversionError("Stored exchange rate must be greater than zero.")

        used_fallback = False
        if stored.from_currency == source and stored.to_currency == target:
            rate = stored.rate
        elif stored.from_currency == target and stored.to_currency == source:
            rate = ONE / stored.rate
        elif stored.from_currency == source:
            # Historical leg into the quote currency, then the remaining leg at today's rate.
            remaining = self.get_rate(stored.to_currency, target, RateSource.LIVE)
            rate = stored.rate * remaining.rate
            used_fallback = remaining.is_fallback
        else:
            raise ConversionError(
                f"Stored rate {stored.from_currency}->{stored.to_currency} "
                f"does not apply to {source} amounts."
            )

        return Conversion(
            amount=quantize_amount(amount * rate),
            currency=target,
            rate=rate,
            rate_source=RateSource.HISTORICAL,
            used_fallback=used_fallback,
        )


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rate_source: RateSource | str = RateSource.FIXED,
    historical_rate: ExchangeRate | None = None,
    service: ConversionService | None = None,
) -> Decimal:
    """Convert a monetary amount, returning only the converted value."""
    converter = service or ConversionService()
    return converter.convert(
        amount,
        source_currency,
        target_currency,
        rate_source=rate_source,
        historical_rate=historical_rate,
    ).amount


def rate_upper_bound(source_currency: str, target_currency: str) -> Decimal:
    if "INR" in (source_currency, target_currency):
        return MAX_RATE_INR_PAIR
    return MAX_RATE_MAJOR_PAIR


def validate_exchange_rate(
    rate: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
) -> Decimal:
    source = normalize_currency(source_currency)
    target = normalize_currency(target_currency)
    try:
        value = _coerce_amount(rate)
    except InvalidOperation as exc:
        raise ValidationError("Exchange rate must be a number.") from exc
    if not value.is_finite():
        raise ValidationError("Exchange rate must be a number.")
    if value <= 0:
        raise ValidationError("Exchange rate must be greater than zero.")
    if source == target:
        if value != ONE:
            raise ValidationError("Exchange rate between the same currency must be 1.")
        return value
    upper = rate_upper_bound(source, target)
    if value >= upper:
        raise ValidationError(
            f"Exchange rate for {source}->{target} must be less than {upper}."
        )
    return value


def normalize_currency(value: str | None) -> str:
    if not isinstance(value, str):
        raise ConversionError("Currency code required.")
    normalized = value.strip().upper()
    if normalized not in SUPPORTED_CURRENCIES:
        raise ConversionError(f"Unsupported currency: {normalized or value!r}")
    return normalized


def quantize_amount(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
