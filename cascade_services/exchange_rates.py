"""
cascade_services.exchange_rates -- rates for converting the overhead pool.

Responsibility:
    Resolve the rate that converts the pool currency into the base
    currency for a given date. The resolver walks back one calendar day
    at a time (weekends and holidays have no published rate) up to the
    configured look-back, then fails.

Architecture position:
    Services. ``RateProvider`` is the seam; ``NbpRateProvider`` talks to
    the central bank's public table-A endpoint over HTTP.

Failure modes:
    - ExchangeRateUnavailableError when no rate exists within look-back.
      There is no fallback rate: the overhead pool stage fails and its
      invocation is retried later.
    - ExchangeRateFetchError on transport errors or an unusable response.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Protocol

import requests

from cascade_kernel.exceptions import (
    ExchangeRateFetchError,
    ExchangeRateUnavailableError,
)
from cascade_kernel.logging_config import get_logger

logger = get_logger("services.exchange_rates")

NBP_RATES_URL = "https://api.nbp.pl/api/exchangerates/rates/a"


@dataclass(frozen=True)
class ExchangeRateQuote:
    """``rate`` units of the pool currency buy one unit of ``currency``."""

    currency: str
    rate: Decimal
    rate_date: date
    source: str = "nbp"


class RateProvider(Protocol):
    def get_rate(self, currency: str, on_date: date) -> ExchangeRateQuote | None:
        """Rate published exactly on ``on_date``, or None when none was."""
        ...


class NbpRateProvider:
    """Mid rates from the NBP table A API."""

    def __init__(
        self,
        base_url: str = NBP_RATES_URL,
        timeout: float = 10,
        http_get: Callable[..., Any] = requests.get,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_get = http_get

    def get_rate(self, currency: str, on_date: date) -> ExchangeRateQuote | None:
        url = f"{self._base_url}/{currency.lower()}/{on_date.isoformat()}/"
        try:
            response = self._http_get(url, params={"format": "json"}, timeout=self._timeout)
        except requests.RequestException as exc:
            raise ExchangeRateFetchError(currency, on_date, str(exc)) from exc

        if response.status_code == 404:
            return None
        if response.status_code != 200:
            raise ExchangeRateFetchError(
                currency, on_date, f"HTTP_{response.status_code}: {response.text[:200]}",
            )

        try:
            entry = response.json()["rates"][0]
            rate = Decimal(str(entry["mid"]))
            effective = date.fromisoformat(entry["effectiveDate"])
        except (ValueError, KeyError, IndexError, TypeError, InvalidOperation) as exc:
            raise ExchangeRateFetchError(currency, on_date, f"malformed response: {exc}") from exc

        if not rate.is_finite() or rate <= 0:
            raise ExchangeRateFetchError(currency, on_date, f"non-positive rate {rate}")
        return ExchangeRateQuote(currency=currency.upper(), rate=rate, rate_date=effective)


class LookbackRateResolver:
    """Walks back from the requested date to the latest published rate."""

    def __init__(
        self,
        provider: RateProvider,
        pool_currency: str = "PLN",
        lookback_days: int = 7,
    ):
        self._provider = provider
        self._pool_currency = pool_currency.upper()
        self._lookback_days = lookback_days

    def get_rate(self, currency: str, on_date: date) -> ExchangeRateQuote:
        if currency.upper() == self._pool_currency:
            return ExchangeRateQuote(currency.upper(), Decimal("1"), on_date, source="identity")

        for offset in range(self._lookback_days + 1):
            candidate = on_date - timedelta(days=offset)
            quote = self._provider.get_rate(currency, candidate)
            if quote is not None:
                logger.info(
                    "exchange_rate_resolved",
                    extra={
                        "currency": quote.currency,
                        "requested_date": on_date,
                        "rate_date": quote.rate_date,
                        "rate": quote.rate,
                        "days_back": offset,
                    },
                )
                return quote

        logger.error(
            "exchange_rate_unavailable",
            extra={
                "currency": currency,
                "requested_date": on_date,
                "lookback_days": self._lookback_days,
            },
        )
        raise ExchangeRateUnavailableError(currency, on_date, self._lookback_days)
