from __future__ import annotations

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from .rates import RateSource, normalize_code


logger = logging.getLogger(__name__)

USD = "USD"


def to_decimal(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        return Decimal("0")
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


class CurrencyConverter:
    """Best-effort currency normalization on top of a :class:`RateSource`.

    Nothing here raises for missing rates. ``convert`` prices an unknown code
    at rate 1 and logs it; ``to_main_currency`` walks the fallback chain
    historical rate -> USD snapshot -> live rate -> raw amount.
    """

    def __init__(self, rate_source: RateSource) -> None:
        self.rate_source = rate_source

    def is_crypto(self, code: str) -> bool:
        return self.rate_source.is_crypto(code)

    def convert(
        self,
        amount: Decimal | int | float | str,
        from_currency: str,
        to_currency: str,
    ) -> Decimal:
        value = to_decimal(amount)
        source = normalize_code(from_currency)
        target = normalize_code(to_currency)
        if source == target:
            return value

        table = self.rate_source.get_rates()
        source_rate = table.rate(source)
        target_rate = table.rate(target)
        if source_rate is None or target_rate is None:
            logger.warning(
                "conversion.unknown_currency",
                extra={
                    "from": source,
                    "to": target,
                    "missing": [
                        code
                        for code, rate in ((source, source_rate), (target, target_rate))
                        if rate is None
                    ],
                },
            )
        return (value / (source_rate or Decimal("1"))) * (target_rate or Decimal("1"))

    def try_convert(
        self,
        amount: Decimal | int | float | str,
        from_currency: str,
        to_currency: str,
    ) -> Optional[Decimal]:
        value = to_decimal(amount)
        source = normalize_code(from_currency)
        target = normalize_code(to_currency)
        if source == target:
            return value
        table = self.rate_source.get_rates()
        source_rate = table.rate(source)
        target_rate = table.rate(target)
        if source_rate is None or target_rate is None:
            return None
        return (value / source_rate) * target_rate

    def convert_historical(
        self,
        amount: Decimal | int | float | str,
        from_currency: str,
        to_currency: str,
        day: date | datetime,
    ) -> Optional[Decimal]:
        rate = self.rate_source.get_historical_rate(day, from_currency, to_currency)
        if rate is None:
            return None
        return to_decimal(amount) * rate

    def to_main_currency(
        self,
        amount: Decimal | int | float | str,
        currency: str,
        main_currency: str,
        transaction_date: Optional[date | datetime] = None,
        pre_computed_usd: Optional[Decimal] = None,
    ) -> Decimal:
        value = to_decimal(amount)
        if normalize_code(currency) == normalize_code(main_currency):
            return value

        if transaction_date is not None:
            historical = self.convert_historical(value, currency, main_currency, transaction_date)
            if historical is not None:
                return historical

        if pre_computed_usd is not None:
            bridged = self.try_convert(pre_computed_usd, USD, main_currency)
            if bridged is not None:
                return bridged

        live = self.try_convert(value, currency, main_currency)
        if live is not None:
            return live

        logger.info(
            "conversion.unavailable",
            extra={"from": normalize_code(currency), "to": normalize_code(main_currency)},
        )
        return value
