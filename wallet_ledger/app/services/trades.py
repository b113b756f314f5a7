from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from ..models import TradeType

_PRICE_QUANTUM = Decimal("1e-12")


@dataclass(frozen=True)
class CanonicalTrade:
    """Trade fields with the booking pair derived from the trade sides.

    A buy spends the quote currency and receives the base currency, so the
    raw ``amount/currency`` is the quote side and the converted pair is the
    base side. A sell is the mirror image.
    """

    trade_type: TradeType
    amount: Optional[Decimal]
    currency: Optional[str]
    converted_amount: Optional[Decimal]
    convert_to_currency: Optional[str]
    trade_base_currency: Optional[str]
    trade_base_amount: Optional[Decimal]
    trade_quote_currency: Optional[str]
    trade_quote_amount: Optional[Decimal]
    execution_price: Optional[Decimal]
    trade_fee_currency: Optional[str]
    trade_fee_amount: Optional[Decimal]


def _positive(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        number = abs(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite() or number == 0:
        return None
    return number


def _code(value: Any) -> Optional[str]:
    code = str(value or "").strip().upper()
    return code or None


def _first_positive(*values: Any) -> Optional[Decimal]:
    for value in values:
        number = _positive(value)
        if number is not None:
            return number
    return None


def canonicalize_trade(
    trade_type: Any,
    *,
    amount: Any = None,
    currency: Any = None,
    converted_amount: Any = None,
    convert_to_currency: Any = None,
    base_currency: Any = None,
    base_amount: Any = None,
    quote_currency: Any = None,
    quote_amount: Any = None,
    execution_price: Any = None,
    fee_amount: Any = None,
    fee_currency: Any = None,
) -> Optional[CanonicalTrade]:
    try:
        kind = TradeType(trade_type)
    except ValueError:
        return None
    is_buy = kind is TradeType.BUY

    raw_amount = _positive(amount)
    raw_converted = _positive(converted_amount)
    raw_currency = _code(currency)
    raw_convert_to = _code(convert_to_currency)

    base = _code(base_currency) or (raw_convert_to if is_buy else raw_currency)
    quote = _code(quote_currency) or (raw_currency if is_buy else raw_convert_to)

    if is_buy:
        base_qty = _first_positive(base_amount, raw_converted)
        quote_qty = _first_positive(quote_amount, raw_amount)
    else:
        base_qty = _first_positive(base_amount, raw_amount)
        quote_qty = _first_positive(quote_amount, raw_converted)

    price = _positive(execution_price)
    if price is None and base_qty is not None and quote_qty is not None:
        price = (quote_qty / base_qty).quantize(_PRICE_QUANTUM)
    if quote_qty is None and price is not None and base_qty is not None:
        quote_qty = base_qty * price
    if base_qty is None and price is not None and quote_qty is not None:
        base_qty = quote_qty / price

    return CanonicalTrade(
        trade_type=kind,
        amount=quote_qty if is_buy else base_qty,
        currency=quote if is_buy else base,
        converted_amount=base_qty if is_buy else quote_qty,
        convert_to_currency=base if is_buy else quote,
        trade_base_currency=base,
        trade_base_amount=base_qty,
        trade_quote_currency=quote,
        trade_quote_amount=quote_qty,
        execution_price=price,
        trade_fee_currency=_code(fee_currency) or quote,
        trade_fee_amount=_positive(fee_amount),
    )
